"""Evaluator for the comparison expressions used by branch conditions.

Conditions arrive with their placeholders already replaced by literals, e.g.
``'active' === 'active' && 5 > 3``. Only literals, comparisons, boolean
operators and parentheses are accepted; nothing is ever executed.
"""

from __future__ import annotations

import math
import re
from typing import Any

from .errors import ConditionError

_TOKEN = re.compile(
    r"""
    \s*(?:
        (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!()\-])
      | (?P<word>[A-Za-z_$][\w$]*)
    )
    """,
    re.VERBOSE,
)

_WORDS = {"true": True, "false": False, "null": None, "undefined": None}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}


def _unescape(body: str) -> str:
    out: list[str] = []
    chars = iter(body)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_ESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def tokenize(text: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if match is None or match.end() == pos:
            raise ConditionError(f"Unexpected character at position {pos}: {text[pos:pos + 10]!r}")
        pos = match.end()
        if match.group("number") is not None:
            raw = match.group("number")
            number = float(raw)
            tokens.append(("value", int(number) if number.is_integer() and "e" not in raw.lower() and "." not in raw else number))
        elif match.group("string") is not None:
            tokens.append(("value", _unescape(match.group("string")[1:-1])))
        elif match.group("op") is not None:
            tokens.append(("op", match.group("op")))
        else:
            word = match.group("word")
            if word not in _WORDS:
                raise ConditionError(f"Unknown identifier: {word}")
            tokens.append(("value", _WORDS[word]))
    return tokens


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0.0
        try:
            return float(stripped)
        except ValueError as exc:
            raise ConditionError(f"Cannot compare {value!r} as a number") from exc
    raise ConditionError(f"Cannot compare {value!r} as a number")


def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def strict_equal(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def loose_equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    try:
        return _to_number(left) == _to_number(right)
    except ConditionError:
        return False


def compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = _to_number(left), _to_number(right)
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


class _Parser:
    def __init__(self, tokens: list[tuple[str, Any]]) -> None:
        self.tokens = tokens
        self.pos = 0

    def _peek_op(self) -> str | None:
        if self.pos < len(self.tokens) and self.tokens[self.pos][0] == "op":
            return self.tokens[self.pos][1]
        return None

    def _take(self) -> tuple[str, Any]:
        if self.pos >= len(self.tokens):
            raise ConditionError("Unexpected end of condition")
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self) -> Any:
        if not self.tokens:
            raise ConditionError("Empty condition")
        value = self._or()
        if self.pos != len(self.tokens):
            raise ConditionError(f"Unexpected token: {self.tokens[self.pos][1]!r}")
        return value

    def _or(self) -> Any:
        value = self._and()
        while self._peek_op() == "||":
            self.pos += 1
            right = self._and()
            value = value if truthy(value) else right
        return value

    def _and(self) -> Any:
        value = self._equality()
        while self._peek_op() == "&&":
            self.pos += 1
            right = self._equality()
            value = right if truthy(value) else value
        return value

    def _equality(self) -> Any:
        value = self._relational()
        while self._peek_op() in ("===", "!==", "==", "!="):
            op = self._take()[1]
            right = self._relational()
            if op == "===":
                value = strict_equal(value, right)
            elif op == "!==":
                value = not strict_equal(value, right)
            elif op == "==":
                value = loose_equal(value, right)
            else:
                value = not loose_equal(value, right)
        return value

    def _relational(self) -> Any:
        value = self._unary()
        while self._peek_op() in ("<", "<=", ">", ">="):
            op = self._take()[1]
            value = compare(op, value, self._unary())
        return value

    def _unary(self) -> Any:
        op = self._peek_op()
        if op == "!":
            self.pos += 1
            return not truthy(self._unary())
        if op == "-":
            self.pos += 1
            operand = self._unary()
            number = -_to_number(operand)
            return int(number) if number.is_integer() and isinstance(operand, int) else number
        return self._primary()

    def _primary(self) -> Any:
        kind, value = self._take()
        if kind == "value":
            return value
        if value == "(":
            inner = self._or()
            if self._peek_op() != ")":
                raise ConditionError("Missing closing parenthesis")
            self.pos += 1
            return inner
        raise ConditionError(f"Unexpected token: {value!r}")


def evaluate(text: str) -> Any:
    return _Parser(tokenize(text)).parse()


def evaluate_condition(text: str) -> bool:
    return truthy(evaluate(text))
