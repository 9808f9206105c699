"""Interpolation of ``{{ ... }}`` placeholders against a workflow context.

Two reference forms are understood:

* ``$node.<nodeId>.<path>`` reads from the output of an earlier node.
* ``$vars.<name>.<path>`` reads a workflow variable (path optional).

A placeholder that cannot be resolved is left in the text verbatim so the
failing reference stays visible to whoever reads the output.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping, Sequence

from pydantic import BaseModel

from .errors import ExpressionUnresolved

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

MISSING = object()

# Upper bound on re-resolving a value that is itself a template.
MAX_PASSES = 10


def find_placeholders(text: str) -> list[str]:
    return [match.group(0) for match in PLACEHOLDER.finditer(text)]


def get_path(value: Any, path: Sequence[str]) -> Any:
    current = value
    for key in path:
        if current is None:
            return MISSING
        if isinstance(current, BaseModel):
            if key not in type(current).model_fields:
                return MISSING
            current = getattr(current, key)
        elif isinstance(current, Mapping):
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)):
            if not key.lstrip("-").isdigit():
                return MISSING
            index = int(key)
            if index >= len(current) or index < -len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def serialise(value: Any, quote_strings: bool = False) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        if not quote_strings:
            return value
        escaped = value.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value, default=str)


def _lookup(expression: str, context: Any) -> tuple[Any, str | None]:
    head, _, rest = expression.partition(".")
    parts = rest.split(".") if rest else []

    if head == "$node":
        if not parts or not parts[0]:
            return MISSING, "missing node id"
        node_id, path = parts[0], parts[1:]
        output = context.node_outputs.get(node_id, MISSING)
        if output is MISSING:
            return MISSING, f"no output for node '{node_id}'"
        value = get_path(output, path)
        if value is MISSING:
            return MISSING, f"path '{'.'.join(path)}' not found in output of '{node_id}'"
        return value, None

    if head == "$vars":
        if not parts or not parts[0]:
            return MISSING, "missing variable name"
        name, path = parts[0], parts[1:]
        base = context.variables.get(name, MISSING)
        if base is MISSING:
            return MISSING, f"variable '{name}' is not set"
        value = get_path(base, path)
        if value is MISSING:
            return MISSING, f"path '{'.'.join(path)}' not found in variable '{name}'"
        return value, None

    return MISSING, "unrecognized expression"


def parse_expression(
    value: Any,
    context: Any,
    quote_strings: bool = False,
    unresolved: list[ExpressionUnresolved] | None = None,
) -> Any:
    """Replace every placeholder in ``value``; non-strings are returned as-is.

    ``context`` is anything exposing ``variables`` and ``node_outputs``
    mappings. With ``quote_strings`` resolved strings become quoted literals,
    which is what the condition evaluator expects.
    """
    if not isinstance(value, str):
        return value

    def _replace(match: re.Match[str]) -> str:
        expression = match.group(1).strip()
        resolved, reason = _lookup(expression, context)
        if resolved is MISSING:
            logger.debug(f"Unresolved expression {match.group(0)}: {reason}")
            if unresolved is not None:
                unresolved.append(ExpressionUnresolved(match.group(0), reason or "unresolved"))
            return match.group(0)
        return serialise(resolved, quote_strings)

    return PLACEHOLDER.sub(_replace, value)


def _expand(text: str, context: Any, unresolved: list[ExpressionUnresolved] | None) -> str:
    """Re-resolve ``text`` in bare mode until it stops changing or runs out of passes."""
    out = text
    for _ in range(MAX_PASSES):
        misses: list[ExpressionUnresolved] = []
        expanded = parse_expression(out, context, False, misses)
        if expanded == out:
            # A pass that changed nothing only hit misses.
            if unresolved is not None:
                unresolved.extend(misses)
            return out
        out = expanded
    leftovers = dict.fromkeys(find_placeholders(out))
    if leftovers:
        logger.warning(f"Expression expansion did not settle after {MAX_PASSES} passes: {list(leftovers)}")
    if unresolved is not None:
        reason = f"expansion did not settle after {MAX_PASSES} passes"
        unresolved.extend(ExpressionUnresolved(placeholder, reason) for placeholder in leftovers)
    return out


def resolve_config(
    config: Any,
    context: Any,
    quote_strings: bool = False,
    unresolved: list[ExpressionUnresolved] | None = None,
) -> Any:
    """Resolve every string inside ``config``, following templated values.

    A resolved value that is itself a template is expanded in bare mode,
    at most ``MAX_PASSES`` times, and only then serialised, so quoting is
    applied once per placeholder of the original text.
    """
    if isinstance(config, str):

        def _replace(match: re.Match[str]) -> str:
            value, reason = _lookup(match.group(1).strip(), context)
            if value is MISSING:
                logger.debug(f"Unresolved expression {match.group(0)}: {reason}")
                if unresolved is not None:
                    unresolved.append(ExpressionUnresolved(match.group(0), reason or "unresolved"))
                return match.group(0)
            if isinstance(value, str):
                value = _expand(value, context, unresolved)
            return serialise(value, quote_strings)

        return PLACEHOLDER.sub(_replace, config)
    if isinstance(config, dict):
        return {key: resolve_config(item, context, quote_strings, unresolved) for key, item in config.items()}
    if isinstance(config, list):
        return [resolve_config(item, context, quote_strings, unresolved) for item in config]
    return config
