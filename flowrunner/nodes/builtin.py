from __future__ import annotations

import asyncio
import json
import re
import time
from datetime import datetime, timezone
from functools import partial
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from ..conditions import evaluate_condition, loose_equal, compare
from ..config import AppConfig, app_config
from ..errors import ConditionError
from ..expression import get_path, MISSING
from ..models import ContextView, ExecutionResult, NodeKind, ValidationResult
from .agent import ai_prompt_handler, validate_ai_prompt
from .base import NodeRegistry, NodeSpec

VARIABLE_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
DELAY_UNITS = {"seconds": 1.0, "minutes": 60.0, "hours": 3600.0}
FILTER_OPERATORS = ("equals", "not_equals", "contains", "greater_than", "less_than")
TRANSFORMATIONS = ("format_json", "extract_field", "to_string", "to_number")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ok(kind: NodeKind, subtype: str, data: dict[str, Any]) -> ExecutionResult:
    data.setdefault("timestamp", _timestamp())
    return ExecutionResult(
        success=True,
        data=data,
        metadata={"nodeType": kind.value, "subtype": subtype},
    )


def _fail(kind: NodeKind, subtype: str, error: str, data: dict[str, Any] | None = None) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        data=data,
        error=error,
        metadata={"nodeType": kind.value, "subtype": subtype},
    )


def _maybe_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def manual_trigger_handler(config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    return _ok(
        NodeKind.TRIGGER,
        "manual_trigger",
        {"triggered": True, "triggerName": config.get("triggerName") or "Manual Trigger"},
    )


def webhook_trigger_handler(config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    body = _maybe_json(config.get("samplePayload", {}))
    if isinstance(body, str):
        return _fail(NodeKind.TRIGGER, "webhook_trigger", "samplePayload must be a JSON object")
    return _ok(
        NodeKind.TRIGGER,
        "webhook_trigger",
        {
            "method": str(config.get("method", "POST")).upper(),
            "url": config.get("url"),
            "headers": {"content-type": "application/json"},
            "body": body,
        },
    )


def validate_set_variable(config: dict[str, Any]) -> ValidationResult:
    errors: dict[str, str] = {}
    name = config.get("variableName")
    if not name:
        errors["variableName"] = "Variable name is required"
    elif not isinstance(name, str) or not VARIABLE_NAME.match(name):
        errors["variableName"] = "Invalid variable name format"
    if config.get("value") in (None, ""):
        errors["value"] = "Value is required"
    return ValidationResult.from_errors(errors)


def set_variable_handler(config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    name = config.get("variableName")
    if not isinstance(name, str) or not VARIABLE_NAME.match(name):
        return _fail(NodeKind.ACTION, "set_variable", f"Invalid variable name: {name!r}")
    # JSON text is kept structured so {{$vars.x.y}} can reach into it.
    return _ok(
        NodeKind.ACTION,
        "set_variable",
        {"variableName": name, "value": _maybe_json(config.get("value"))},
    )


def validate_delay(config: dict[str, Any]) -> ValidationResult:
    errors: dict[str, str] = {}
    try:
        if float(config.get("amount", "")) < 0:
            errors["amount"] = "Delay amount must not be negative"
    except (TypeError, ValueError):
        errors["amount"] = "Delay amount must be a number"
    if config.get("unit", "seconds") not in DELAY_UNITS:
        errors["unit"] = f"Unit must be one of: {', '.join(DELAY_UNITS)}"
    return ValidationResult.from_errors(errors)


async def delay_handler(
    config: dict[str, Any], _context: ContextView, *, app_settings: AppConfig
) -> ExecutionResult:
    try:
        amount = float(config.get("amount", 1))
    except (TypeError, ValueError):
        return _fail(NodeKind.ACTION, "delay", f"Invalid delay amount: {config.get('amount')!r}")
    unit = config.get("unit", "seconds")
    if unit not in DELAY_UNITS:
        return _fail(NodeKind.ACTION, "delay", f"Invalid delay unit: {unit!r}")

    requested = amount * DELAY_UNITS[unit]
    cap = float(app_settings.integration_settings()["max_delay_seconds"])
    actual = max(0.0, min(requested, cap))
    await asyncio.sleep(actual)
    return _ok(
        NodeKind.ACTION,
        "delay",
        {
            "delayAmount": amount,
            "delayUnit": unit,
            "requestedDelayMs": int(requested * 1000),
            "actualDelayMs": int(actual * 1000),
        },
    )


def validate_api_request(config: dict[str, Any]) -> ValidationResult:
    errors: dict[str, str] = {}
    url = config.get("url")
    if not url:
        errors["url"] = "url is required"
    elif isinstance(url, str) and "{{" not in url and urlparse(url).scheme not in ("http", "https"):
        errors["url"] = "url must be an http(s) URL"
    if str(config.get("method", "GET")).upper() not in HTTP_METHODS:
        errors["method"] = f"method must be one of: {', '.join(HTTP_METHODS)}"
    headers = _maybe_json(config.get("headers") or {})
    if not isinstance(headers, dict):
        errors["headers"] = "headers must be a JSON object"
    return ValidationResult.from_errors(errors)


def _http_call(
    url: str,
    method: str,
    headers: dict[str, str],
    body: bytes | None,
    timeout: float,
) -> tuple[int, str, dict[str, str], str]:
    req = Request(url, data=body, method=method, headers={"User-Agent": "flowrunner/0.1", **headers})
    try:
        with urlopen(req, timeout=timeout) as resp:  # noqa: S310
            text = resp.read(65536).decode("utf-8", errors="ignore")
            return resp.status, resp.reason, dict(resp.headers.items()), text
    except HTTPError as exc:
        text = exc.read(65536).decode("utf-8", errors="ignore")
        return exc.code, str(exc.reason), dict(exc.headers.items()) if exc.headers else {}, text


async def api_request_handler(
    config: dict[str, Any], _context: ContextView, *, app_settings: AppConfig
) -> ExecutionResult:
    settings = app_settings.integration_settings()
    url = config.get("url")
    method = str(config.get("method", "GET")).upper()
    parsed = urlparse(url) if isinstance(url, str) else None
    host = (parsed.hostname or "").lower() if parsed else ""
    if not parsed or parsed.scheme not in ("http", "https") or not host:
        return _fail(NodeKind.ACTION, "api_request", f"Invalid URL: {url!r}")
    if method not in HTTP_METHODS:
        return _fail(NodeKind.ACTION, "api_request", f"Unsupported method: {method}")

    allow = {domain.lower() for domain in settings["allow_http_domains"]}
    if allow and host not in allow:
        return _fail(NodeKind.ACTION, "api_request", f"Domain blocked. Allowed domains: {sorted(allow)}")

    headers = _maybe_json(config.get("headers") or {})
    if not isinstance(headers, dict):
        return _fail(NodeKind.ACTION, "api_request", "headers must be a JSON object")
    headers = {str(key): str(value) for key, value in headers.items()}

    body = config.get("body")
    payload: bytes | None = None
    if body not in (None, "") and method != "GET":
        body = _maybe_json(body)
        if isinstance(body, str):
            payload = body.encode("utf-8")
        else:
            payload = json.dumps(body).encode("utf-8")
            headers.setdefault("Content-Type", "application/json")

    started = time.perf_counter()
    try:
        status, reason, response_headers, text = await asyncio.to_thread(
            _http_call,
            url,
            method,
            headers,
            payload,
            float(settings["http_timeout_seconds"]),
        )
    except (URLError, TimeoutError, OSError) as exc:
        return _fail(NodeKind.ACTION, "api_request", f"HTTP error: {exc}")
    elapsed_ms = int((time.perf_counter() - started) * 1000)

    data = {
        "status": status,
        "statusText": reason,
        "headers": response_headers,
        "response": _maybe_json(text),
        "responseTime": f"{elapsed_ms}ms",
        "timestamp": _timestamp(),
    }
    if status >= 400:
        return _fail(NodeKind.ACTION, "api_request", f"HTTP {status}: {reason}", data)
    return _ok(NodeKind.ACTION, "api_request", data)


def template_handler(config: dict[str, Any], context: ContextView) -> ExecutionResult:
    template = config.get("template", "")
    if not isinstance(template, str):
        return _fail(NodeKind.ACTION, "template", "template must be a string")

    # {{json}} is the only placeholder left for this node to fill.
    text = template.replace("{{json}}", json.dumps(dict(context.variables), ensure_ascii=True, default=str))
    return _ok(NodeKind.ACTION, "template", {"text": text})


def branch_condition_handler(config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    condition = config.get("condition")
    if not isinstance(condition, str) or not condition.strip():
        return _fail(NodeKind.LOGIC, "branch_condition", "condition must be a non-empty string")

    data: dict[str, Any] = {"condition": condition}
    try:
        outcome = evaluate_condition(condition)
    except ConditionError as exc:
        outcome = False
        data["evaluationError"] = str(exc)

    data["result"] = outcome
    data["path"] = "true" if outcome else "false"
    label = config.get("trueLabel") if outcome else config.get("falseLabel")
    if label:
        data["label"] = label
    return _ok(NodeKind.LOGIC, "branch_condition", data)


def validate_filter_condition(config: dict[str, Any]) -> ValidationResult:
    errors: dict[str, str] = {}
    if config.get("field") is None:
        errors["field"] = "field is required"
    if config.get("operator") not in FILTER_OPERATORS:
        errors["operator"] = f"operator must be one of: {', '.join(FILTER_OPERATORS)}"
    if config.get("value") is None:
        errors["value"] = "value is required"
    return ValidationResult.from_errors(errors)


def filter_condition_handler(config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    actual = config.get("field")
    expected = config.get("value")
    operator = config.get("operator")

    try:
        if operator == "equals":
            met = loose_equal(actual, expected)
        elif operator == "not_equals":
            met = not loose_equal(actual, expected)
        elif operator == "contains":
            met = str(expected) in str(actual)
        elif operator == "greater_than":
            met = compare(">", actual, expected)
        elif operator == "less_than":
            met = compare("<", actual, expected)
        else:
            return _fail(NodeKind.LOGIC, "filter_condition", f"Unknown operator: {operator!r}")
    except ConditionError as exc:
        return _fail(NodeKind.LOGIC, "filter_condition", str(exc))

    return _ok(
        NodeKind.LOGIC,
        "filter_condition",
        {
            "field": actual,
            "operator": operator,
            "expectedValue": expected,
            "actualValue": actual,
            "conditionMet": met,
        },
    )


def transform_data_handler(config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    raw = config.get("inputData")
    transformation = config.get("transformation")
    value = _maybe_json(raw)

    if transformation == "format_json":
        result: Any = json.dumps(value, indent=2, default=str)
    elif transformation == "extract_field":
        path = str(config.get("fieldPath") or "")
        result = get_path(value, path.split(".")) if path else value
        if result is MISSING:
            return _fail(NodeKind.LOGIC, "transform_data", f"Field path not found: {path}")
    elif transformation == "to_string":
        result = raw if isinstance(raw, str) else json.dumps(raw, default=str)
    elif transformation == "to_number":
        try:
            number = float(raw)
        except (TypeError, ValueError):
            number = 0.0
        result = int(number) if number.is_integer() else number
    else:
        return _fail(NodeKind.LOGIC, "transform_data", f"Unknown transformation: {transformation!r}")

    return _ok(
        NodeKind.LOGIC,
        "transform_data",
        {"input": value, "transformation": transformation, "result": result},
    )


def _choice_validator(key: str, options: tuple[str, ...], required: list[str]):
    def _validate(config: dict[str, Any]) -> ValidationResult:
        errors = {name: f"{name} is required" for name in required if config.get(name) in (None, "")}
        if key not in errors and config.get(key) not in options:
            errors[key] = f"{key} must be one of: {', '.join(options)}"
        return ValidationResult.from_errors(errors)

    return _validate


def register_builtin_nodes(registry: NodeRegistry, app_settings: AppConfig | None = None) -> None:
    """Register every built-in integration, bound to ``app_settings`` (the process config by default)."""
    if app_settings is None:
        app_settings = app_config
    registry.register(
        NodeSpec(
            subtype="manual_trigger",
            kind=NodeKind.TRIGGER,
            description="Starts a workflow on demand.",
            handler=manual_trigger_handler,
        )
    )
    registry.register(
        NodeSpec(
            subtype="webhook_trigger",
            kind=NodeKind.TRIGGER,
            description="Starts a workflow with a JSON webhook payload.",
            handler=webhook_trigger_handler,
            required=["url", "method"],
        )
    )
    registry.register(
        NodeSpec(
            subtype="set_variable",
            kind=NodeKind.ACTION,
            description="Stores a value in a workflow variable.",
            handler=set_variable_handler,
            validator=validate_set_variable,
            required=["variableName", "value"],
        )
    )
    registry.register(
        NodeSpec(
            subtype="delay",
            kind=NodeKind.ACTION,
            description="Waits for a period of time.",
            handler=partial(delay_handler, app_settings=app_settings),
            validator=validate_delay,
            required=["amount", "unit"],
        )
    )
    registry.register(
        NodeSpec(
            subtype="api_request",
            kind=NodeKind.ACTION,
            description="Makes an HTTP request to an allowlisted domain.",
            handler=partial(api_request_handler, app_settings=app_settings),
            validator=validate_api_request,
            required=["url", "method"],
        )
    )
    registry.register(
        NodeSpec(
            subtype="template",
            kind=NodeKind.ACTION,
            description="Builds text output from a template.",
            handler=template_handler,
            required=["template"],
        )
    )
    registry.register(
        NodeSpec(
            subtype="ai_prompt",
            kind=NodeKind.ACTION,
            description="Sends a prompt to a local Ollama model.",
            handler=partial(ai_prompt_handler, app_settings=app_settings),
            validator=partial(validate_ai_prompt, app_settings=app_settings),
            required=["prompt"],
        )
    )
    registry.register(
        NodeSpec(
            subtype="branch_condition",
            kind=NodeKind.LOGIC,
            description="Splits the workflow into a true and a false path.",
            handler=branch_condition_handler,
            required=["condition"],
            quoted_fields=("condition",),
            branches=True,
        )
    )
    registry.register(
        NodeSpec(
            subtype="filter_condition",
            kind=NodeKind.LOGIC,
            description="Checks a value against a comparison.",
            handler=filter_condition_handler,
            validator=validate_filter_condition,
            required=["field", "operator", "value"],
        )
    )
    registry.register(
        NodeSpec(
            subtype="transform_data",
            kind=NodeKind.LOGIC,
            description="Formats, extracts or converts data.",
            handler=transform_data_handler,
            validator=_choice_validator("transformation", TRANSFORMATIONS, ["inputData", "transformation"]),
            required=["inputData", "transformation"],
        )
    )
