from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..config import AppConfig
from ..models import ContextView, ExecutionResult, ValidationResult


def _extract_text(message: Any) -> str:
    content = getattr(message, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
        if parts:
            return "\n".join(parts)
    return str(message)


def _settings(config: dict[str, Any], app_settings: AppConfig) -> dict[str, Any]:
    defaults = app_settings.ai_defaults()
    return {key: config.get(key, fallback) for key, fallback in defaults.items()}


def validate_ai_prompt(config: dict[str, Any], *, app_settings: AppConfig) -> ValidationResult:
    errors: dict[str, str] = {}
    settings = _settings(config, app_settings)
    if not isinstance(config.get("prompt"), str) or not config["prompt"]:
        errors["prompt"] = "prompt must be a non-empty string"
    if not isinstance(settings["model"], str) or not settings["model"]:
        errors["model"] = "model must be a non-empty string"
    if not isinstance(settings["system_prompt"], str):
        errors["system_prompt"] = "system_prompt must be a string"
    for key in ("num_ctx", "num_predict"):
        value = settings[key]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            errors[key] = f"{key} must be a positive integer"
    if isinstance(settings["temperature"], bool) or not isinstance(settings["temperature"], (int, float)):
        errors["temperature"] = "temperature must be a number"
    return ValidationResult.from_errors(errors)


async def ai_prompt_handler(
    config: dict[str, Any], _context: ContextView, *, app_settings: AppConfig
) -> ExecutionResult:
    """Send one prompt to a local Ollama model and return its reply."""
    metadata = {"nodeType": "action", "subtype": "ai_prompt"}
    validation = validate_ai_prompt(config, app_settings=app_settings)
    if not validation.valid:
        detail = "; ".join(f"{key}: {message}" for key, message in validation.errors.items())
        return ExecutionResult(success=False, error=detail, metadata=metadata)

    settings = _settings(config, app_settings)
    try:
        from langchain_core.messages import HumanMessage, SystemMessage
        from langchain_ollama import ChatOllama
    except ImportError:
        return ExecutionResult(
            success=False,
            error="Missing AI dependencies. Install with: pip install langchain-ollama",
            metadata=metadata,
        )

    llm = ChatOllama(
        model=settings["model"],
        num_ctx=settings["num_ctx"],
        num_predict=settings["num_predict"],
        temperature=float(settings["temperature"]),
    )
    messages = [SystemMessage(content=settings["system_prompt"]), HumanMessage(content=config["prompt"])]
    try:
        reply = await llm.ainvoke(messages)
    except (ConnectionError, OSError, ValueError) as exc:
        return ExecutionResult(success=False, error=f"Model call failed: {exc}", metadata=metadata)

    return ExecutionResult(
        success=True,
        data={
            "output": _extract_text(reply),
            "model": settings["model"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        metadata=metadata,
    )
