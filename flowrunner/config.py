from __future__ import annotations

import os
from configparser import ConfigParser
from pathlib import Path

import yaml


class AppConfig:
    def __init__(self, config_path: str | Path | None = None) -> None:
        parser = ConfigParser()
        package_root = Path(__file__).resolve().parent.parent
        if config_path is None:
            config_path = os.environ.get("FLOWRUNNER_CONFIG") or package_root / "config.ini"
        parser.read(config_path)
        if not parser.sections():
            parser.read(Path("config.ini"))
        self._parser = parser
        templates_path = Path(__file__).resolve().parent / "templates.yaml"
        self._templates = self._load_templates(templates_path)

    def database_path(self) -> str:
        return self._get_str("database", "path", "data/flowrunner.db")

    def queue_settings(self) -> dict[str, object]:
        return {
            "poll_interval": self._get_float("queue", "poll_interval_seconds", 5.0),
            "error_backoff": self._get_float("queue", "error_backoff_seconds", 10.0),
            "execution_timeout": self._get_float("queue", "execution_timeout_seconds", 300.0),
            "node_timeout": self._get_float("queue", "node_timeout_seconds", 60.0),
            "stale_after": self._get_float("queue", "stale_after_seconds", 900.0),
            "shutdown_grace": self._get_float("queue", "shutdown_grace_seconds", 10.0),
            "autostart": self._get_bool("queue", "autostart", True),
        }

    def logging_settings(self) -> dict[str, str]:
        return {
            "level": self._get_str("logging", "level", "INFO"),
            "format": self._get_str(
                "logging",
                "format",
                "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            ),
        }

    def integration_settings(self) -> dict[str, object]:
        return {
            "max_delay_seconds": self._get_float("integrations", "max_delay_seconds", 2.0),
            "http_timeout_seconds": self._get_float("integrations", "http_timeout_seconds", 8.0),
            "allow_http_domains": self._get_csv("integrations", "allow_http_domains", []),
        }

    def ai_defaults(self) -> dict[str, object]:
        return {
            "model": self._get_str("ai_defaults", "model", "qwen2.5:1.5b"),
            "system_prompt": self._get_str(
                "ai_defaults",
                "system_prompt",
                "You are a helpful workflow assistant.",
            ),
            "temperature": self._get_float("ai_defaults", "temperature", 0.2),
            "num_ctx": self._get_int("ai_defaults", "num_ctx", 1024),
            "num_predict": self._get_int("ai_defaults", "num_predict", 128),
        }

    def workflow_templates(self) -> list[dict[str, object]]:
        raw = self._templates.get("templates", [])
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, dict) and isinstance(item.get("id"), str)]

    def _get_str(self, section: str, key: str, fallback: str) -> str:
        return self._parser.get(section, key, fallback=fallback)

    def _get_int(self, section: str, key: str, fallback: int) -> int:
        return self._parser.getint(section, key, fallback=fallback)

    def _get_float(self, section: str, key: str, fallback: float) -> float:
        return self._parser.getfloat(section, key, fallback=fallback)

    def _get_bool(self, section: str, key: str, fallback: bool) -> bool:
        return self._parser.getboolean(section, key, fallback=fallback)

    def _get_csv(self, section: str, key: str, fallback: list[str]) -> list[str]:
        value = self._parser.get(section, key, fallback="")
        if not value:
            return list(fallback)
        return [part.strip() for part in value.split(",") if part.strip()]

    def _load_templates(self, path: Path) -> dict[str, object]:
        if not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError):
            return {}
        return raw if isinstance(raw, dict) else {}


app_config = AppConfig()
