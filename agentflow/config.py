from __future__ import annotations

import os
from configparser import ConfigParser
from datetime import timedelta
from pathlib import Path

import yaml


class AppConfig:
    def __init__(self, config_path: Path | None = None) -> None:
        parser = ConfigParser()
        package_root = Path(__file__).resolve().parent.parent
        parser.read(config_path or package_root / "config.ini")
        if not parser.sections() and config_path is None:
            parser.read(Path("config.ini"))
        self._parser = parser
        prompts_path = package_root / "prompts.yaml"
        self._prompts = self._load_prompts(prompts_path)

    def engine_settings(self) -> dict[str, object]:
        return {
            "default_timeout": self._get_optional_float("engine", "default_timeout", 300.0),
            "max_wait_seconds": self._get_float("engine", "max_wait_seconds", 30.0),
            "plan_strategy": self._get_str("engine", "plan_strategy", "depth_first"),
        }

    def context_settings(self) -> dict[str, object]:
        return {
            "access_log_limit": self._get_int("context", "access_log_limit", 1000),
            "snapshot_limit": self._get_int("context", "snapshot_limit", 100),
            "session_ttl": timedelta(hours=self._get_float("context", "session_ttl_hours", 24.0)),
            "local_ttl": timedelta(hours=self._get_float("context", "local_ttl_hours", 1.0)),
            "cleanup_interval": self._get_float("context", "cleanup_interval_seconds", 300.0),
            "encryption_key": os.getenv("AGENTFLOW_ENCRYPTION_KEY")
            or self._get_str("context", "encryption_key", ""),
        }

    def storage_settings(self) -> dict[str, object]:
        return {
            "db_path": os.getenv("AGENTFLOW_DB_PATH") or self._get_str("storage", "db_path", "data/agentflow.db"),
        }

    def ai_defaults(self) -> dict[str, object]:
        ai_prompt = self._prompts.get("ai_response", {})
        prompt_text = ai_prompt.get("system_prompt") if isinstance(ai_prompt, dict) else None
        return {
            "model": self._get_str("ai_defaults", "model", "qwen2.5:1.5b"),
            "system_prompt": self._get_str(
                "ai_defaults",
                "system_prompt",
                prompt_text if isinstance(prompt_text, str) else "You are a helpful customer support agent.",
            ),
            "input_field": self._get_str("ai_defaults", "input_field", "message"),
            "num_ctx": self._get_int("ai_defaults", "num_ctx", 1024),
            "num_predict": self._get_int("ai_defaults", "num_predict", 256),
            "temperature": self._get_float("ai_defaults", "temperature", 0.7),
        }

    def _get_str(self, section: str, key: str, fallback: str) -> str:
        return self._parser.get(section, key, fallback=fallback)

    def _get_int(self, section: str, key: str, fallback: int) -> int:
        return self._parser.getint(section, key, fallback=fallback)

    def _get_float(self, section: str, key: str, fallback: float) -> float:
        return self._parser.getfloat(section, key, fallback=fallback)

    def _get_optional_float(self, section: str, key: str, fallback: float | None) -> float | None:
        value = self._parser.get(section, key, fallback="")
        if not value:
            return fallback
        if value.strip().lower() in {"none", "off", "0"}:
            return None
        return float(value)

    def _load_prompts(self, path: Path) -> dict[str, object]:
        if not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError):
            return {}
        return raw if isinstance(raw, dict) else {}


app_config = AppConfig()
