from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

_DEFAULT_HOST = "http://localhost:11434"


@dataclass
class AppConfig:
    model: str
    host: str
    use_context: bool
    context_db_path: str
    keep_alive: str | None
    temperature: float | None
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def parse_app_config(config: dict) -> AppConfig:
    keep_alive = config.get("KeepAlive")
    return AppConfig(
        model=str(config.get("Model", "mistral")).strip(),
        host=str(config.get("Host") or os.environ.get("OLLAMA_HOST") or _DEFAULT_HOST),
        use_context=_to_bool(config.get("UseContext", True), default=True),
        context_db_path=str(config.get("ContextDbPath", ".ollama_chat/context.db")),
        keep_alive=str(keep_alive) if keep_alive is not None else None,
        temperature=_optional_float(config.get("Temperature")),
        log_level=os.environ.get("LOG_LEVEL") or config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )
