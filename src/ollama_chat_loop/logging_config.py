import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

# every record carries the chat phase it was logged from; "-" outside a chat
_DEFAULT_EXTRA = {"phase": "-"}

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <magenta>{extra[phase]:<10}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[phase]:<10} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


@dataclass
class StderrLogConsumer:
    """stdout belongs to the streamed reply, so console logging goes to stderr."""

    colorize: bool | None = None

    def register(self, level: str) -> None:
        logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, colorize=self.colorize)

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


@dataclass
class FileLogConsumer:
    path: str = "logs/chat.log"
    rotation: str = "10 MB"
    retention: int = 3
    serialize: bool = False

    def register(self, level: str) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self.path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self.rotation,
            retention=self.retention,
            serialize=self.serialize,
        )

    def describe(self, level: str) -> str:
        kind = "json" if self.serialize else "file"
        return f"{kind} ({self.path}, {level})"


def _json_file_consumer(path: str = "logs/chat.jsonl", **kwargs: Any) -> FileLogConsumer:
    return FileLogConsumer(path=path, serialize=True, **kwargs)


_CONSUMER_FACTORIES: dict[str, Any] = {
    "console": StderrLogConsumer,
    "file": FileLogConsumer,
    "json": _json_file_consumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "file", "path": "logs/chat.log"},
]


def _resolve_level(level: object, fallback: str = "INFO") -> str:
    name = str(level).strip().upper()
    try:
        logger.level(name)
    except ValueError:
        logger.warning(f"Unknown log level {level!r}, using {fallback}")
        return fallback
    return name


def build_consumer(config: dict[str, Any]) -> LogConsumer | None:
    factory = _CONSUMER_FACTORIES.get(config.get("type", ""))
    if factory is None:
        return None
    return factory(**{k: v for k, v in config.items() if k not in ("type", "level")})


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers.

    Returns a description of each registered consumer; unknown consumer
    types are skipped with a warning.
    """
    logger.remove()
    logger.configure(extra=_DEFAULT_EXTRA)
    default_level = _resolve_level(level)

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        consumer = build_consumer(config)
        if consumer is None:
            logger.warning(f"Unknown log consumer type: {config.get('type', '')!r}")
            continue
        sink_level = _resolve_level(config["level"], default_level) if "level" in config else default_level
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
