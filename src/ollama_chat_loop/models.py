from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str

    @classmethod
    def user(cls, content: str) -> Turn:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Turn:
        return cls(Role.ASSISTANT, content)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Turn:
        """Decode a stored turn; rejects anything that is not a user/assistant string message."""
        try:
            role = Role(data["role"])
        except (KeyError, ValueError) as ex:
            raise ValueError(f"Invalid turn role: {data.get('role')!r}") from ex
        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError(f"Turn content must be a string, got {type(content).__name__}")
        return cls(role, content)

    def to_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


_METRIC_FIELDS = (
    "total_duration",
    "load_duration",
    "prompt_eval_count",
    "prompt_eval_duration",
    "eval_count",
    "eval_duration",
)


@dataclass(frozen=True)
class StreamKind:
    """Decides what counts as the terminal chunk for one kind of request."""

    name: str
    is_terminal: Callable[[Mapping[str, Any]], bool]
    content: Callable[[Mapping[str, Any]], str]


def _chat_content(payload: Mapping[str, Any]) -> str:
    message = payload.get("message") or {}
    return message.get("content") or ""


CHAT_STREAM = StreamKind(
    name="chat",
    is_terminal=lambda payload: bool(payload.get("done")),
    content=_chat_content,
)

# pull/push/create report progress and finish with status "success"
PROGRESS_STREAM = StreamKind(
    name="progress",
    is_terminal=lambda payload: payload.get("status") == "success",
    content=lambda payload: payload.get("status") or "",
)


@dataclass(frozen=True)
class ResponseChunk:
    content: str
    is_final: bool
    termination_reason: str | None = None
    metrics: dict[str, int] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], kind: StreamKind) -> ResponseChunk:
        is_final = kind.is_terminal(payload)
        metrics = {
            name: payload[name]
            for name in _METRIC_FIELDS
            if payload.get(name) is not None
        }
        return cls(
            content=kind.content(payload),
            is_final=is_final,
            termination_reason=payload.get("done_reason") if is_final else None,
            metrics=metrics,
            raw=payload,
        )


@dataclass(frozen=True)
class StoredExchange:
    prompt: Turn
    reply: Turn | None = None
    id: str | None = None
    seq: int | None = None
    model: str = ""
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_dangling(self) -> bool:
        return self.reply is None

    def turns(self) -> list[Turn]:
        if self.reply is None:
            return [self.prompt]
        return [self.prompt, self.reply]
