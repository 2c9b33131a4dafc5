from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any

import httpx
import ollama
from loguru import logger

from ollama_chat_loop.cancellation import CancellationSignal
from ollama_chat_loop.errors import (
    Cancelled,
    ChatClientError,
    IncompleteStreamError,
    StreamError,
    TransportError,
)
from ollama_chat_loop.models import CHAT_STREAM, ResponseChunk, StreamKind

_MISSING = object()
_CANCELLED = object()
_EXHAUSTED = object()

TRANSPORT_ERRORS = (ConnectionError, httpx.TransportError)


async def _anext(iterator: AsyncIterator[Any]) -> Any:
    return await iterator.__anext__()


def _as_mapping(payload: Any) -> Mapping[str, Any]:
    if isinstance(payload, Mapping):
        return payload
    model_dump = getattr(payload, "model_dump", None)
    if callable(model_dump):
        return model_dump(exclude_none=True)
    raise StreamError(f"Unexpected stream payload of type {type(payload).__name__}")


class StreamingResponseIterator:
    """Single-pass, cancellable async iterator over the chunks of one response.

    Wraps the raw payload stream returned by the Ollama client. The sequence
    either ends with exactly one final chunk, ends early because the
    cancellation signal fired (``cancelled`` is set, no error), or fails with
    StreamError / IncompleteStreamError / TransportError.
    """

    def __init__(
        self,
        source: AsyncIterator[Any],
        cancel: CancellationSignal,
        *,
        kind: StreamKind = CHAT_STREAM,
        on_complete: Callable[[ResponseChunk], None] | None = None,
    ):
        self._source = source
        self._iterator = source.__aiter__()
        self._cancel = cancel
        self._kind = kind
        self._on_complete = on_complete
        self._primed: Any = _MISSING
        self._established = False
        self._finished = False
        self.completed = False
        self.cancelled = False

    def __aiter__(self) -> StreamingResponseIterator:
        return self

    async def prime(self) -> None:
        """Pull the first payload ahead so connection failures surface immediately."""
        if self._finished or self._primed is not _MISSING or self._cancel.is_set:
            return
        try:
            self._primed = await self._pull()
        except ChatClientError:
            await self._finish()
            raise

    async def __anext__(self) -> ResponseChunk:
        if self._finished:
            raise StopAsyncIteration
        if self._cancel.is_set:
            await self._abort()
            raise StopAsyncIteration

        try:
            payload = await self._next_payload()
        except ChatClientError:
            await self._finish()
            raise

        if payload is _CANCELLED:
            await self._abort()
            raise StopAsyncIteration
        if payload is _EXHAUSTED:
            await self._finish()
            raise IncompleteStreamError(f"{self._kind.name} stream ended without a terminal chunk")

        try:
            data = _as_mapping(payload)
        except StreamError:
            await self._finish()
            raise
        if "error" in data:
            await self._finish()
            raise StreamError(str(data["error"]))

        chunk = ResponseChunk.from_payload(data, self._kind)
        if chunk.is_final:
            self.completed = True
            await self._finish()
            if self._on_complete is not None:
                self._on_complete(chunk)
        return chunk

    async def aclose(self) -> None:
        await self._finish()

    async def _next_payload(self) -> Any:
        if self._primed is not _MISSING:
            payload, self._primed = self._primed, _MISSING
            return payload
        return await self._pull()

    async def _pull(self) -> Any:
        try:
            payload = await self._cancel.race(_anext(self._iterator))
        except Cancelled:
            return _CANCELLED
        except StopAsyncIteration:
            return _EXHAUSTED
        except ollama.ResponseError as ex:
            raise StreamError(ex.error) from ex
        except TRANSPORT_ERRORS as ex:
            if not self._established:
                raise TransportError(f"Could not reach the inference server: {ex}") from ex
            raise IncompleteStreamError(f"Connection lost mid-stream: {ex}") from ex
        self._established = True
        return payload

    async def _abort(self) -> None:
        if not self.cancelled:
            self.cancelled = True
            logger.debug(f"Aborting {self._kind.name} stream: {self._cancel.reason}")
        await self._finish()

    async def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._primed = _MISSING
        aclose = getattr(self._source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as ex:
            logger.debug(f"Ignoring error while closing stream source: {ex!r}")
