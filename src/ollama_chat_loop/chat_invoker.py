from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import ollama
from loguru import logger

from ollama_chat_loop.cancellation import CancellationSignal
from ollama_chat_loop.errors import InvalidArgument, TransportError
from ollama_chat_loop.models import CHAT_STREAM, ResponseChunk, Role, Turn
from ollama_chat_loop.streaming import TRANSPORT_ERRORS, StreamingResponseIterator

MODEL_ALIASES: dict[str, str] = {
    "deepseek": "deepseek-r1",
    "mistral": "mistral",
    "llama": "llama3.2",
}


def resolve_model(name: str) -> str:
    return MODEL_ALIASES.get(name.strip().lower(), name.strip())


def validate_prompt(prompt: object) -> str:
    if not isinstance(prompt, str):
        raise InvalidArgument(f"prompt should be a string, received {type(prompt).__name__}")
    if prompt == "":
        raise InvalidArgument("prompt should not be empty")
    return prompt


def create_client(host: str | None = None) -> ollama.AsyncClient:
    return ollama.AsyncClient(host=host)


class ChatInvoker:
    """Issues one streaming chat request; knows nothing about persistence."""

    def __init__(
        self,
        client: Any,
        model: str,
        cancel: CancellationSignal,
        *,
        temperature: float | None = None,
        keep_alive: str | None = None,
    ):
        self._client = client
        self._model = resolve_model(model)
        self._cancel = cancel
        self._temperature = temperature
        self._keep_alive = keep_alive

    @property
    def model(self) -> str:
        return self._model

    async def invoke(
        self,
        turns: Sequence[Turn],
        *,
        on_complete: Callable[[ResponseChunk], None] | None = None,
    ) -> StreamingResponseIterator:
        """Send ``turns`` (prior context followed by the new prompt) and return the chunk stream.

        Raises InvalidArgument before any network call when the last turn is
        not a non-empty user prompt, and TransportError when the server cannot
        be reached.
        """
        if not turns or turns[-1].role is not Role.USER:
            raise InvalidArgument("the last turn must be the user prompt")
        validate_prompt(turns[-1].content)

        kwargs: dict[str, Any] = dict(
            model=self._model,
            messages=[t.to_message() for t in turns],
            stream=True,
        )
        if self._temperature is not None:
            kwargs["options"] = {"temperature": self._temperature}
        if self._keep_alive is not None:
            kwargs["keep_alive"] = self._keep_alive

        logger.debug(f"Chat request: model={self._model}, turns={len(turns)}")
        try:
            source = await self._client.chat(**kwargs)
        except TRANSPORT_ERRORS as ex:
            raise TransportError(f"Could not reach the inference server: {ex}") from ex

        iterator = StreamingResponseIterator(
            source,
            self._cancel,
            kind=CHAT_STREAM,
            on_complete=self._completion_logger(on_complete),
        )
        await iterator.prime()
        return iterator

    def _completion_logger(
        self, on_complete: Callable[[ResponseChunk], None] | None
    ) -> Callable[[ResponseChunk], None]:
        def _done(chunk: ResponseChunk) -> None:
            logger.debug(
                f"Chat response complete: model={self._model}, "
                f"done_reason={chunk.termination_reason}, metrics={chunk.metrics}"
            )
            if on_complete is not None:
                on_complete(chunk)

        return _done
