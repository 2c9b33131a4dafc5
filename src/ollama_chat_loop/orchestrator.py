from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from ollama_chat_loop.cancellation import CancellationSignal
from ollama_chat_loop.chat_invoker import ChatInvoker, validate_prompt
from ollama_chat_loop.errors import ChatClientError, StoreUnavailable
from ollama_chat_loop.memory.store import ContextStore
from ollama_chat_loop.models import ResponseChunk, Turn


class ChatState(str, Enum):
    IDLE = "idle"
    LOADING_CONTEXT = "loading"
    AWAITING_RESPONSE = "requesting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class ChatResult:
    state: ChatState
    text: str = ""
    chunks: list[ResponseChunk] = field(default_factory=list)
    exchange_id: str | None = None
    persisted: bool = False


def _on_finalize_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Finalize failed ({exc}). Retrying once...")


class ContextedChatOrchestrator:
    """Runs one prompt through context loading, streaming and persistence."""

    def __init__(
        self,
        invoker: ChatInvoker,
        store: ContextStore | None,
        cancel: CancellationSignal,
        *,
        use_context: bool = True,
        finalize_retry_wait: float = 0.2,
    ):
        self._invoker = invoker
        self._store = store if use_context else None
        self._cancel = cancel
        self._finalize_retry_wait = finalize_retry_wait
        self.state = ChatState.IDLE
        self._log = logger.bind(phase=self.state.value)

    @property
    def use_context(self) -> bool:
        return self._store is not None

    async def run(
        self,
        prompt: str,
        sink: Callable[[ResponseChunk], None] | None = None,
    ) -> ChatResult:
        validate_prompt(prompt)
        prompt_turn = Turn.user(prompt)
        result = ChatResult(state=ChatState.LOADING_CONTEXT)

        try:
            self._enter(ChatState.LOADING_CONTEXT)
            context = self._load_context()
            result.exchange_id = self._record_prompt(prompt_turn)

            self._enter(ChatState.AWAITING_RESPONSE)
            if self._cancel.is_set:
                return self._aborted(result)
            stream = await self._invoker.invoke([*context, prompt_turn])
            try:
                if stream.cancelled or self._cancel.is_set:
                    return self._aborted(result)

                self._enter(ChatState.STREAMING)
                parts: list[str] = []
                async for chunk in stream:
                    result.chunks.append(chunk)
                    parts.append(chunk.content)
                    if sink is not None:
                        sink(chunk)
                result.text = "".join(parts)
            finally:
                await stream.aclose()
            if not stream.completed:
                return self._aborted(result)

            self._enter(ChatState.FINALIZING)
            result.persisted = self._finalize(result.exchange_id, Turn.assistant(result.text))
        except ChatClientError as ex:
            if ex.phase is None:
                ex.phase = self.state.value
            self._failed(result, ex)
            raise
        except Exception as ex:
            self._failed(result, ex)
            raise

        self._enter(ChatState.DONE)
        result.state = ChatState.DONE
        self._log.debug(f"Assembled response ({len(result.chunks)} chunks): {result.text!r}")
        self._log.debug(f"Full response: {[c.raw for c in result.chunks]!r}")
        return result

    def _failed(self, result: ChatResult, ex: Exception) -> None:
        self._log.error(f"Chat failed: {type(ex).__name__}: {ex}")
        self._enter(ChatState.FAILED)
        result.state = ChatState.FAILED

    def _enter(self, state: ChatState) -> None:
        self._log.debug(f"Chat state: {self.state.value} -> {state.value}")
        self.state = state
        self._log = logger.bind(phase=state.value)

    def _aborted(self, result: ChatResult) -> ChatResult:
        self._enter(ChatState.ABORTED)
        result.state = ChatState.ABORTED
        if result.exchange_id is not None:
            self._log.warning(
                f"Chat aborted; exchange {result.exchange_id} left without a reply "
                f"(partial response: {result.text!r})"
            )
        return result

    def _load_context(self) -> list[Turn]:
        if self._store is None:
            return []
        try:
            turns = self._store.all_turns()
        except StoreUnavailable as ex:
            self._log.warning(f"Context store unavailable, continuing without history: {ex}")
            return []
        self._log.info(f"Loaded {len(turns)} prior turns as context")
        return turns

    def _record_prompt(self, prompt: Turn) -> str | None:
        if self._store is None:
            return None
        try:
            return self._store.append_prompt(prompt, phase=self.state.value)
        except StoreUnavailable as ex:
            self._log.warning(f"Could not record prompt, reply will not be persisted: {ex}")
            return None

    def _finalize(self, handle: str | None, reply: Turn) -> bool:
        if self._store is None or handle is None:
            return False

        @retry(
            retry=retry_if_exception_type(StoreUnavailable),
            wait=wait_fixed(self._finalize_retry_wait),
            stop=stop_after_attempt(2),
            before_sleep=_on_finalize_retry,
        )
        def _write() -> None:
            self._store.finalize(handle, reply)

        try:
            _write()
        except RetryError as ex:
            self._log.warning(f"Reply for exchange {handle} was not persisted: {ex.last_attempt.exception()}")
            return False
        return True
