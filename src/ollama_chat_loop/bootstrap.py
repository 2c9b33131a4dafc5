from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from ollama_chat_loop.app_config import AppConfig
from ollama_chat_loop.cancellation import CancellationSignal
from ollama_chat_loop.chat_invoker import ChatInvoker, create_client
from ollama_chat_loop.errors import StoreUnavailable
from ollama_chat_loop.logging_config import setup_logging
from ollama_chat_loop.memory import ContextStore
from ollama_chat_loop.orchestrator import ContextedChatOrchestrator


@dataclass
class AppRuntime:
    orchestrator: ContextedChatOrchestrator
    cancel: CancellationSignal
    model: str
    context_store: ContextStore | None
    log_descriptions: list[str]

    def close(self) -> None:
        if self.context_store is not None:
            self.context_store.close()


def open_context_store(app: AppConfig, model: str) -> ContextStore | None:
    if not app.use_context:
        return None
    db_path = Path(app.context_db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    try:
        return ContextStore(str(db_path), model=model)
    except StoreUnavailable as ex:
        logger.warning(f"Running without persisted context: {ex}")
        return None


def bootstrap_runtime(app: AppConfig, cancel: CancellationSignal | None = None) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    cancel = cancel or CancellationSignal()
    invoker = ChatInvoker(
        create_client(app.host),
        app.model,
        cancel,
        temperature=app.temperature,
        keep_alive=app.keep_alive,
    )
    context_store = open_context_store(app, invoker.model)
    logger.info(
        f"Chat runtime ready: model={invoker.model}, host={app.host}, "
        f"context={'on' if context_store is not None else 'off'}"
    )

    orchestrator = ContextedChatOrchestrator(
        invoker,
        context_store,
        cancel,
        use_context=context_store is not None,
    )
    return AppRuntime(
        orchestrator=orchestrator,
        cancel=cancel,
        model=invoker.model,
        context_store=context_store,
        log_descriptions=log_descriptions,
    )
