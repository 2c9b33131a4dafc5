from ollama_chat_loop.memory.store import ContextStore

__all__ = [
    "ContextStore",
]
