from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable
from typing import TypeVar

from loguru import logger

from ollama_chat_loop.errors import Cancelled

T = TypeVar("T")

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationSignal:
    """Cooperative cancellation token, fired at most once.

    One owner arms it against process termination signals; everything that
    blocks receives it explicitly and races its wait against it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._armed = False

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def arm(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if self._armed:
            return
        self._armed = True
        loop = loop or asyncio.get_running_loop()
        for sig in _HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.fire, sig.name)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    def fire(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info(f"Cancellation requested: {reason}")

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first, in which case raise Cancelled."""
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled(self._reason)

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
                try:
                    await work
                except asyncio.CancelledError:
                    pass
                except Exception as ex:
                    logger.debug(f"Pending work failed while being cancelled: {ex!r}")

        if work.cancelled():
            raise Cancelled(self._reason)
        return work.result()
