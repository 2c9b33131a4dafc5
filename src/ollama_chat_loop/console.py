from __future__ import annotations

import asyncio
import sys
import threading
import time
from typing import TextIO

from ollama_chat_loop.cancellation import CancellationSignal
from ollama_chat_loop.models import ResponseChunk

_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


class Spinner:
    """Waiting indicator shown until the first chunk arrives.

    Stops animating as soon as the cancellation signal fires, and on stop
    reports the cancellation reason in place of the indicator.
    """

    def __init__(
        self,
        model: str = "",
        cancel: CancellationSignal | None = None,
        *,
        stream: TextIO | None = None,
        interval: float = 0.08,
    ):
        self._label = f"Waiting for {model or 'model'}..."
        self._cancel = cancel
        self._stream = stream or sys.stdout
        self._interval = interval
        self._done = threading.Event()
        self._thread: threading.Thread | None = None
        self._started_at = 0.0
        self._drawn = 0

    def start(self) -> None:
        self._started_at = time.monotonic()
        self._thread = threading.Thread(target=self._spin, name="chat-spinner", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._done.is_set():
            return
        self._done.set()
        if self._thread:
            self._thread.join()
        self._stream.write("\r" + " " * self._drawn + "\r")
        if self._cancel is not None and self._cancel.is_set:
            self._stream.write(f"[cancelled: {self._cancel.reason}]")
        self._stream.flush()

    def _frame(self, tick: int) -> str:
        elapsed = time.monotonic() - self._started_at
        return f"{_FRAMES[tick % len(_FRAMES)]} {self._label} {elapsed:.0f}s"

    def _spin(self) -> None:
        tick = 0
        try:
            while not self._done.is_set():
                if self._cancel is not None and self._cancel.is_set:
                    break
                frame = self._frame(tick)
                self._drawn = max(self._drawn, len(frame))
                self._stream.write("\r" + frame)
                self._stream.flush()
                self._done.wait(self._interval)
                tick += 1
        except (UnicodeEncodeError, OSError):
            pass  # terminal can't draw the frames



class StdoutSink:
    """Writes chunk content as it arrives; stops the spinner on the first chunk."""

    def __init__(self, spinner: Spinner | None = None, stream=None):
        self._spinner = spinner
        self._stream = stream or sys.stdout

    def __call__(self, chunk: ResponseChunk) -> None:
        if self._spinner is not None:
            self._spinner.stop()
            self._spinner = None
        if chunk.content:
            self._stream.write(chunk.content)
            self._stream.flush()


async def read_line(prompt: str, cancel: CancellationSignal) -> str:
    """input() on a daemon thread, raced against the cancellation signal.

    Raises Cancelled if the signal fires first and EOFError on closed stdin.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _deliver(value: str | None, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(value or "")

    def _read() -> None:
        try:
            value, error = input(prompt), None
        except (EOFError, OSError) as ex:
            value, error = None, ex
        if not loop.is_closed():
            loop.call_soon_threadsafe(_deliver, value, error)

    threading.Thread(target=_read, daemon=True).start()
    return await cancel.race(future)
