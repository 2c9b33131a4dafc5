from __future__ import annotations


class ChatClientError(Exception):
    """Base class for failures surfaced by the chat client.

    ``phase`` names the orchestrator phase the failure happened in
    (``loading``, ``requesting``, ``streaming``, ``finalizing``) once known.
    """

    def __init__(self, message: str = "", *, phase: str | None = None):
        super().__init__(message)
        self.phase = phase

    def __str__(self) -> str:
        text = super().__str__()
        if self.phase:
            return f"[{self.phase}] {text}"
        return text


class InvalidArgument(ChatClientError, ValueError):
    """Empty or non-string prompt, rejected before any I/O."""


class TransportError(ChatClientError):
    """The request to the inference server could not be established."""


class StreamError(ChatClientError):
    """The server reported an in-band error chunk."""

    def __init__(self, message: str, *, phase: str | None = None):
        super().__init__(message, phase=phase)
        self.server_message = message


class IncompleteStreamError(ChatClientError):
    """The stream closed without a terminal chunk."""


class StoreUnavailable(ChatClientError):
    """The context store could not be read or written."""


class ExchangeAlreadyFinalized(ChatClientError):
    """finalize() was called twice for the same exchange."""


class Cancelled(Exception):
    """Raised by CancellationSignal.race when the signal wins."""
