"""Turn-level error taxonomy shared by the transport, session, and orchestrator.

Tool-level failures live in :mod:`termpilot.ai.tools.errors`; they never abort
a turn. The classes here are the only ones allowed to end a turn early:

* :class:`ConfigurationError` is fatal and never retried.
* :class:`TransientTransportError` is retried, but only before the first chunk.
* :class:`TerminalTransportError` surfaces with any partial content already
  delivered and is never retried.
"""

from __future__ import annotations

from typing import Sequence

__all__ = [
    "ConfigurationError",
    "TransportError",
    "TransientTransportError",
    "TerminalTransportError",
    "TurnInProgressError",
]


class ConfigurationError(RuntimeError):
    """Raised when the engine cannot run because settings are incomplete or rejected."""

    def __init__(self, message: str, *, missing: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.missing = tuple(missing)


class TransportError(RuntimeError):
    """Base class for failures of the model transport."""

    retryable: bool = False


class TransientTransportError(TransportError):
    """Connection, timeout, rate-limit or 5xx failure that may succeed on retry."""

    retryable = True


class TerminalTransportError(TransportError):
    """Transport failure that ends the exchange.

    ``partial_content`` carries the text that had already streamed to the
    render sink before the failure, so callers can keep it on screen without
    replaying the request.
    """

    def __init__(
        self,
        message: str,
        *,
        partial_content: str = "",
        attempts: int = 1,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.partial_content = partial_content
        self.attempts = attempts
        self.cause = cause


class TurnInProgressError(RuntimeError):
    """Raised when a turn is submitted while another one is still in flight."""
