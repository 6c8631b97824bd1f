"""Cooperative cancellation shared by the orchestrator, session, and dispatcher."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised by :meth:`CancellationToken.race` when the token wins."""


class CancellationToken:
    """One-shot cancellation flag checked at defined suspension points.

    Nothing is preempted: code polls :attr:`cancelled` at chunk boundaries or
    races an awaitable against :meth:`wait`. A timer installed with
    :meth:`cancel_after` triggers the same path as a user cancel.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def is_set(self) -> bool:
        """Event-style alias so retry stop conditions can poll the token."""

        return self._event.is_set()

    def cancel(self, reason: str = "user") -> bool:
        """Trigger cancellation; returns ``False`` if it was already triggered."""

        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        self._clear_timer()
        LOGGER.debug("Cancellation requested (reason=%s)", reason)
        return True

    def cancel_after(self, seconds: float | None, *, reason: str = "timeout") -> None:
        """Schedule :meth:`cancel` after ``seconds`` on the running loop."""

        self._clear_timer()
        if seconds is None or seconds <= 0 or self.cancelled:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self.cancel, reason)

    def dispose(self) -> None:
        self._clear_timer()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        The losing awaitable is cancelled; :class:`OperationCancelled` is raised
        when the token wins.
        """

        if self.cancelled:
            _close_awaitable(awaitable)
            raise OperationCancelled(self._reason or "cancelled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            LOGGER.debug("Raced operation ended after cancellation", exc_info=True)
        raise OperationCancelled(self._reason or "cancelled")

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


def _close_awaitable(awaitable: Any) -> None:
    close = getattr(awaitable, "close", None)
    if callable(close):
        close()


__all__ = ["CancellationToken", "OperationCancelled"]
