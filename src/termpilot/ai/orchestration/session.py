"""Streaming session: one network exchange with the model transport."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Mapping, Sequence

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from ...chat.message_model import ToolCall
from ..ai_types import AgentRetryPolicy, ModelTransport, TransportChunk
from ..errors import ConfigurationError, TerminalTransportError, TransientTransportError
from .cancellation import CancellationToken, OperationCancelled

LOGGER = logging.getLogger(__name__)

SessionEventType = Literal[
    "reasoning",
    "content",
    "tool_call_fragment",
    "assistant_complete",
    "error",
    "done",
]


class SessionState(str, Enum):
    """Lifecycle of a streaming session; the last three states are terminal."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ERRORED, SessionState.CANCELLED)


@dataclass(slots=True)
class SessionEvent:
    """Event emitted to the session listener while a stream is in flight."""

    type: SessionEventType
    text: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    error: BaseException | None = None


@dataclass(slots=True)
class SessionOutcome:
    """Terminal result of a session.

    ``content`` always holds exactly the content chunks delivered to the
    listener, including for cancelled and errored sessions.
    """

    state: SessionState
    content: str = ""
    reasoning: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    error: BaseException | None = None
    attempts: int = 0
    finish_reason: str | None = None

    @property
    def completed(self) -> bool:
        return self.state is SessionState.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.state is SessionState.CANCELLED


SessionListener = Callable[[SessionEvent], Awaitable[None] | None]


@dataclass(slots=True)
class _PendingToolCall:
    call_id: str
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Assembles incremental tool-call fragments keyed by call id.

    A new id starts an accumulator; a repeated id appends to its argument
    buffer. Calls are returned in order of first appearance.
    """

    def __init__(self) -> None:
        self._calls: dict[str, _PendingToolCall] = {}
        self._last_id: str | None = None

    def feed(self, chunk: TransportChunk) -> str:
        call_id = chunk.tool_call_id or self._last_id or f"call_{len(self._calls)}"
        pending = self._calls.get(call_id)
        if pending is None:
            pending = _PendingToolCall(call_id=call_id)
            self._calls[call_id] = pending
        if chunk.tool_name and not pending.name:
            pending.name = chunk.tool_name
        if chunk.arguments_delta:
            pending.arguments.append(chunk.arguments_delta)
        self._last_id = call_id
        return call_id

    def build(self) -> tuple[ToolCall, ...]:
        return tuple(
            ToolCall(id=pending.call_id, function_name=pending.name, raw_arguments="".join(pending.arguments))
            for pending in self._calls.values()
        )

    def __len__(self) -> int:
        return len(self._calls)


class StreamingSession:
    """Owns one exchange with a :class:`ModelTransport`.

    ``IDLE -> SENDING -> STREAMING -> {COMPLETED | ERRORED | CANCELLED}``.
    Transient failures are retried with exponential backoff only while no
    chunk has been received; once anything has streamed, a failure becomes a
    :class:`TerminalTransportError` carrying the partial text.

    Example:
        session = StreamingSession(client, listener=sink_adapter)
        outcome = await session.start(messages, tools, token)
    """

    def __init__(
        self,
        transport: ModelTransport,
        *,
        retry_policy: AgentRetryPolicy | None = None,
        listener: SessionListener | None = None,
        session_id: str | None = None,
    ) -> None:
        self._transport = transport
        self._retry_policy = (retry_policy or AgentRetryPolicy()).clamp()
        self._listener = listener
        self.session_id = session_id or uuid.uuid4().hex
        self._state = SessionState.IDLE
        self._content: list[str] = []
        self._reasoning: list[str] = []
        self._tool_calls = ToolCallAccumulator()
        self._received_any = False
        self._attempts = 0
        self._finish_reason: str | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def partial_content(self) -> str:
        return "".join(self._content)

    async def start(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> SessionOutcome:
        """Run the exchange to a terminal state and return its outcome."""

        if self._state is not SessionState.IDLE:
            raise RuntimeError(f"Session {self.session_id} already started (state={self._state.value})")
        token = cancellation_token or CancellationToken()
        self._state = SessionState.SENDING
        LOGGER.debug("Session %s sending %s message(s)", self.session_id, len(messages))

        try:
            async for attempt in self._retrying(token):
                with attempt:
                    await self._run_attempt(messages, tools, token)
        except OperationCancelled:
            return self._finish_cancelled()
        except TransientTransportError as exc:
            if token.cancelled:
                return self._finish_cancelled()
            error = TerminalTransportError(
                f"Model transport failed after {self._attempts} attempt(s): {exc}",
                partial_content=self.partial_content,
                attempts=self._attempts,
                cause=exc,
            )
            return await self._finish_errored(error)
        except TerminalTransportError as exc:
            exc.attempts = self._attempts
            if not exc.partial_content:
                exc.partial_content = self.partial_content
            return await self._finish_errored(exc)
        except ConfigurationError as exc:
            return await self._finish_errored(exc)

        if token.cancelled:
            return self._finish_cancelled()
        return await self._finish_completed()

    async def _run_attempt(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None,
        token: CancellationToken,
    ) -> None:
        self._attempts += 1
        if self._attempts > 1:
            LOGGER.debug("Session %s attempt %s", self.session_id, self._attempts)
        stream = self._transport.stream(messages, tools=tools or None, cancellation_token=token)
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    chunk = await token.race(iterator.__anext__())
                except StopAsyncIteration:
                    break
                if chunk.kind == "done":
                    self._finish_reason = chunk.finish_reason or self._finish_reason
                    break
                if chunk.kind == "error":
                    raise chunk.error or TransientTransportError(chunk.text or "Model stream reported an error")
                if token.cancelled:
                    raise OperationCancelled(token.reason or "cancelled")
                self._received_any = True
                self._state = SessionState.STREAMING
                await self._handle_chunk(chunk)
                if token.cancelled:
                    raise OperationCancelled(token.reason or "cancelled")
        except (OperationCancelled, ConfigurationError, TerminalTransportError):
            raise
        except TransientTransportError as exc:
            if self._received_any:
                raise TerminalTransportError(
                    f"Model stream interrupted: {exc}",
                    partial_content=self.partial_content,
                    cause=exc,
                ) from exc
            LOGGER.warning("Session %s transient transport failure: %s", self.session_id, exc)
            raise
        except Exception as exc:
            raise TerminalTransportError(
                f"Model stream failed: {exc}",
                partial_content=self.partial_content,
                cause=exc,
            ) from exc
        finally:
            await _aclose(iterator)

    async def _handle_chunk(self, chunk: TransportChunk) -> None:
        if chunk.finish_reason:
            self._finish_reason = chunk.finish_reason
        if chunk.kind == "reasoning" and chunk.text:
            self._reasoning.append(chunk.text)
            await self._emit(SessionEvent(type="reasoning", text=chunk.text))
        elif chunk.kind == "content" and chunk.text:
            self._content.append(chunk.text)
            await self._emit(SessionEvent(type="content", text=chunk.text))
        elif chunk.kind == "tool_call_fragment":
            call_id = self._tool_calls.feed(chunk)
            await self._emit(
                SessionEvent(
                    type="tool_call_fragment",
                    tool_call_id=call_id,
                    tool_name=chunk.tool_name,
                    arguments_delta=chunk.arguments_delta,
                )
            )

    def _retrying(self, token: CancellationToken) -> AsyncRetrying:
        policy = self._retry_policy
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(policy.max_attempts) | stop_when_event_set(token),
            wait=wait_exponential(
                multiplier=policy.backoff_min_seconds,
                max=policy.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientTransportError),
            sleep=lambda seconds: self._backoff_sleep(seconds, token),
            before_sleep=self._log_retry,
        )

    @staticmethod
    async def _backoff_sleep(seconds: float, token: CancellationToken) -> None:
        await token.race(asyncio.sleep(seconds))

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep_for = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            "Retrying session %s after attempt %s failed before streaming (%s); sleeping %.2fs",
            self.session_id,
            retry_state.attempt_number,
            exc,
            sleep_for,
        )

    def _finish_cancelled(self) -> SessionOutcome:
        self._state = SessionState.CANCELLED
        LOGGER.debug(
            "Session %s cancelled after %s content chunk(s)",
            self.session_id,
            len(self._content),
        )
        return SessionOutcome(
            state=SessionState.CANCELLED,
            content=self.partial_content,
            reasoning="".join(self._reasoning),
            attempts=self._attempts,
            finish_reason=self._finish_reason,
        )

    async def _finish_errored(self, error: BaseException) -> SessionOutcome:
        await self._emit(SessionEvent(type="error", error=error, text=str(error)))
        self._state = SessionState.ERRORED
        LOGGER.warning("Session %s errored: %s", self.session_id, error)
        return SessionOutcome(
            state=SessionState.ERRORED,
            content=self.partial_content,
            reasoning="".join(self._reasoning),
            error=error,
            attempts=self._attempts,
            finish_reason=self._finish_reason,
        )

    async def _finish_completed(self) -> SessionOutcome:
        content = self.partial_content
        tool_calls = self._tool_calls.build()
        await self._emit(SessionEvent(type="assistant_complete", text=content, tool_calls=tool_calls))
        await self._emit(SessionEvent(type="done"))
        self._state = SessionState.COMPLETED
        LOGGER.debug(
            "Session %s completed (chars=%s, tool_calls=%s, finish=%s)",
            self.session_id,
            len(content),
            len(tool_calls),
            self._finish_reason,
        )
        return SessionOutcome(
            state=SessionState.COMPLETED,
            content=content,
            reasoning="".join(self._reasoning),
            tool_calls=tool_calls,
            attempts=self._attempts,
            finish_reason=self._finish_reason,
        )

    async def _emit(self, event: SessionEvent) -> None:
        if self._listener is None or self._state.terminal:
            return
        try:
            result = self._listener(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.debug("Session listener failed for %s event", event.type, exc_info=True)


async def _aclose(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        LOGGER.debug("Failed to close transport stream", exc_info=True)


__all__ = [
    "SessionEvent",
    "SessionListener",
    "SessionOutcome",
    "SessionState",
    "StreamingSession",
    "ToolCallAccumulator",
]
