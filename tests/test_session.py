"""Tests for the streaming session state machine."""

from __future__ import annotations

import asyncio

import pytest

from termpilot.ai.ai_types import AgentRetryPolicy
from termpilot.ai.errors import ConfigurationError, TerminalTransportError, TransientTransportError
from termpilot.ai.orchestration.cancellation import CancellationToken
from termpilot.ai.orchestration.session import SessionEvent, SessionState, StreamingSession, ToolCallAccumulator
from tests.helpers import ScriptedTransport, content, done, fragment, reasoning

MESSAGES = [{"role": "user", "content": "hi"}]


class _Recorder:
    def __init__(self) -> None:
        self.events: list[SessionEvent] = []

    def __call__(self, event: SessionEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type for event in self.events]


@pytest.mark.asyncio
async def test_completed_session_emits_events_in_order(fast_retry: AgentRetryPolicy) -> None:
    transport = ScriptedTransport([[reasoning("plan"), content("Hel"), content("lo"), done()]])
    recorder = _Recorder()
    session = StreamingSession(transport, retry_policy=fast_retry, listener=recorder)

    outcome = await session.start(MESSAGES)

    assert outcome.state is SessionState.COMPLETED
    assert outcome.content == "Hello"
    assert outcome.reasoning == "plan"
    assert outcome.attempts == 1
    assert outcome.finish_reason == "stop"
    assert recorder.types() == ["reasoning", "content", "content", "assistant_complete", "done"]
    assert session.state is SessionState.COMPLETED


@pytest.mark.asyncio
async def test_tool_call_fragments_are_assembled_by_id(fast_retry: AgentRetryPolicy) -> None:
    transport = ScriptedTransport(
        [
            [
                fragment("call_a", "read_file", '{"pa'),
                fragment("call_b", "list_directory", "{}"),
                fragment("call_a", None, 'th": "x.py"}'),
                done("tool_calls"),
            ]
        ]
    )
    recorder = _Recorder()
    session = StreamingSession(transport, retry_policy=fast_retry, listener=recorder)

    outcome = await session.start(MESSAGES, tools=[{"type": "function"}])

    assert [(call.id, call.function_name, call.raw_arguments) for call in outcome.tool_calls] == [
        ("call_a", "read_file", '{"path": "x.py"}'),
        ("call_b", "list_directory", "{}"),
    ]
    complete = [event for event in recorder.events if event.type == "assistant_complete"]
    assert complete[0].tool_calls == outcome.tool_calls
    assert transport.calls[0]["tools"] == [{"type": "function"}]


def test_accumulator_continues_fragments_without_ids() -> None:
    accumulator = ToolCallAccumulator()
    accumulator.feed(fragment("call_1", "run", '{"cmd"'))
    accumulator.feed(fragment(None, None, ': "ls"}'))

    (call,) = accumulator.build()

    assert call.raw_arguments == '{"cmd": "ls"}'
    assert len(accumulator) == 1


@pytest.mark.asyncio
async def test_cancel_after_n_chunks_keeps_exactly_n(fast_retry: AgentRetryPolicy) -> None:
    token = CancellationToken()
    transport = ScriptedTransport([[content("a"), content("b"), content("c"), content("d"), done()]])
    recorder = _Recorder()

    def listener(event: SessionEvent) -> None:
        recorder(event)
        if event.type == "content" and len([e for e in recorder.events if e.type == "content"]) == 2:
            token.cancel()

    session = StreamingSession(transport, retry_policy=fast_retry, listener=listener)

    outcome = await session.start(MESSAGES, cancellation_token=token)

    assert outcome.state is SessionState.CANCELLED
    assert outcome.content == "ab"
    assert recorder.types() == ["content", "content"]
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_chunk(fast_retry: AgentRetryPolicy) -> None:
    token = CancellationToken()
    release = asyncio.Event()

    class _SlowTransport:
        async def stream(self, messages, *, tools=None, cancellation_token=None):
            yield content("first")
            await release.wait()
            yield content("never")

    recorder = _Recorder()
    session = StreamingSession(_SlowTransport(), retry_policy=fast_retry, listener=recorder)
    task = asyncio.ensure_future(session.start(MESSAGES, cancellation_token=token))
    await asyncio.sleep(0.01)
    token.cancel()

    outcome = await asyncio.wait_for(task, timeout=1.0)

    assert outcome.cancelled
    assert outcome.content == "first"
    assert recorder.types() == ["content"]


@pytest.mark.asyncio
async def test_transient_failure_before_first_chunk_is_retried(fast_retry: AgentRetryPolicy) -> None:
    transport = ScriptedTransport(
        [
            [TransientTransportError("connection reset")],
            [content("ok"), done()],
        ]
    )
    session = StreamingSession(transport, retry_policy=fast_retry)

    outcome = await session.start(MESSAGES)

    assert outcome.completed
    assert outcome.content == "ok"
    assert outcome.attempts == 2
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_repeated_transient_failures_surface_one_terminal_error() -> None:
    policy = AgentRetryPolicy(max_attempts=3, backoff_min_seconds=0.0, backoff_max_seconds=0.0)
    transport = ScriptedTransport([[TransientTransportError("503")]])
    recorder = _Recorder()
    session = StreamingSession(transport, retry_policy=policy, listener=recorder)

    outcome = await session.start(MESSAGES)

    assert outcome.state is SessionState.ERRORED
    assert isinstance(outcome.error, TerminalTransportError)
    assert outcome.error.attempts == 3
    assert len(transport.calls) == 3
    assert recorder.types() == ["error"]


@pytest.mark.asyncio
async def test_failure_after_partial_content_is_not_retried(fast_retry: AgentRetryPolicy) -> None:
    transport = ScriptedTransport(
        [
            [content("par"), content("tial"), TransientTransportError("socket closed")],
            [content("should not be requested"), done()],
        ]
    )
    session = StreamingSession(transport, retry_policy=fast_retry)

    outcome = await session.start(MESSAGES)

    assert outcome.state is SessionState.ERRORED
    assert isinstance(outcome.error, TerminalTransportError)
    assert outcome.error.partial_content == "partial"
    assert outcome.content == "partial"
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_configuration_errors_are_not_retried(fast_retry: AgentRetryPolicy) -> None:
    transport = ScriptedTransport([[ConfigurationError("invalid api key")]])
    session = StreamingSession(transport, retry_policy=fast_retry)

    outcome = await session.start(MESSAGES)

    assert outcome.state is SessionState.ERRORED
    assert isinstance(outcome.error, ConfigurationError)
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_cancel_during_backoff_resolves_cancelled() -> None:
    policy = AgentRetryPolicy(max_attempts=5, backoff_min_seconds=5.0, backoff_max_seconds=5.0)
    token = CancellationToken()
    transport = ScriptedTransport([[TransientTransportError("timeout")]])
    session = StreamingSession(transport, retry_policy=policy)
    task = asyncio.ensure_future(session.start(MESSAGES, cancellation_token=token))
    await asyncio.sleep(0.01)
    token.cancel()

    outcome = await asyncio.wait_for(task, timeout=1.0)

    assert outcome.cancelled
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_session_can_only_start_once(fast_retry: AgentRetryPolicy) -> None:
    session = StreamingSession(ScriptedTransport([[done()]]), retry_policy=fast_retry)
    await session.start(MESSAGES)

    with pytest.raises(RuntimeError):
        await session.start(MESSAGES)
