"""Tests for the context window builder."""

from __future__ import annotations

import pytest

from termpilot.ai.orchestration.context_window import ContextWindowBuilder
from termpilot.ai.services.context_policy import ContextBudget
from termpilot.ai.utils.tokens import estimate
from termpilot.chat.message_model import Message, ToolCall


def _tool_round(call_id: str, output: str) -> list[Message]:
    call = ToolCall(id=call_id, function_name="read_file", raw_arguments='{"path": "src/app.py"}')
    return [Message.assistant("", [call]), Message.tool(call_id, output)]


def _history() -> list[Message]:
    history: list[Message] = []
    for index in range(6):
        history.append(Message.user(f"question {index} " + "word " * 30))
        history.extend(_tool_round(f"call_{index}", "line\n" * 40))
        history.append(Message.assistant(f"answer {index} " + "text " * 20))
    return history


def _assert_well_formed(selected: tuple[Message, ...]) -> None:
    if not selected:
        return
    assert selected[0].role != "tool"
    pending: set[str] = set()
    for message in selected:
        if message.role == "tool":
            assert message.tool_call_id in pending
            pending.discard(message.tool_call_id)
        else:
            assert not pending
            pending = {call.id for call in message.tool_calls}
    assert not pending


@pytest.mark.asyncio
async def test_large_budget_reproduces_history_verbatim() -> None:
    history = _history()
    builder = ContextWindowBuilder()

    window = await builder.build("You are helpful.", history, ContextBudget(total_capacity=1_000_000))

    assert window.selected_history == tuple(history)
    assert window.budget_exceeded is False
    assert window.summary is None
    assert window.decision.verdict == "ok"
    assert window.to_openai_messages()[0] == {"role": "system", "content": "You are helpful."}


@pytest.mark.asyncio
async def test_selection_never_splits_tool_groups_and_starts_with_user() -> None:
    history = _history()
    builder = ContextWindowBuilder()

    for capacity in range(200, 3_000, 97):
        window = await builder.build("sys", history, ContextBudget(total_capacity=capacity))
        _assert_well_formed(window.selected_history)
        if window.selected_history:
            assert window.selected_history[0].role == "user"
        assert window.selected_history == tuple(history[len(history) - len(window.selected_history):])


@pytest.mark.asyncio
async def test_selection_grows_monotonically_with_budget() -> None:
    history = _history()
    builder = ContextWindowBuilder()
    previous = 0

    for capacity in range(200, 6_000, 150):
        window = await builder.build("sys", history, ContextBudget(total_capacity=capacity))
        assert len(window.selected_history) >= previous
        previous = len(window.selected_history)


@pytest.mark.asyncio
async def test_selected_tokens_fit_limit_unless_flagged() -> None:
    history = _history()
    builder = ContextWindowBuilder()
    budget = ContextBudget(total_capacity=780, reserved_for_system_and_tools=100, target_fraction=0.7)

    window = await builder.build("sys", history, budget)

    used = sum(estimate(message) for message in window.selected_history)
    assert window.decision.history_limit == budget.history_limit(estimate("sys"))
    assert used <= window.decision.history_limit
    assert window.budget_exceeded is False
    assert window.dropped


@pytest.mark.asyncio
async def test_oversized_latest_turn_is_kept_and_flagged() -> None:
    history = [Message.user("short"), Message.assistant("ok"), Message.user("huge " * 2_000)]
    builder = ContextWindowBuilder()

    window = await builder.build("sys", history, ContextBudget(total_capacity=500))

    assert window.selected_history == (history[-1],)
    assert window.budget_exceeded is True
    assert window.decision.verdict == "over_budget"
    assert window.warnings


@pytest.mark.asyncio
async def test_orphans_and_incomplete_groups_are_dropped() -> None:
    orphan = Message(role="tool", content="stale", tool_call_id="gone")
    incomplete = Message.assistant(
        "",
        [ToolCall(id="x1", function_name="read_file"), ToolCall(id="x2", function_name="read_file")],
    )
    history = [
        orphan,
        Message.user("first"),
        incomplete,
        Message.tool("x1", "only one result"),
        Message.user("second"),
        Message.assistant("reply"),
    ]
    builder = ContextWindowBuilder()

    window = await builder.build("sys", history, ContextBudget(total_capacity=100_000))

    assert [message.text for message in window.selected_history] == ["first", "second", "reply"]
    assert any("incomplete tool-call group" in warning for warning in window.warnings)


@pytest.mark.asyncio
async def test_preamble_over_capacity_returns_preamble_only() -> None:
    builder = ContextWindowBuilder()
    preamble = "rules " * 400

    window = await builder.build(preamble, _history(), ContextBudget(total_capacity=100))

    assert window.system_message == preamble
    assert window.selected_history == ()
    assert window.budget_exceeded is True
    assert window.decision.reason == "preamble-exceeds-capacity"
    assert len(window.warnings) == 1


@pytest.mark.asyncio
async def test_dropped_history_is_summarized_into_preamble() -> None:
    calls: list[int] = []

    def summarizer(messages):
        calls.append(len(messages))
        return "earlier work on the parser"

    builder = ContextWindowBuilder(summarizer=summarizer)
    history = _history()
    budget = ContextBudget(total_capacity=680)

    first = await builder.build("sys", history, budget)
    second = await builder.build("sys", history, budget)

    assert first.summary == "earlier work on the parser"
    assert first.system_message == "sys\n\n[Prior conversation summary: earlier work on the parser]"
    assert first.decision.verdict == "needs_summary"
    assert second.summary == first.summary
    assert calls == [len(first.dropped)]


@pytest.mark.asyncio
async def test_async_summarizer_is_awaited() -> None:
    async def summarizer(messages):
        return f"{len(messages)} messages"

    builder = ContextWindowBuilder(summarizer=summarizer)

    window = await builder.build("", _history(), ContextBudget(total_capacity=800))

    assert window.summary == f"{len(window.dropped)} messages"
    assert window.system_message.startswith("[Prior conversation summary:")


@pytest.mark.asyncio
async def test_failing_summarizer_is_non_fatal() -> None:
    def summarizer(messages):
        raise RuntimeError("model offline")

    builder = ContextWindowBuilder(summarizer=summarizer)

    window = await builder.build("sys", _history(), ContextBudget(total_capacity=800))

    assert window.summary is None
    assert window.system_message == "sys"
    assert any("model offline" in warning for warning in window.warnings)


@pytest.mark.asyncio
async def test_full_history_is_not_modified() -> None:
    history = _history()
    snapshot = list(history)

    await ContextWindowBuilder().build("sys", history, ContextBudget(total_capacity=300))

    assert history == snapshot


@pytest.mark.asyncio
async def test_clear_cache_forces_a_fresh_summary() -> None:
    calls: list[int] = []

    def summarizer(messages):
        calls.append(len(messages))
        return f"summary {len(calls)}"

    builder = ContextWindowBuilder(summarizer=summarizer)
    history = _history()
    budget = ContextBudget(total_capacity=680)

    first = await builder.build("sys", history, budget)
    builder.clear_cache()
    second = await builder.build("sys", history, budget)

    assert first.summary == "summary 1"
    assert second.summary == "summary 2"
    assert len(calls) == 2
