"""Tests for UI events, tool summaries and the collecting sink."""

from __future__ import annotations

import pytest

from termpilot.ui.render_sink import (
    CollectingRenderSink,
    RenderPreferences,
    UIEvent,
    emit_event,
    summarize_tool_call,
)


def test_summary_maps_display_names_and_targets(tmp_path) -> None:
    target = tmp_path / "src" / "app.py"

    summary = summarize_tool_call("read_file", {"path": str(target)}, "a\nb\nc", cwd=str(tmp_path))

    assert summary.display == "Read"
    assert summary.target == "src/app.py"
    assert summary.target_short == "app.py"
    assert summary.lines == 3
    assert summary.title == "Read(app.py)"
    assert summary.headline() == "Read(app.py) • 3 lines"


def test_summary_handles_commands_and_unknown_tools() -> None:
    run = summarize_tool_call("execute_command", {"command": "pytest -q"})
    other = summarize_tool_call("custom_tool", {})

    assert run.title == "Run(pytest -q)"
    assert run.lines is None
    assert other.title == "custom_tool"
    assert other.headline() == "custom_tool"


def test_summary_reads_line_counts_from_mapping_results() -> None:
    assert summarize_tool_call("read_file", {"path": "a"}, {"content": "x\ny"}).lines == 2
    assert summarize_tool_call("read_file", {"path": "a"}, {"total_lines": 1}).headline() == "Read(a) • 1 line"


def test_collecting_sink_hides_reasoning_and_tool_output_by_default() -> None:
    sink = CollectingRenderSink()

    sink.emit(UIEvent(kind="reasoning", text="thinking"))
    sink.emit(UIEvent(kind="content", text="Hello"))
    sink.emit(UIEvent(kind="tool_result", text="file body", tool_name="read_file"))

    assert sink.kinds() == ["content", "tool_result"]
    assert sink.events[-1].text == ""
    assert [event.kind for event in sink.received] == ["reasoning", "content", "tool_result"]
    assert sink.content_text == "Hello"


def test_collecting_sink_honours_preferences() -> None:
    preferences = RenderPreferences().toggled(show_reasoning=True, show_tool_output=True)
    sink = CollectingRenderSink(preferences)

    sink.emit(UIEvent(kind="reasoning", text="thinking"))
    sink.emit(UIEvent(kind="tool_result", text="file body"))

    assert sink.kinds() == ["reasoning", "tool_result"]
    assert sink.events[-1].text == "file body"
    sink.clear()
    assert sink.events == [] and sink.received == []


@pytest.mark.asyncio
async def test_emit_event_swallows_sink_failures() -> None:
    class _Broken:
        def emit(self, event):
            raise RuntimeError("terminal closed")

    class _Async:
        def __init__(self) -> None:
            self.seen: list[str] = []

        async def emit(self, event):
            self.seen.append(event.kind)

    await emit_event(_Broken(), UIEvent(kind="content", text="x"))
    await emit_event(None, UIEvent(kind="content", text="x"))
    sink = _Async()
    await emit_event(sink, UIEvent(kind="warning", text="careful"))

    assert sink.seen == ["warning"]
