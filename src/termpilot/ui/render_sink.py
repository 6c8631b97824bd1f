"""UI event contract between the orchestration core and the terminal renderer.

The core only emits :class:`UIEvent` objects; formatting, colors and
visibility toggles belong to the sink. Visibility lives on an explicit
:class:`RenderPreferences` value handed to the sink.
"""

from __future__ import annotations

import inspect
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Literal, Mapping, Protocol, Union

LOGGER = logging.getLogger(__name__)

UIEventKind = Literal["reasoning", "content", "tool_start", "tool_result", "error", "cancelled", "warning"]

_TOOL_DISPLAY_NAMES: tuple[tuple[str, str], ...] = (
    ("read_file", "Read"),
    ("list_directory", "List"),
    ("search_files", "Search Files"),
    ("search_file_content", "Search Content"),
    ("code_reference_search", "Code Ref"),
    ("execute_command", "Run"),
    ("todos", "Todos"),
)
_TARGET_KEYS = ("path", "keyword", "query", "command", "process_id", "processId")


@dataclass(slots=True, frozen=True)
class RenderPreferences:
    """Display toggles owned by the renderer, never by the core."""

    show_tool_output: bool = False
    show_reasoning: bool = False

    def toggled(self, **changes: bool) -> "RenderPreferences":
        return replace(self, **changes)


@dataclass(slots=True, frozen=True)
class ToolSummary:
    """Short description of a tool call for a one-line status display."""

    display: str
    target: str = ""
    target_short: str = ""
    lines: int | None = None

    @property
    def title(self) -> str:
        return f"{self.display}({self.target_short})" if self.target_short else self.display

    def headline(self) -> str:
        if self.lines is None:
            return self.title
        return f"{self.title} • {self.lines} line{'s' if self.lines != 1 else ''}"


def summarize_tool_call(
    function_name: str,
    arguments: Mapping[str, Any] | None = None,
    result: Any = None,
    *,
    cwd: str | None = None,
) -> ToolSummary:
    """Build a :class:`ToolSummary` from a call and (optionally) its result."""

    display = function_name
    for needle, label in _TOOL_DISPLAY_NAMES:
        if needle in function_name:
            display = label
            break

    target = ""
    for key in _TARGET_KEYS:
        value = (arguments or {}).get(key)
        if value:
            target = str(value)
            break
    if target and os.path.isabs(target):
        try:
            target = os.path.relpath(target, cwd or os.getcwd()) or target
        except ValueError:
            pass
    target = target.replace("\\", "/")
    target_short = os.path.basename(target.rstrip("/")) or target if target else ""

    lines: int | None = None
    if isinstance(result, str):
        lines = len(result.split("\n"))
    elif isinstance(result, Mapping):
        content = result.get("content")
        if isinstance(content, str):
            lines = len(content.split("\n"))
        elif isinstance(result.get("total_lines"), int):
            lines = int(result["total_lines"])
    return ToolSummary(display=display, target=target, target_short=target_short, lines=lines)


@dataclass(slots=True)
class UIEvent:
    """Ordered display event emitted by the orchestrator.

    Attributes:
        kind: Event category.
        text: Streamed text, tool output, or error/warning message.
        tool_name: Tool involved in ``tool_start``/``tool_result`` events.
        call_id: Originating tool call id.
        summary: One-line tool summary for ``tool_start``/``tool_result``.
        is_error: Whether a ``tool_result`` reports a failure.
        turn_id: Identifier of the turn that produced the event.
    """

    kind: UIEventKind
    text: str = ""
    tool_name: str | None = None
    call_id: str | None = None
    summary: ToolSummary | None = None
    is_error: bool = False
    turn_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class RenderSink(Protocol):
    """Receives UI events in order; may be sync or async."""

    def emit(self, event: UIEvent) -> Union[None, Awaitable[None]]:
        ...


async def emit_event(sink: RenderSink | None, event: UIEvent) -> None:
    """Deliver ``event`` to ``sink``; renderer failures never reach the core."""

    if sink is None:
        return
    try:
        result = sink.emit(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        LOGGER.debug("Render sink failed for %s event", event.kind, exc_info=True)


class CollectingRenderSink:
    """Reference sink that records the events a terminal renderer would show.

    Reasoning is kept only when ``show_reasoning`` is on; tool output text is
    blanked (leaving the summary line) unless ``show_tool_output`` is on.
    """

    def __init__(self, preferences: RenderPreferences | None = None) -> None:
        self.preferences = preferences or RenderPreferences()
        self.events: list[UIEvent] = []
        self.received: list[UIEvent] = []

    def emit(self, event: UIEvent) -> None:
        self.received.append(event)
        if event.kind == "reasoning" and not self.preferences.show_reasoning:
            return
        if event.kind == "tool_result" and not self.preferences.show_tool_output:
            event = replace(event, text="")
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]

    @property
    def content_text(self) -> str:
        return "".join(event.text for event in self.events if event.kind == "content")

    def clear(self) -> None:
        self.events.clear()
        self.received.clear()


__all__ = [
    "CollectingRenderSink",
    "RenderPreferences",
    "RenderSink",
    "ToolSummary",
    "UIEvent",
    "UIEventKind",
    "emit_event",
    "summarize_tool_call",
]
