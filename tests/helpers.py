"""Shared test helpers and stub classes.

Reusable fakes for tests that drive the streaming session or the
orchestrator. Import from here instead of duplicating them per test file.

Example:
    from tests.helpers import ScriptedTransport, content, done

    transport = ScriptedTransport([[content("hi"), done()]])
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping, Sequence, Union

from termpilot.ai.ai_types import TransportChunk

Step = Union[TransportChunk, BaseException]
Script = Sequence[Step]


def content(text: str) -> TransportChunk:
    return TransportChunk(kind="content", text=text)


def reasoning(text: str) -> TransportChunk:
    return TransportChunk(kind="reasoning", text=text)


def fragment(call_id: str | None, name: str | None = None, arguments: str | None = None) -> TransportChunk:
    return TransportChunk(kind="tool_call_fragment", tool_call_id=call_id, tool_name=name, arguments_delta=arguments)


def done(finish_reason: str | None = "stop") -> TransportChunk:
    return TransportChunk(kind="done", finish_reason=finish_reason)


def tool_call_script(call_id: str, name: str, arguments: str) -> list[Step]:
    return [fragment(call_id, name, arguments), done("tool_calls")]


class ScriptedTransport:
    """Model transport replaying one script per ``stream`` call.

    Exceptions inside a script are raised at that position; the last script
    is reused once the list runs out. ``on_chunk`` is called with
    ``(call_index, position)`` before each step.
    """

    def __init__(self, scripts: Iterable[Script], *, on_chunk: Callable[[int, int], Any] | None = None) -> None:
        self._scripts = [list(script) for script in scripts]
        self._on_chunk = on_chunk
        self.calls: list[dict[str, Any]] = []

    async def stream(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        cancellation_token: Any = None,
    ):
        index = len(self.calls)
        self.calls.append({"messages": list(messages), "tools": tools})
        script = self._scripts[min(index, len(self._scripts) - 1)]
        for position, step in enumerate(script):
            if self._on_chunk is not None:
                self._on_chunk(index, position)
            if isinstance(step, BaseException):
                raise step
            yield step
