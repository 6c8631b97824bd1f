"""System prompt assembly for terminal coding sessions.

The preamble is rebuilt before every model call so the working directory,
clock and file references reflect the moment of the request.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Sequence, Union

PreambleProvider = Callable[[], Union[str, Awaitable[str]]]

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

BASE_PROMPT = (
    "You are {name}, an AI assistant working in a terminal. "
    "The current working directory is {cwd} and the local time is {time}. "
    "Use the available tools to inspect and change files instead of guessing their contents."
)

DEFAULT_NAME = "termpilot"


def tool_verification_section() -> str:
    return """**General Tool Interaction Rule:**
Some tools, especially file editors, return an "ACTION REQUIRED" message asking you to verify the result.
When you see such a message you MUST:
1. Pause your current plan.
2. Review the output the tool returned.
3. Reply with "√checked" if the change is correct.
4. Otherwise call the tool again with the corrections.
Do not continue until the tool's action is confirmed."""


def file_reference_section(files: Sequence[str | Path]) -> str:
    listing = "\n".join(f"- {item}" for item in files)
    return (
        "The user referenced these files. Read them with the file tools before answering "
        f"questions about them:\n{listing}"
    )


@dataclass(slots=True)
class SystemPromptBuilder:
    """Callable preamble provider for :class:`ConversationOrchestrator`.

    ``role`` holds user-configured instructions appended after the base
    prompt. ``file_references`` may be mutated between turns.
    """

    role: str = ""
    name: str = DEFAULT_NAME
    file_references: list[str] = field(default_factory=list)
    include_tool_rule: bool = True
    extra_sections: list[str] = field(default_factory=list)
    cwd: Callable[[], str] = os.getcwd
    clock: Callable[[], datetime] = datetime.now

    def __call__(self) -> str:
        return self.build()

    def build(self) -> str:
        parts = [
            BASE_PROMPT.format(
                name=self.name,
                cwd=self.cwd(),
                time=self.clock().strftime(TIME_FORMAT),
            )
        ]
        if self.role:
            parts.append(self.role)
        if self.include_tool_rule:
            parts.append(tool_verification_section())
        parts.extend(section for section in self.extra_sections if section)
        if self.file_references:
            parts.append(file_reference_section(self.file_references))
        return "\n\n".join(parts)


__all__ = [
    "BASE_PROMPT",
    "DEFAULT_NAME",
    "PreambleProvider",
    "SystemPromptBuilder",
    "file_reference_section",
    "tool_verification_section",
]
