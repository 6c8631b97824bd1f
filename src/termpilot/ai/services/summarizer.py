"""Deterministic summarizer for history dropped from the context window."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from ...chat.message_model import Message
from ..utils.tokens import estimate_tokens

_SUMMARY_TOKEN_BUDGET = 256
_SNIPPET_CHARS = 160


def _summarize_plaintext(text: str, *, max_chars: int) -> str:
    stripped = text.strip()
    if not stripped:
        return ""
    condensed = " ".join(stripped.split())
    if len(condensed) <= max_chars:
        return condensed
    # Preserve sentence-ish chunks where possible.
    sentences = re.split(r"(?<=[.!?])\s+", condensed)
    parts: list[str] = []
    total = 0
    for sentence in sentences:
        fragment = sentence.strip()
        if not fragment:
            continue
        if parts and total + len(fragment) + 1 > max_chars:
            break
        parts.append(fragment)
        total += len(fragment) + 1
    summary = " ".join(parts) or condensed
    if len(summary) > max_chars:
        summary = f"{summary[: max_chars - 1].rstrip()}…"
    return summary


@dataclass(slots=True)
class HeuristicSummarizer:
    """Folds dropped messages into a short role-tagged synopsis.

    User requests and assistant answers are condensed to a sentence or two
    each; tool traffic is reduced to the names of the tools that ran.
    """

    budget_tokens: int = _SUMMARY_TOKEN_BUDGET
    snippet_chars: int = _SNIPPET_CHARS

    def __call__(self, messages: Sequence[Message]) -> str | None:
        if not messages:
            return None
        lines: list[str] = []
        tools_used: list[str] = []
        for message in messages:
            if message.role == "tool":
                continue
            if message.requests_tools:
                tools_used.extend(call.function_name for call in message.tool_calls if call.function_name)
            snippet = _summarize_plaintext(message.text, max_chars=self.snippet_chars)
            if snippet:
                lines.append(f"{message.role}: {snippet}")
        if tools_used:
            unique = list(dict.fromkeys(tools_used))
            lines.append(f"tools used: {', '.join(unique)}")
        if not lines:
            return None
        summary = "; ".join(lines)
        max_chars = max(80, self.budget_tokens * 4)
        if estimate_tokens(summary) > self.budget_tokens:
            summary = f"{summary[: max_chars - 1].rstrip()}…"
        return summary


__all__ = ["HeuristicSummarizer"]
