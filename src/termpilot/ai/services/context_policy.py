"""Context budget primitives used by the context window builder."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Literal

BudgetVerdict = Literal["ok", "needs_summary", "over_budget"]

DEFAULT_HISTORY_FRACTION = 0.7


@dataclass(slots=True, frozen=True)
class ContextBudget:
    """Token capacity split between the preamble/tool reserve and history.

    ``target_fraction`` is the share of the capacity left after the reserve
    that history may occupy.
    """

    total_capacity: int
    reserved_for_system_and_tools: int = 0
    target_fraction: float = DEFAULT_HISTORY_FRACTION

    def __post_init__(self) -> None:
        if self.total_capacity <= 0:
            raise ValueError("total_capacity must be positive")
        if self.reserved_for_system_and_tools < 0:
            raise ValueError("reserved_for_system_and_tools cannot be negative")
        if not 0.0 < self.target_fraction <= 1.0:
            raise ValueError("target_fraction must be within (0, 1]")

    def history_limit(self, preamble_tokens: int) -> int:
        """Return the history token limit given the preamble's estimated cost."""

        reserved = max(0, int(preamble_tokens)) + self.reserved_for_system_and_tools
        remaining = self.total_capacity - reserved
        if remaining <= 0:
            return 0
        return int(math.floor(remaining * self.target_fraction))


@dataclass(slots=True)
class BudgetDecision:
    """Outcome of fitting history into a :class:`ContextBudget`."""

    verdict: BudgetVerdict
    reason: str
    history_tokens: int
    history_limit: int
    preamble_tokens: int
    total_capacity: int
    dropped_messages: int = 0
    deficit: int = 0
    timestamp: float = field(default_factory=lambda: time.time())

    @classmethod
    def evaluate(
        cls,
        *,
        history_tokens: int,
        history_limit: int,
        preamble_tokens: int,
        total_capacity: int,
        dropped_messages: int = 0,
    ) -> "BudgetDecision":
        headroom = history_limit - history_tokens
        if headroom < 0:
            verdict: BudgetVerdict = "over_budget"
            reason = "latest-turn-exceeds-limit"
        elif dropped_messages:
            verdict = "needs_summary"
            reason = "history-truncated"
        else:
            verdict = "ok"
            reason = "within-budget"
        return cls(
            verdict=verdict,
            reason=reason,
            history_tokens=max(0, int(history_tokens)),
            history_limit=max(0, int(history_limit)),
            preamble_tokens=max(0, int(preamble_tokens)),
            total_capacity=int(total_capacity),
            dropped_messages=int(dropped_messages),
            deficit=max(0, -headroom),
        )

    @classmethod
    def preamble_overflow(cls, *, preamble_tokens: int, total_capacity: int, dropped_messages: int) -> "BudgetDecision":
        return cls(
            verdict="over_budget",
            reason="preamble-exceeds-capacity",
            history_tokens=0,
            history_limit=0,
            preamble_tokens=preamble_tokens,
            total_capacity=total_capacity,
            dropped_messages=dropped_messages,
            deficit=max(0, preamble_tokens - total_capacity),
        )

    def as_payload(self) -> dict[str, object]:
        """Return a log-friendly dictionary for this decision."""

        return {
            "verdict": self.verdict,
            "reason": self.reason,
            "history_tokens": int(self.history_tokens),
            "history_limit": int(self.history_limit),
            "preamble_tokens": int(self.preamble_tokens),
            "total_capacity": int(self.total_capacity),
            "dropped_messages": int(self.dropped_messages),
            "deficit": int(max(0, self.deficit)),
            "timestamp": self.timestamp,
        }

    def summary_text(self) -> str:
        used = self.history_tokens
        total = self.history_limit
        return f"Context: {used:,}/{total:,} ({self.verdict.upper()})"


__all__ = ["BudgetDecision", "BudgetVerdict", "ContextBudget", "DEFAULT_HISTORY_FRACTION"]
