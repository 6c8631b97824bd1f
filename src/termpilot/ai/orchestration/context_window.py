"""Token-budgeted projection of conversation history into a model request."""

from __future__ import annotations

import inspect
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from ...chat.message_model import Message
from ..ai_types import Summarizer
from ..services.context_policy import BudgetDecision, ContextBudget
from ..utils.tokens import estimate

LOGGER = logging.getLogger(__name__)

SUMMARY_TEMPLATE = "[Prior conversation summary: {summary}]"

Estimator = Callable[[Any], int]


@dataclass(slots=True)
class ContextWindow:
    """Bounded request produced by :class:`ContextWindowBuilder`.

    ``system_message`` is the preamble, with the summary block appended when
    one was produced. ``selected_history`` is a contiguous suffix of complete
    history units that starts with a user message whenever one is available.
    """

    system_message: str
    selected_history: tuple[Message, ...]
    decision: BudgetDecision
    summary: str | None = None
    budget_exceeded: bool = False
    warnings: tuple[str, ...] = ()
    dropped: tuple[Message, ...] = field(default=(), repr=False)

    def to_openai_messages(self) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self.system_message:
            messages.append({"role": "system", "content": self.system_message})
        messages.extend(message.to_openai() for message in self.selected_history)
        return messages


@dataclass(slots=True, frozen=True)
class _HistoryUnit:
    """Smallest indivisible slice of history the window may keep or drop."""

    messages: tuple[Message, ...]
    tokens: int

    @property
    def is_user(self) -> bool:
        return self.messages[0].role == "user"


class ContextWindowBuilder:
    """Selects the most recent history that fits a :class:`ContextBudget`.

    History is grouped into units: a user message, a content-only assistant
    message, or an assistant message together with every one of its tool
    results. Units are kept newest-first until the next one would exceed the
    limit, then the selection is widened back to the nearest user message.
    Everything older may be folded into a summary by the optional summarizer.

    The full history is never modified.
    """

    def __init__(
        self,
        *,
        summarizer: Summarizer | None = None,
        estimator: Estimator = estimate,
        summary_cache_size: int = 16,
    ) -> None:
        self._summarizer = summarizer
        self._estimate = estimator
        self._summary_cache: OrderedDict[tuple[str, ...], str] = OrderedDict()
        self._summary_cache_size = max(1, int(summary_cache_size))

    def clear_cache(self) -> None:
        self._summary_cache.clear()

    async def build(
        self,
        system_preamble: str,
        full_history: Sequence[Message],
        budget: ContextBudget,
    ) -> ContextWindow:
        preamble = system_preamble or ""
        preamble_tokens = self._estimate(preamble)
        if preamble_tokens > budget.total_capacity:
            message = (
                f"System preamble ({preamble_tokens} tokens) exceeds the context capacity "
                f"({budget.total_capacity} tokens); sending it without history"
            )
            LOGGER.warning("%s", message)
            return ContextWindow(
                system_message=preamble,
                selected_history=(),
                decision=BudgetDecision.preamble_overflow(
                    preamble_tokens=preamble_tokens,
                    total_capacity=budget.total_capacity,
                    dropped_messages=len(full_history),
                ),
                budget_exceeded=True,
                warnings=(message,),
                dropped=tuple(full_history),
            )

        warnings: list[str] = []
        units = self._split_units(full_history, warnings)
        limit = budget.history_limit(preamble_tokens)
        start = self._select_start(units, limit)

        selected_units = units[start:]
        selected = tuple(message for unit in selected_units for message in unit.messages)
        dropped = tuple(message for unit in units[:start] for message in unit.messages)
        used = sum(unit.tokens for unit in selected_units)
        budget_exceeded = used > limit
        if budget_exceeded:
            warnings.append(
                f"Latest turn needs {used} tokens but only {limit} are available for history"
            )

        summary = await self._summarize(dropped, warnings) if dropped else None
        system_message = preamble
        if summary:
            block = SUMMARY_TEMPLATE.format(summary=summary)
            system_message = f"{preamble}\n\n{block}" if preamble else block

        decision = BudgetDecision.evaluate(
            history_tokens=used,
            history_limit=limit,
            preamble_tokens=preamble_tokens,
            total_capacity=budget.total_capacity,
            dropped_messages=len(dropped),
        )
        LOGGER.debug("Context window built: %s", decision.as_payload())
        return ContextWindow(
            system_message=system_message,
            selected_history=selected,
            decision=decision,
            summary=summary,
            budget_exceeded=budget_exceeded,
            warnings=tuple(warnings),
            dropped=dropped,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _split_units(self, history: Sequence[Message], warnings: list[str]) -> list[_HistoryUnit]:
        units: list[_HistoryUnit] = []
        index = 0
        orphans = 0
        while index < len(history):
            message = history[index]
            if message.role == "tool":
                orphans += 1
                index += 1
                continue
            if not message.requests_tools:
                units.append(_HistoryUnit(messages=(message,), tokens=self._estimate(message)))
                index += 1
                continue

            expected = {call.id for call in message.tool_calls}
            group = [message]
            index += 1
            while index < len(history):
                candidate = history[index]
                if candidate.role != "tool" or candidate.tool_call_id not in expected:
                    break
                expected.discard(candidate.tool_call_id)
                group.append(candidate)
                index += 1
            if expected:
                warnings.append(
                    f"Dropped incomplete tool-call group {message.id} "
                    f"({len(expected)} call(s) without results)"
                )
                LOGGER.warning("Dropping incomplete tool-call group %s (missing=%s)", message.id, sorted(expected))
                continue
            units.append(
                _HistoryUnit(messages=tuple(group), tokens=sum(self._estimate(item) for item in group))
            )
        if orphans:
            LOGGER.debug("Dropped %s orphaned tool message(s) from context", orphans)
        return units

    @staticmethod
    def _select_start(units: Sequence[_HistoryUnit], limit: int) -> int:
        start = len(units)
        used = 0
        for index in range(len(units) - 1, -1, -1):
            cost = units[index].tokens
            if used + cost > limit:
                break
            used += cost
            start = index

        if start < len(units) and units[start].is_user:
            return start
        for index in range(min(start, len(units) - 1), -1, -1):
            if units[index].is_user:
                return index
        for index in range(start, len(units)):
            if units[index].is_user:
                return index
        return start

    async def _summarize(self, dropped: tuple[Message, ...], warnings: list[str]) -> str | None:
        if self._summarizer is None:
            return None
        key = tuple(message.id for message in dropped)
        cached = self._summary_cache.get(key)
        if cached is not None:
            self._summary_cache.move_to_end(key)
            return cached
        try:
            result = self._summarizer(dropped)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            LOGGER.warning("History summarizer failed; continuing without summary: %s", exc, exc_info=True)
            warnings.append(f"Summary unavailable: {exc}")
            return None
        summary = (result or "").strip() if isinstance(result, str) else None
        if not summary:
            return None
        self._summary_cache[key] = summary
        while len(self._summary_cache) > self._summary_cache_size:
            self._summary_cache.popitem(last=False)
        return summary


__all__ = ["ContextWindow", "ContextWindowBuilder", "SUMMARY_TEMPLATE"]
