"""Data classes describing turns driven by the conversation orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from ...chat.message_model import Message
from .context_window import ContextWindow
from .session import SessionOutcome
from .tool_dispatcher import DispatchResult

TurnStatus = Literal["completed", "cancelled", "errored"]


class TurnState(str, Enum):
    """Per-turn control state of the orchestrator."""

    IDLE = "idle"
    CONTEXT_BUILDING = "context_building"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"


@dataclass(slots=True)
class ModelTurnResult:
    """One loop iteration: the window sent, the stream outcome, and any tool results."""

    iteration: int
    window: ContextWindow
    session: SessionOutcome
    assistant_message: Message | None = None
    dispatch_results: list[DispatchResult] = field(default_factory=list)


@dataclass(slots=True)
class TurnOutcome:
    """Terminal result of ``submit_user_turn``.

    ``appended`` lists every message the turn added to the conversation, in
    order, starting with the user message. ``partial_content`` carries text
    that streamed before a cancel or terminal error; it is not appended.
    """

    turn_id: str
    status: TurnStatus
    response_text: str = ""
    appended: tuple[Message, ...] = ()
    iterations: int = 0
    error: BaseException | None = None
    partial_content: str = ""
    warnings: tuple[str, ...] = ()
    turns: list[ModelTurnResult] = field(default_factory=list, repr=False)

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def errored(self) -> bool:
        return self.status == "errored"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "turn_id": self.turn_id,
            "status": self.status,
            "response_text": self.response_text,
            "appended": len(self.appended),
            "iterations": self.iterations,
        }
        if self.error is not None:
            data["error"] = str(self.error)
            data["error_type"] = self.error.__class__.__name__
        if self.partial_content:
            data["partial_content"] = self.partial_content
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


__all__ = ["ModelTurnResult", "TurnOutcome", "TurnState", "TurnStatus"]
