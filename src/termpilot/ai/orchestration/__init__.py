"""Turn orchestration: context windows, streaming sessions, and tool dispatch."""

from .cancellation import CancellationToken, OperationCancelled
from .context_window import ContextWindow, ContextWindowBuilder
from .model_types import ModelTurnResult, TurnOutcome, TurnState, TurnStatus
from .orchestrator import ConversationOrchestrator
from .session import SessionEvent, SessionOutcome, SessionState, StreamingSession
from .tool_dispatcher import DispatchListener, DispatchResult, ToolDispatcher

__all__ = [
    "CancellationToken",
    "OperationCancelled",
    "ContextWindow",
    "ContextWindowBuilder",
    "ModelTurnResult",
    "TurnOutcome",
    "TurnState",
    "TurnStatus",
    "ConversationOrchestrator",
    "SessionEvent",
    "SessionOutcome",
    "SessionState",
    "StreamingSession",
    "DispatchListener",
    "DispatchResult",
    "ToolDispatcher",
]
