"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Literal, Mapping, Protocol, Sequence, Union

if TYPE_CHECKING:
    from ..chat.message_model import Message
    from .orchestration.cancellation import CancellationToken

ChunkKind = Literal["reasoning", "content", "tool_call_fragment", "done", "error"]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@dataclass(slots=True)
class TransportChunk:
    """One normalized increment of a model stream.

    ``tool_call_fragment`` chunks always carry ``tool_call_id``; the name is
    typically only present on the first fragment of a call.
    """

    kind: ChunkKind
    text: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    finish_reason: str | None = None
    error: BaseException | None = None


class ModelTransport(Protocol):
    """Network collaborator that turns a request into a chunk stream."""

    def stream(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        cancellation_token: "CancellationToken | None" = None,
    ) -> AsyncIterator[TransportChunk]:
        ...


class Summarizer(Protocol):
    """Folds dropped history into a short synopsis (sync or async)."""

    def __call__(self, messages: Sequence["Message"]) -> Union[str, None, Awaitable[str | None]]:
        ...


@dataclass(slots=True)
class AgentRetryPolicy:
    """Deterministic retry/backoff configuration for a streaming session."""

    max_attempts: int = 3
    backoff_min_seconds: float = 0.5
    backoff_max_seconds: float = 6.0

    def clamp(self) -> "AgentRetryPolicy":
        """Clamp values into safe operating ranges and return ``self``."""

        self.max_attempts = max(1, int(self.max_attempts or 1))
        self.backoff_min_seconds = max(0.0, float(self.backoff_min_seconds))
        self.backoff_max_seconds = max(self.backoff_min_seconds, float(self.backoff_max_seconds))
        return self

    def as_metadata(self) -> dict[str, float | int]:
        return asdict(self)


__all__ = [
    "AgentRetryPolicy",
    "ChunkKind",
    "ModelTransport",
    "Summarizer",
    "TokenCounterProtocol",
    "TransportChunk",
]
