"""Chat message and conversation data models."""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Iterator, Literal, Mapping, Sequence, Union

__all__ = [
    "ChatRole",
    "TextPart",
    "ImagePart",
    "ContentPart",
    "ToolCall",
    "Message",
    "Conversation",
    "PairingViolation",
    "IMAGE_MIME_TYPES",
]


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


ChatRole = Literal["user", "assistant", "tool"]

IMAGE_MIME_TYPES: Mapping[str, str] = {
    ".png": "image/png",
    ".jpeg": "image/jpeg",
    ".jpg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


class PairingViolation(ValueError):
    """Raised when an append would break the tool-call/tool-result pairing."""


@dataclass(slots=True, frozen=True)
class TextPart:
    """Plain text segment of a multimodal message."""

    kind: ClassVar[str] = "text"
    text: str

    def to_openai(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text}


@dataclass(slots=True, frozen=True)
class ImagePart:
    """Image attachment carried as a URL (typically a base64 data URL)."""

    kind: ClassVar[str] = "image"
    url: str
    mime_type: str | None = None
    source: str | None = None

    @property
    def text(self) -> str:
        return ""

    @classmethod
    def from_path(cls, path: str | Path) -> "ImagePart":
        """Read an image file and embed it as a data URL."""

        target = Path(path).expanduser()
        mime_type = IMAGE_MIME_TYPES.get(target.suffix.lower())
        if mime_type is None:
            raise ValueError(f"Unsupported image type: {target.suffix or target.name}")
        encoded = base64.b64encode(target.read_bytes()).decode("ascii")
        return cls(url=f"data:{mime_type};base64,{encoded}", mime_type=mime_type, source=str(target))

    def to_openai(self) -> dict[str, Any]:
        return {"type": "image_url", "image_url": {"url": self.url}}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "url": self.url}
        if self.mime_type:
            payload["mime_type"] = self.mime_type
        if self.source:
            payload["source"] = self.source
        return payload


ContentPart = Union[TextPart, ImagePart]
MessageContent = Union[str, tuple[ContentPart, ...]]


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A model-requested function invocation, fully assembled from the stream."""

    id: str
    function_name: str
    raw_arguments: str = ""

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.function_name,
                "arguments": self.raw_arguments or "{}",
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "function_name": self.function_name, "raw_arguments": self.raw_arguments}


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable entry in a :class:`Conversation`.

    ``tool_calls`` is only populated on assistant messages that request tools
    and ``tool_call_id`` only on tool messages. Use the ``user``/``assistant``/
    ``tool`` constructors rather than building instances by hand.
    """

    role: ChatRole
    content: MessageContent = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None
    is_error: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if self.tool_calls and self.role != "assistant":
            raise ValueError("Only assistant messages may carry tool calls")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("Tool messages require a tool_call_id")
        if self.role != "tool" and self.tool_call_id:
            raise ValueError("Only tool messages may carry a tool_call_id")

    @classmethod
    def user(cls, text: str, parts: Sequence[ContentPart] = ()) -> "Message":
        if parts:
            return cls(role="user", content=(TextPart(text), *parts))
        return cls(role="user", content=text)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Sequence[ToolCall] = ()) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, tool_call_id: str, content: str, *, name: str | None = None, is_error: bool = False) -> "Message":
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name, is_error=is_error)

    @property
    def text(self) -> str:
        """Return the concatenated text content, ignoring image parts."""

        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text for part in self.content if part.kind == "text")

    @property
    def requests_tools(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls)

    def to_openai(self) -> dict[str, Any]:
        """Render the message in the OpenAI chat-completions wire format."""

        if self.role == "user":
            if isinstance(self.content, str):
                return {"role": "user", "content": self.content}
            return {"role": "user", "content": [part.to_openai() for part in self.content]}
        if self.role == "assistant":
            payload: dict[str, Any] = {"role": "assistant", "content": self.text or None}
            if self.tool_calls:
                payload["tool_calls"] = [call.to_openai() for call in self.tool_calls]
            return payload
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.text}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence."""

        content: Any
        if isinstance(self.content, str):
            content = self.content
        else:
            content = [part.to_dict() for part in self.content]
        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": content,
            "created_at": self.created_at.isoformat(),
        }
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name:
            payload["name"] = self.name
        if self.is_error:
            payload["is_error"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        raw_content = payload.get("content", "")
        content: MessageContent
        if isinstance(raw_content, list):
            content = tuple(_part_from_dict(part) for part in raw_content)
        else:
            content = str(raw_content or "")
        created_raw = payload.get("created_at")
        created_at = datetime.fromisoformat(created_raw) if created_raw else _utcnow()
        return cls(
            role=payload["role"],
            content=content,
            tool_calls=tuple(
                ToolCall(
                    id=str(call["id"]),
                    function_name=str(call.get("function_name", "")),
                    raw_arguments=str(call.get("raw_arguments", "")),
                )
                for call in payload.get("tool_calls", ())
            ),
            tool_call_id=payload.get("tool_call_id"),
            name=payload.get("name"),
            is_error=bool(payload.get("is_error", False)),
            id=str(payload.get("id") or _new_id()),
            created_at=created_at,
        )


def _part_from_dict(payload: Mapping[str, Any]) -> ContentPart:
    if payload.get("kind") == "image":
        return ImagePart(url=str(payload["url"]), mime_type=payload.get("mime_type"), source=payload.get("source"))
    return TextPart(str(payload.get("text", "")))


class Conversation:
    """Append-only message history that enforces tool-call pairing.

    Once an assistant message with tool calls is appended, only tool messages
    answering those call ids may follow until every id has a result.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        self._pending: list[str] = []
        for message in messages:
            self.append(message)

    def append(self, message: Message) -> Message:
        if message.role == "tool":
            if message.tool_call_id not in self._pending:
                raise PairingViolation(
                    f"Tool result {message.tool_call_id!r} does not answer a pending tool call"
                )
            self._pending.remove(message.tool_call_id)
        elif self._pending:
            raise PairingViolation(
                f"Cannot append a {message.role} message while tool calls {self._pending} await results"
            )
        if message.requests_tools:
            ids = [call.id for call in message.tool_calls]
            if len(set(ids)) != len(ids):
                raise PairingViolation("Assistant message repeats a tool call id")
            self._pending = ids
        self._messages.append(message)
        return message

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def pending_tool_call_ids(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    def to_payload(self) -> list[Dict[str, Any]]:
        return [message.to_dict() for message in self._messages]

    @classmethod
    def from_payload(cls, payload: Iterable[Mapping[str, Any]]) -> "Conversation":
        return cls(Message.from_dict(entry) for entry in payload)
