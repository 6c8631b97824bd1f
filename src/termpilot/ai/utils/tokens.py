"""Token estimation utilities for AI operations."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Callable, Dict, Union

import tiktoken

from ..ai_types import TokenCounterProtocol

if TYPE_CHECKING:
    from ...chat.message_model import Message

LOGGER = logging.getLogger(__name__)

# Average characters per token for English prose (GPT-style tokenization)
CHARS_PER_TOKEN = 4.0

# Flat cost charged for every image part, independent of its byte size.
IMAGE_PART_TOKENS = 765

# Role marker + separators the chat format adds around each message.
MESSAGE_OVERHEAD_TOKENS = 4

# Extra framing for each tool call entry on an assistant message.
TOOL_CALL_OVERHEAD_TOKENS = 3


def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in a text string.

    Uses a simple byte-based heuristic of ~4 bytes per token.
    This provides a reasonable approximation for English prose
    with GPT-style tokenization.

    Args:
        text: The text to estimate tokens for.

    Returns:
        Estimated token count (minimum 1 for non-empty text, 0 for empty).
    """
    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / CHARS_PER_TOKEN))


def estimate_message_tokens(message: "Message", *, count_text: Callable[[str], int] = estimate_tokens) -> int:
    """Estimate the prompt cost of a single chat message.

    Text parts use ``count_text`` (:func:`estimate_tokens` by default); image
    parts are charged :data:`IMAGE_PART_TOKENS` each. Tool call names, ids and
    raw arguments are counted for assistant messages, and the call id for tool
    results.
    """
    total = MESSAGE_OVERHEAD_TOKENS
    content = message.content
    if isinstance(content, str):
        total += count_text(content)
    else:
        for part in content:
            if part.kind == "image":
                total += IMAGE_PART_TOKENS
            else:
                total += count_text(part.text)
    for call in message.tool_calls:
        total += TOOL_CALL_OVERHEAD_TOKENS
        total += count_text(call.id)
        total += count_text(call.function_name)
        total += count_text(call.raw_arguments)
    if message.tool_call_id:
        total += count_text(message.tool_call_id)
    return total


def estimate(value: Union[str, "Message", None]) -> int:
    """Estimate tokens for either raw text or a :class:`Message`."""

    if value is None:
        return 0
    if isinstance(value, str):
        return estimate_tokens(value)
    return estimate_message_tokens(value)


# Encoding used for models tiktoken has no mapping for.
DEFAULT_ENCODING = "cl100k_base"


class HeuristicCounter:
    """Counter that reports the byte-heuristic estimate as its count."""

    def __init__(self, model_name: str | None = None) -> None:
        self.model_name = model_name

    def count(self, text: str) -> int:
        return estimate_tokens(text)

    def estimate(self, text: str) -> int:
        return estimate_tokens(text)


class TiktokenCounter:
    """Precise counter for OpenAI-family models.

    Precise counts are for reporting only. Context selection keeps using
    :func:`estimate` so window decisions stay deterministic across models.
    """

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("TiktokenCounter needs a model name")
        self.model_name = model_name
        if encoding_name:
            self._encoding = tiktoken.get_encoding(encoding_name)
        else:
            try:
                self._encoding = tiktoken.encoding_for_model(model_name)
            except KeyError:
                LOGGER.debug("No tiktoken mapping for %s; using %s", model_name, DEFAULT_ENCODING)
                self._encoding = tiktoken.get_encoding(DEFAULT_ENCODING)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return estimate_tokens(text)


class TokenCounterRegistry:
    """Per-model token counters with a heuristic default."""

    _shared: "TokenCounterRegistry | None" = None

    def __init__(self, default: TokenCounterProtocol | None = None) -> None:
        self._default: TokenCounterProtocol = default or HeuristicCounter()
        self._by_model: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def shared(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = cls()
        return cls._shared

    @staticmethod
    def _key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._key(model_name)
        if not key:
            raise ValueError("A model name is required to register a token counter")
        self._by_model[key] = counter

    def ensure_tiktoken(self, model_name: str) -> TokenCounterProtocol:
        """Register a :class:`TiktokenCounter` for *model_name* unless one exists.

        tiktoken fetches encodings lazily, so a failure here degrades to the
        heuristic counter with a warning.
        """

        key = self._key(model_name)
        if key in self._by_model:
            return self._by_model[key]
        try:
            counter: TokenCounterProtocol = TiktokenCounter(model_name)
        except Exception as exc:
            LOGGER.warning("Precise token counts unavailable for %s: %s", model_name, exc)
            counter = HeuristicCounter(model_name)
        self.register(model_name, counter)
        return counter

    def has(self, model_name: str | None) -> bool:
        return self._key(model_name) in self._by_model

    def for_model(self, model_name: str | None) -> TokenCounterProtocol:
        return self._by_model.get(self._key(model_name), self._default)

    def count(self, model_name: str | None, value: Union[str, "Message", None]) -> int:
        """Count *value* with the model's counter, falling back to :func:`estimate`."""

        if value is None:
            return 0
        counter = self.for_model(model_name)
        if not isinstance(value, str):
            return estimate_message_tokens(value, count_text=counter.count)
        try:
            return counter.count(value)
        except Exception:  # pragma: no cover - pluggable counters
            LOGGER.debug("Token counter for %s failed; using estimate", model_name, exc_info=True)
            return estimate_tokens(value)


__all__ = [
    "CHARS_PER_TOKEN",
    "DEFAULT_ENCODING",
    "HeuristicCounter",
    "IMAGE_PART_TOKENS",
    "MESSAGE_OVERHEAD_TOKENS",
    "TOOL_CALL_OVERHEAD_TOKENS",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "estimate",
    "estimate_message_tokens",
    "estimate_tokens",
]
