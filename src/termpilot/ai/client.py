"""OpenAI-compatible model transport used by streaming sessions."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, Union

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam

from .ai_types import TransportChunk
from .errors import ConfigurationError, TerminalTransportError, TransientTransportError, TransportError
from .utils.tokens import TiktokenCounter, TokenCounterRegistry

if TYPE_CHECKING:
    from ..chat.message_model import Message
    from .orchestration.cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

# HTTP statuses worth another attempt besides 5xx.
_RETRYABLE_STATUSES = frozenset({408, 409, 425})


@dataclass(slots=True)
class ClientSettings:
    """Endpoint, credentials and sampling options for :class:`AIClient`."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    temperature: float | None = 0.2
    max_completion_tokens: int | None = None
    precise_token_counts: bool = False
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Streaming model transport over an OpenAI-compatible chat endpoint.

    Each :meth:`stream` call is exactly one request. The OpenAI SDK's own
    retries are disabled and failures surface as :mod:`termpilot.ai.errors`
    types, leaving retry decisions to the streaming session.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client if client is not None else _open_client(settings)
        self._tokens = token_registry or TokenCounterRegistry.shared()
        self._known_models: List[str] | None = None
        self._models_guard = asyncio.Lock()
        if settings.precise_token_counts and settings.model:
            self._tokens.ensure_tiktoken(settings.model)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    async def stream(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        tools: Sequence[ChatCompletionToolParam | Mapping[str, Any]] | None = None,
        cancellation_token: "CancellationToken | None" = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[TransportChunk]:
        """Yield one completion as :class:`TransportChunk` items, ending with ``done``.

        Tool call deltas arrive keyed by index; the first delta for an index
        carries the call id, which is then stamped on every later fragment.
        Iteration stops early once ``cancellation_token`` is cancelled.
        """

        request = self._request_body(list(messages), tools, metadata, extra_params)
        LOGGER.debug("Streaming %s with %s message(s)", request["model"], len(request["messages"]))
        if self._settings.debug_logging:
            _log_request(request)

        try:
            response = await self._client.chat.completions.create(**request)
        except Exception as exc:
            raise translate_error(exc) from exc

        ids_by_index: dict[int, str] = {}
        finish_reason: str | None = None
        try:
            async for raw in response:
                if cancellation_token is not None and cancellation_token.cancelled:
                    LOGGER.debug("Stream abandoned after cancellation")
                    break
                choices = getattr(raw, "choices", None) or []
                if not choices:
                    continue
                choice = choices[0]
                finish_reason = getattr(choice, "finish_reason", None) or finish_reason
                for chunk in _chunks_from_delta(getattr(choice, "delta", None), ids_by_index):
                    yield chunk
        except TransportError:
            raise
        except Exception as exc:
            raise translate_error(exc) from exc
        finally:
            await _close_quietly(response)
        yield TransportChunk(kind="done", finish_reason=finish_reason)

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return model ids advertised by the endpoint, cached after the first call."""

        async with self._models_guard:
            if self._known_models is None or force_refresh:
                listing = await self._client.models.list()
                self._known_models = [entry.id for entry in listing.data if getattr(entry, "id", None)]
            return list(self._known_models)

    def count_tokens(self, value: Union[str, "Message", None], *, model: str | None = None) -> int:
        """Count tokens for reporting, using a precise counter where one is registered."""

        return self._tokens.count(model or self._settings.model, value)

    def uses_precise_counts(self, model: str | None = None) -> bool:
        counter = self._tokens.for_model(model or self._settings.model)
        return isinstance(counter, TiktokenCounter)

    async def aclose(self) -> None:
        """Release the underlying HTTP connection pool."""

        await _close_quietly(self._client)

    def _request_body(
        self,
        messages: List[Mapping[str, Any]],
        tools: Sequence[ChatCompletionToolParam | Mapping[str, Any]] | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        body: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [_as_message_param(message) for message in messages],
            "stream": True,
        }
        if tools:
            body["tools"] = list(tools)
        if self._settings.temperature is not None:
            body["temperature"] = self._settings.temperature
        if self._settings.max_completion_tokens is not None:
            body["max_completion_tokens"] = self._settings.max_completion_tokens
        tags = {**(self._settings.metadata or {}), **(metadata or {})}
        if tags:
            body["metadata"] = tags
        body.update(extra_params)
        return body


def _open_client(settings: ClientSettings) -> AsyncOpenAI:
    if not settings.api_key:
        raise ConfigurationError("An API key is required to reach the model endpoint", missing=("api_key",))
    return AsyncOpenAI(
        api_key=settings.api_key,
        base_url=settings.base_url or None,
        organization=settings.organization,
        timeout=settings.request_timeout,
        max_retries=0,
        default_headers=dict(settings.default_headers) if settings.default_headers else None,
    )


def _as_message_param(message: Mapping[str, Any]) -> ChatCompletionMessageParam:
    if not isinstance(message, Mapping):
        raise TypeError(f"Chat messages must be mappings, not {type(message).__name__}")
    return dict(message)  # type: ignore[return-value]


def _chunks_from_delta(delta: Any, ids_by_index: dict[int, str]) -> List[TransportChunk]:
    if delta is None:
        return []
    chunks: List[TransportChunk] = []
    reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
    if reasoning:
        chunks.append(TransportChunk(kind="reasoning", text=str(reasoning)))
    text = getattr(delta, "content", None)
    if text:
        chunks.append(TransportChunk(kind="content", text=str(text)))
    for tool_delta in getattr(delta, "tool_calls", None) or ():
        index = getattr(tool_delta, "index", None)
        if index is None:
            index = len(ids_by_index)
        if getattr(tool_delta, "id", None):
            ids_by_index[index] = str(tool_delta.id)
        function = getattr(tool_delta, "function", None)
        chunks.append(
            TransportChunk(
                kind="tool_call_fragment",
                tool_call_id=ids_by_index.setdefault(index, f"call_{index}"),
                tool_name=getattr(function, "name", None),
                arguments_delta=getattr(function, "arguments", None),
            )
        )
    return chunks


def translate_error(exc: BaseException) -> Exception:
    """Map SDK and httpx failures onto transient, terminal or configuration errors."""

    if isinstance(exc, (TransportError, ConfigurationError)):
        return exc
    if isinstance(exc, (AuthenticationError, PermissionDeniedError, NotFoundError)):
        return ConfigurationError(f"Model endpoint rejected the configuration: {exc}")
    if isinstance(exc, (APIConnectionError, RateLimitError, httpx.TimeoutException, httpx.TransportError)):
        return TransientTransportError(str(exc) or type(exc).__name__)
    if isinstance(exc, APIStatusError):
        status = exc.status_code or 0
        if status >= 500 or status in _RETRYABLE_STATUSES:
            return TransientTransportError(f"HTTP {status}: {exc}")
        return TerminalTransportError(f"HTTP {status}: {exc}", cause=exc)
    return TerminalTransportError(str(exc) or type(exc).__name__, cause=exc)


async def _close_quietly(resource: Any) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception:  # pragma: no cover - best-effort shutdown
        LOGGER.debug("Failed to close %s", type(resource).__name__, exc_info=True)


def _log_request(request: Mapping[str, Any]) -> None:
    try:
        LOGGER.debug("Chat request body:\n%s", json.dumps(request, ensure_ascii=False, indent=2, default=str))
    except (TypeError, ValueError):
        LOGGER.debug("Chat request body (unserializable): %r", request)


__all__ = ["AIClient", "ClientSettings", "translate_error"]
