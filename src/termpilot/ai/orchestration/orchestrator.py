"""Conversation orchestrator: the per-turn control loop.

``IDLE -> CONTEXT_BUILDING -> STREAMING -> TOOL_DISPATCH -> CONTEXT_BUILDING ...``
until the model answers without tool calls, the turn is cancelled, or a
configuration or terminal transport error ends it.
"""

from __future__ import annotations

import inspect
import json
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence, Union

from ...chat.message_model import Conversation, ImagePart, Message, ToolCall
from ...ui.render_sink import RenderSink, UIEvent, emit_event, summarize_tool_call
from ..ai_types import AgentRetryPolicy, ModelTransport, Summarizer
from ..errors import TurnInProgressError
from ..prompts import PreambleProvider, SystemPromptBuilder
from ..services.context_policy import ContextBudget
from ..tools.confirmation import ConfirmationPolicyStore, Confirmer
from ..tools.errors import ToolExecutionError
from ..tools.tool_registry import CapabilityRegistry, ToolArguments
from .cancellation import CancellationToken
from .context_window import ContextWindowBuilder
from .model_types import ModelTurnResult, TurnOutcome, TurnState, TurnStatus
from .session import SessionEvent, SessionState, StreamingSession
from .tool_dispatcher import DispatchResult, ToolDispatcher

if TYPE_CHECKING:
    from ...services.settings import Settings

LOGGER = logging.getLogger(__name__)

Attachment = Union[ImagePart, str, Path]

DEFAULT_MAX_TOOL_ITERATIONS = 8


class ConversationOrchestrator:
    """Drives turns over a single :class:`Conversation`.

    Only one turn runs at a time and the orchestrator is the only writer of
    the conversation. The context window is rebuilt before every model call,
    since tool results grow the history within a turn. ``system_preamble`` may
    be a string or a sync or async callable that is invoked before each build.

    Example:
        orchestrator = ConversationOrchestrator(client, registry, budget=settings.context_budget())
        outcome = await orchestrator.submit_user_turn("list files")
    """

    def __init__(
        self,
        transport: ModelTransport,
        registry: CapabilityRegistry,
        *,
        budget: ContextBudget,
        system_preamble: str | PreambleProvider = "",
        conversation: Conversation | None = None,
        context_builder: ContextWindowBuilder | None = None,
        dispatcher: ToolDispatcher | None = None,
        policy_store: ConfirmationPolicyStore | None = None,
        confirmer: Confirmer | None = None,
        render_sink: RenderSink | None = None,
        retry_policy: AgentRetryPolicy | None = None,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        turn_timeout_seconds: float | None = None,
        tool_timeout_seconds: float | None = None,
        allow_parallel_tools: bool = False,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._budget = budget
        self._system_preamble = system_preamble
        self._conversation = conversation if conversation is not None else Conversation()
        self._context_builder = context_builder or ContextWindowBuilder()
        self._dispatcher = dispatcher or ToolDispatcher(
            registry,
            policy_store=policy_store,
            confirmer=confirmer,
            tool_timeout_seconds=tool_timeout_seconds,
            allow_parallel_tools=allow_parallel_tools,
        )
        self._dispatcher.set_listener(self)
        self._render_sink = render_sink
        self._retry_policy = retry_policy or AgentRetryPolicy()
        self._max_tool_iterations = max(1, int(max_tool_iterations))
        self._turn_timeout = turn_timeout_seconds
        self._state = TurnState.IDLE
        self._turn_in_progress = False
        self._token: CancellationToken | None = None
        self._turn_id: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        transport: ModelTransport,
        registry: CapabilityRegistry,
        *,
        system_preamble: str | PreambleProvider | None = None,
        summarizer: Summarizer | None = None,
        policy_store: ConfirmationPolicyStore | None = None,
        confirmer: Confirmer | None = None,
        render_sink: RenderSink | None = None,
        conversation: Conversation | None = None,
    ) -> "ConversationOrchestrator":
        if summarizer is None and settings.summarize_dropped_history:
            from ..services.summarizer import HeuristicSummarizer

            summarizer = HeuristicSummarizer()
        if system_preamble is None:
            system_preamble = SystemPromptBuilder(role=settings.assistant_role)
        return cls(
            transport,
            registry,
            budget=settings.context_budget(),
            system_preamble=system_preamble,
            conversation=conversation,
            context_builder=ContextWindowBuilder(summarizer=summarizer),
            policy_store=policy_store,
            confirmer=confirmer,
            render_sink=render_sink,
            retry_policy=settings.retry_policy(),
            max_tool_iterations=settings.max_tool_iterations,
            turn_timeout_seconds=settings.turn_timeout_seconds,
            tool_timeout_seconds=settings.tool_timeout_seconds,
            allow_parallel_tools=settings.allow_parallel_tools,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def turn_in_progress(self) -> bool:
        return self._turn_in_progress

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    async def submit_user_turn(self, text: str, attachments: Sequence[Attachment] = ()) -> TurnOutcome:
        """Append a user message and run the turn to a terminal outcome.

        Raises:
            TurnInProgressError: if another turn is still running.
        """

        if self._turn_in_progress:
            raise TurnInProgressError("A turn is already in progress")
        self._turn_in_progress = True
        turn_id = uuid.uuid4().hex
        token = CancellationToken()
        self._token = token
        self._turn_id = turn_id
        appended: list[Message] = []
        try:
            parts = tuple(_attachment_part(item) for item in attachments)
            self._append(Message.user(text, parts), appended)
            token.cancel_after(self._turn_timeout, reason="timeout")
            LOGGER.debug(
                "Starting turn %s (prompt length=%s, attachments=%s, tools=%s)",
                turn_id,
                len(text),
                len(parts),
                self._registry.names(),
            )
            outcome = await self._run_turn(turn_id, token, appended)
            LOGGER.info(
                "Turn %s finished: status=%s iterations=%s appended=%s",
                turn_id,
                outcome.status,
                outcome.iterations,
                len(outcome.appended),
            )
            return outcome
        finally:
            token.dispose()
            self._token = None
            self._turn_id = None
            self._state = TurnState.IDLE
            self._turn_in_progress = False

    def cancel(self, reason: str = "user") -> bool:
        """Cancel the running turn; only valid while streaming or dispatching tools."""

        if self._token is None or self._state not in (TurnState.STREAMING, TurnState.TOOL_DISPATCH):
            return False
        LOGGER.debug("Cancelling turn %s during %s", self._turn_id, self._state.value)
        return self._token.cancel(reason)

    def reset_conversation(self, conversation: Conversation | None = None) -> None:
        """Start over with ``conversation`` (or an empty one) and forget cached summaries.

        Raises:
            TurnInProgressError: if a turn is still running.
        """

        if self._turn_in_progress:
            raise TurnInProgressError("Cannot reset the conversation while a turn is in progress")
        self._conversation = conversation if conversation is not None else Conversation()
        self._context_builder.clear_cache()
        LOGGER.debug("Conversation reset (%s message(s))", len(self._conversation))

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _run_turn(self, turn_id: str, token: CancellationToken, appended: list[Message]) -> TurnOutcome:
        turns: list[ModelTurnResult] = []
        warnings: list[str] = []
        tool_rounds = 0
        tools = self._registry.to_openai_tools() or None

        while True:
            self._state = TurnState.CONTEXT_BUILDING
            window = await self._context_builder.build(
                await self._resolve_preamble(),
                self._conversation.messages,
                self._budget,
            )
            for warning in window.warnings:
                warnings.append(warning)
                await self._emit(UIEvent(kind="warning", text=warning))

            self._state = TurnState.STREAMING
            if token.cancelled:
                return await self._finish_cancelled(turn_id, token, appended, turns, warnings)
            session = StreamingSession(
                self._transport,
                retry_policy=self._retry_policy,
                listener=self._on_session_event,
                session_id=f"{turn_id}:{len(turns) + 1}",
            )
            outcome = await session.start(window.to_openai_messages(), tools, token)
            record = ModelTurnResult(iteration=len(turns) + 1, window=window, session=outcome)
            turns.append(record)

            if outcome.state is SessionState.CANCELLED:
                return await self._finish_cancelled(
                    turn_id, token, appended, turns, warnings, partial=outcome.content
                )
            if outcome.state is SessionState.ERRORED:
                return self._outcome(
                    turn_id,
                    "errored",
                    appended,
                    turns,
                    warnings,
                    error=outcome.error,
                    partial=outcome.content,
                )

            assistant = self._append(Message.assistant(outcome.content, outcome.tool_calls), appended)
            record.assistant_message = assistant
            if not assistant.requests_tools:
                return self._outcome(turn_id, "completed", appended, turns, warnings, response=outcome.content)

            self._state = TurnState.TOOL_DISPATCH
            results = await self._dispatch_tools(turn_id, assistant.tool_calls, token)
            record.dispatch_results = results
            for result in results:
                self._append(result.to_message(), appended)
            tool_rounds += 1

            if token.cancelled:
                return await self._finish_cancelled(turn_id, token, appended, turns, warnings)
            if tool_rounds >= self._max_tool_iterations:
                message = f"Stopped after {tool_rounds} tool iteration(s) without a final answer"
                LOGGER.warning("Turn %s: %s", turn_id, message)
                error = RuntimeError(message)
                await self._emit(UIEvent(kind="error", text=message))
                return self._outcome(turn_id, "errored", appended, turns, warnings, error=error)

    async def _resolve_preamble(self) -> str:
        preamble = self._system_preamble
        if not callable(preamble):
            return preamble
        value = preamble()
        if inspect.isawaitable(value):
            value = await value
        return value or ""

    async def _dispatch_tools(
        self, turn_id: str, calls: Sequence[ToolCall], token: CancellationToken
    ) -> list[DispatchResult]:
        try:
            return await self._dispatcher.dispatch(calls, cancellation_token=token)
        except Exception as exc:
            # Every pending call still needs a result or the conversation cannot continue.
            LOGGER.error("Turn %s: tool dispatch failed: %s", turn_id, exc, exc_info=True)
            error = ToolExecutionError.from_exception(exc)
            return [DispatchResult(call=call, success=False, error=error) for call in calls]

    async def _finish_cancelled(
        self,
        turn_id: str,
        token: CancellationToken,
        appended: list[Message],
        turns: list[ModelTurnResult],
        warnings: list[str],
        *,
        partial: str = "",
    ) -> TurnOutcome:
        reason = token.reason or "user"
        if reason == "timeout" and self._turn_timeout:
            text = f"Turn timed out after {self._turn_timeout:g}s"
        else:
            text = "Cancelled"
        await self._emit(UIEvent(kind="cancelled", text=text, metadata={"reason": reason}))
        return self._outcome(turn_id, "cancelled", appended, turns, warnings, partial=partial)

    def _outcome(
        self,
        turn_id: str,
        status: TurnStatus,
        appended: list[Message],
        turns: list[ModelTurnResult],
        warnings: list[str],
        *,
        response: str = "",
        error: BaseException | None = None,
        partial: str = "",
    ) -> TurnOutcome:
        return TurnOutcome(
            turn_id=turn_id,
            status=status,
            response_text=response,
            appended=tuple(appended),
            iterations=len(turns),
            error=error,
            partial_content=partial,
            warnings=tuple(warnings),
            turns=turns,
        )

    def _append(self, message: Message, appended: list[Message]) -> Message:
        self._conversation.append(message)
        appended.append(message)
        return message

    # ------------------------------------------------------------------
    # Event bridges
    # ------------------------------------------------------------------

    async def _on_session_event(self, event: SessionEvent) -> None:
        if event.type == "reasoning" and event.text:
            await self._emit(UIEvent(kind="reasoning", text=event.text))
        elif event.type == "content" and event.text:
            await self._emit(UIEvent(kind="content", text=event.text))
        elif event.type == "error":
            await self._emit(UIEvent(kind="error", text=event.text or str(event.error or "")))

    async def on_tool_start(self, call: ToolCall, arguments: ToolArguments) -> None:
        summary = summarize_tool_call(call.function_name, arguments)
        await self._emit(
            UIEvent(
                kind="tool_start",
                text=summary.title,
                tool_name=call.function_name,
                call_id=call.id,
                summary=summary,
            )
        )

    async def on_tool_result(self, result: DispatchResult) -> None:
        summary = summarize_tool_call(result.tool_name, _parsed_arguments(result.call), result.result)
        await self._emit(
            UIEvent(
                kind="tool_result",
                text=result.content,
                tool_name=result.tool_name,
                call_id=result.call_id,
                summary=summary,
                is_error=not result.success,
                metadata=(
                    {"error": result.error.error_code, "severity": result.error.severity} if result.error else {}
                ),
            )
        )

    async def _emit(self, event: UIEvent) -> None:
        if event.turn_id is None:
            event.turn_id = self._turn_id
        await emit_event(self._render_sink, event)


def _attachment_part(item: Attachment) -> ImagePart:
    if isinstance(item, ImagePart):
        return item
    return ImagePart.from_path(item)


def _parsed_arguments(call: ToolCall) -> dict[str, Any]:
    try:
        parsed = json.loads(call.raw_arguments) if call.raw_arguments.strip() else {}
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


__all__ = ["Attachment", "ConversationOrchestrator", "DEFAULT_MAX_TOOL_ITERATIONS"]
