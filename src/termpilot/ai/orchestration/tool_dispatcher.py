"""Tool dispatcher: turns assistant tool calls into ordered tool-result messages.

Every call in a batch produces exactly one result, in the order the calls
were received, whatever happens to it: bad JSON, an unknown tool, a schema
violation, a denied confirmation, a crash, a timeout or a cancelled turn.
Failures are reported back to the model as error results and never raised.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from ...chat.message_model import Message, ToolCall
from ..tools.confirmation import ConfirmationDecision, ConfirmationPolicyStore, ConfirmationRequest, Confirmer
from ..tools.errors import (
    ToolArgumentError,
    ToolCancelledError,
    ToolError,
    ToolExecutionError,
    ToolRejectedError,
    ToolTimeoutError,
    UnknownToolError,
)
from ..tools.tool_registry import CapabilityRegistry, ToolArguments, ToolCapability
from .cancellation import CancellationToken, OperationCancelled

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Dispatch Result
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchResult:
    """Outcome of a single tool call.

    Attributes:
        call: The originating tool call.
        success: Whether the tool ran and returned normally.
        result: The tool's return value.
        error: Error if the call failed or never ran.
        invoked: Whether the capability was actually invoked.
        execution_time_ms: Wall time spent in the capability.
    """

    call: ToolCall
    success: bool
    result: Any = None
    error: ToolError | None = None
    invoked: bool = False
    execution_time_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_name(self) -> str:
        return self.call.function_name

    @property
    def call_id(self) -> str:
        return self.call.id

    @property
    def content(self) -> str:
        """Return the text sent back to the model for this call."""

        if self.error is not None:
            return json.dumps(self.error.to_dict())
        if isinstance(self.result, str):
            return self.result
        if self.result is None:
            return ""
        return json.dumps(self.result, default=str)

    def to_message(self) -> Message:
        return Message.tool(
            self.call.id,
            self.content,
            name=self.call.function_name,
            is_error=not self.success,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {
            "success": self.success,
            "tool_name": self.tool_name,
            "call_id": self.call_id,
            "invoked": self.invoked,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error.to_dict() if self.error else {"message": "Unknown error"}
        if self.metadata:
            data["metadata"] = self.metadata
        return data


# -----------------------------------------------------------------------------
# Dispatch Listener
# -----------------------------------------------------------------------------


class DispatchListener(Protocol):
    """Callback protocol for dispatch events."""

    def on_tool_start(self, call: ToolCall, arguments: ToolArguments) -> None:
        """Called right before a capability is invoked."""
        ...

    def on_tool_result(self, result: DispatchResult) -> None:
        """Called once per call, in call order, with its outcome."""
        ...


@dataclass(slots=True)
class _PreparedCall:
    call: ToolCall
    capability: ToolCapability
    arguments: ToolArguments


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Resolves, confirms and executes tool calls against a registry.

    Example:
        dispatcher = ToolDispatcher(registry, confirmer=prompt_user)
        results = await dispatcher.dispatch(assistant_message.tool_calls)
        for result in results:
            conversation.append(result.to_message())
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        policy_store: ConfirmationPolicyStore | None = None,
        confirmer: Confirmer | None = None,
        listener: DispatchListener | None = None,
        tool_timeout_seconds: float | None = None,
        allow_parallel_tools: bool = False,
    ) -> None:
        self._registry = registry
        self._policy_store = policy_store
        self._confirmer = confirmer
        self._listener = listener
        self._tool_timeout = tool_timeout_seconds if tool_timeout_seconds and tool_timeout_seconds > 0 else None
        self._allow_parallel = bool(allow_parallel_tools)

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    def set_listener(self, listener: DispatchListener | None) -> None:
        """Set or replace the dispatch event listener."""
        self._listener = listener

    def requires_confirmation(self, tool_name: str) -> bool:
        """Return whether ``tool_name`` needs approval: stored policy first, then the capability flag."""

        if self._policy_store is not None:
            override = self._policy_store.requires_confirmation(tool_name)
            if override is not None:
                return override
        capability = self._registry.get(tool_name)
        return bool(capability and capability.requires_confirmation)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        calls: Sequence[ToolCall],
        *,
        cancellation_token: CancellationToken | None = None,
    ) -> list[DispatchResult]:
        """Process ``calls`` in order and return one result per call, in call order.

        Once the token is cancelled, calls that have not started become
        ``cancelled`` results; calls already running are allowed to finish.
        """

        token = cancellation_token or CancellationToken()
        results: list[DispatchResult | None] = [None] * len(calls)
        background: list[tuple[int, asyncio.Future[DispatchResult]]] = []
        notified = 0

        async def settle(index: int, result: DispatchResult) -> None:
            nonlocal notified
            results[index] = result
            while notified < len(results) and results[notified] is not None:
                await self._notify_result(results[notified])
                notified += 1

        for index, call in enumerate(calls):
            if token.cancelled:
                await settle(index, self._cancelled_result(call))
                continue
            try:
                handled = await self._handle(call, token)
            except Exception as exc:
                LOGGER.error("Dispatch of %s (%s) failed: %s", call.id, call.function_name, exc, exc_info=True)
                handled = self._error_result(call, ToolExecutionError.from_exception(exc))
            if isinstance(handled, DispatchResult):
                await settle(index, handled)
            else:
                background.append((index, handled))

        for index, task in background:
            await settle(index, await task)

        return [result for result in results if result is not None]

    async def dispatch_one(
        self,
        call: ToolCall,
        *,
        cancellation_token: CancellationToken | None = None,
    ) -> DispatchResult:
        results = await self.dispatch([call], cancellation_token=cancellation_token)
        return results[0]

    async def _handle(
        self, call: ToolCall, token: CancellationToken
    ) -> DispatchResult | asyncio.Future[DispatchResult]:
        prepared = self._prepare(call)
        if isinstance(prepared, DispatchResult):
            return prepared
        if self.requires_confirmation(call.function_name):
            try:
                refusal = await self._confirm(prepared, token)
            except OperationCancelled:
                return self._cancelled_result(call)
            if refusal is not None:
                LOGGER.debug("Tool call %s (%s) not approved: %s", call.id, call.function_name, refusal.message)
                return self._error_result(call, refusal)
        elif self._allow_parallel:
            return asyncio.ensure_future(self._execute(prepared))
        return await self._execute(prepared)

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _prepare(self, call: ToolCall) -> _PreparedCall | DispatchResult:
        name = call.function_name
        raw = call.raw_arguments or ""
        try:
            parsed: Any = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            return self._error_result(
                call,
                ToolArgumentError(
                    message=f"Arguments for {name} are not valid JSON: {exc.msg}",
                    details={"raw_arguments": raw[:200]},
                ),
            )
        if not isinstance(parsed, Mapping):
            return self._error_result(
                call,
                ToolArgumentError(message=f"Arguments for {name} must be a JSON object"),
            )

        capability = self._registry.get(name)
        if capability is None:
            LOGGER.debug("Model requested unknown tool %s", name)
            return self._error_result(
                call,
                UnknownToolError(message=f"Unknown tool: {name}", tool_name=name, available=self._registry.names()),
            )

        try:
            arguments = capability.validate(parsed)
        except ToolArgumentError as exc:
            return self._error_result(call, exc)
        return _PreparedCall(call=call, capability=capability, arguments=arguments)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def _confirm(self, prepared: _PreparedCall, token: CancellationToken) -> ToolError | None:
        """Ask the confirmer about ``prepared``; return ``None`` when approved, else the refusal."""

        name = prepared.call.function_name
        if self._confirmer is None:
            LOGGER.warning("Tool %s requires confirmation but no confirmer is configured; denying", name)
            return ToolRejectedError.for_tool(name)
        request = ConfirmationRequest(
            call_id=prepared.call.id,
            tool_name=name,
            arguments=prepared.arguments,
            preview=self._build_preview(prepared),
            description=prepared.capability.description,
        )
        try:
            decision: Any = self._confirmer(request)
            if inspect.isawaitable(decision):
                decision = await token.race(decision)
        except OperationCancelled:
            raise
        except Exception as exc:
            LOGGER.warning("Confirmation prompt for %s failed: %s", name, exc, exc_info=True)
            return ToolRejectedError(
                message=f"Could not confirm the tool call {name}: {exc}",
                details={"exception_type": type(exc).__name__},
            )
        if not isinstance(decision, ConfirmationDecision):
            LOGGER.warning("Confirmer returned %r for %s; treating as denial", decision, name)
            return ToolRejectedError.for_tool(name)
        if decision.persist_as_policy and self._policy_store is not None:
            try:
                self._policy_store.set_policy(name, not decision.approved)
            except Exception as exc:
                LOGGER.warning("Could not persist confirmation policy for %s: %s", name, exc)
        return None if decision.approved else ToolRejectedError.for_tool(name)

    @staticmethod
    def _build_preview(prepared: _PreparedCall) -> str:
        try:
            return prepared.capability.render_preview(prepared.arguments)
        except Exception:
            LOGGER.debug("Preview builder for %s failed", prepared.call.function_name, exc_info=True)
            return json.dumps(prepared.arguments.to_dict(), indent=2, sort_keys=True, default=str)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, prepared: _PreparedCall) -> DispatchResult:
        call = prepared.call
        await self._notify_start(call, prepared.arguments)
        start = time.perf_counter()
        try:
            invocation = prepared.capability.invoke(prepared.arguments)
            if self._tool_timeout is not None:
                value = await asyncio.wait_for(invocation, timeout=self._tool_timeout)
            else:
                value = await invocation
        except asyncio.TimeoutError:
            error: ToolError = ToolTimeoutError(
                message=f"{call.function_name} did not finish within {self._tool_timeout:g}s",
                timeout_seconds=self._tool_timeout,
            )
            return self._error_result(call, error, start=start, invoked=True)
        except ToolError as exc:
            return self._error_result(call, exc, start=start, invoked=True)
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", call.function_name, exc, exc_info=True)
            return self._error_result(call, ToolExecutionError.from_exception(exc), start=start, invoked=True)
        return DispatchResult(
            call=call,
            success=True,
            result=value,
            invoked=True,
            execution_time_ms=_elapsed_ms(start),
        )

    # ------------------------------------------------------------------
    # Result Building
    # ------------------------------------------------------------------

    @staticmethod
    def _error_result(
        call: ToolCall,
        error: ToolError,
        *,
        start: float | None = None,
        invoked: bool = False,
    ) -> DispatchResult:
        return DispatchResult(
            call=call,
            success=False,
            error=error,
            invoked=invoked,
            execution_time_ms=_elapsed_ms(start) if start is not None else 0.0,
        )

    def _cancelled_result(self, call: ToolCall) -> DispatchResult:
        return self._error_result(call, ToolCancelledError())

    async def _notify_start(self, call: ToolCall, arguments: ToolArguments) -> None:
        if self._listener:
            try:
                outcome = self._listener.on_tool_start(call, arguments)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                LOGGER.debug("Listener on_tool_start failed", exc_info=True)

    async def _notify_result(self, result: DispatchResult) -> None:
        if self._listener:
            try:
                outcome = self._listener.on_tool_result(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                LOGGER.debug("Listener on_tool_result failed", exc_info=True)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


__all__ = [
    "DispatchListener",
    "DispatchResult",
    "ToolDispatcher",
]
