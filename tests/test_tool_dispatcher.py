"""Tests for the tool dispatcher."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from termpilot.ai.orchestration.cancellation import CancellationToken
from termpilot.ai.orchestration.tool_dispatcher import DispatchResult, ToolDispatcher
from termpilot.ai.tools.confirmation import ConfirmationDecision, ConfirmationPolicyStore, ConfirmationRequest
from termpilot.ai.tools.errors import ErrorCode
from termpilot.ai.tools.tool_registry import CapabilityRegistry, ToolArguments
from termpilot.chat.message_model import ToolCall

PATH_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}},
    "required": ["path"],
    "additionalProperties": False,
}


def _call(call_id: str, name: str, arguments: Any = None) -> ToolCall:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments or {})
    return ToolCall(id=call_id, function_name=name, raw_arguments=raw)


def _error_code(result: DispatchResult) -> str | None:
    return result.error.error_code if result.error else None


class _Listener:
    def __init__(self) -> None:
        self.started: list[str] = []
        self.finished: list[str] = []

    def on_tool_start(self, call: ToolCall, arguments: ToolArguments) -> None:
        self.started.append(call.id)

    async def on_tool_result(self, result: DispatchResult) -> None:
        self.finished.append(result.call_id)


@pytest.fixture
def invocations() -> list[tuple[str, dict[str, Any]]]:
    return []


@pytest.fixture
def file_registry(registry: CapabilityRegistry, invocations) -> CapabilityRegistry:
    def read_file(arguments: ToolArguments) -> str:
        invocations.append(("read_file", arguments.to_dict()))
        return f"contents of {arguments['path']}"

    async def write_file(arguments: ToolArguments) -> dict[str, Any]:
        invocations.append(("write_file", arguments.to_dict()))
        return {"written": arguments["path"]}

    registry.register_function("read_file", read_file, schema=PATH_SCHEMA)
    registry.register_function("write_file", write_file, schema=PATH_SCHEMA, requires_confirmation=True)
    return registry


@pytest.mark.asyncio
async def test_results_follow_call_order_with_bad_json_in_the_middle(file_registry, invocations) -> None:
    listener = _Listener()
    dispatcher = ToolDispatcher(file_registry, listener=listener)
    calls = [
        _call("a", "read_file", {"path": "one.txt"}),
        _call("b", "read_file", '{"path": '),
        _call("c", "read_file", {"path": "three.txt"}),
    ]

    results = await dispatcher.dispatch(calls)

    assert [result.call_id for result in results] == ["a", "b", "c"]
    assert [result.success for result in results] == [True, False, True]
    assert _error_code(results[1]) == ErrorCode.INVALID_ARGUMENTS
    assert results[0].content == "contents of one.txt"
    assert [name for name, _ in invocations] == ["read_file", "read_file"]
    assert listener.started == ["a", "c"]
    assert listener.finished == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_unknown_tool_yields_error_result(file_registry) -> None:
    dispatcher = ToolDispatcher(file_registry)

    result = await dispatcher.dispatch_one(_call("x", "delete_everything", {}))

    assert _error_code(result) == ErrorCode.UNKNOWN_TOOL
    payload = json.loads(result.content)
    assert payload["tool"] == "delete_everything"
    assert sorted(payload["available_tools"]) == ["read_file", "write_file"]
    message = result.to_message()
    assert message.tool_call_id == "x"
    assert message.is_error is True


@pytest.mark.asyncio
async def test_schema_violation_is_reported_without_invocation(file_registry, invocations) -> None:
    dispatcher = ToolDispatcher(file_registry)

    result = await dispatcher.dispatch_one(_call("v", "read_file", {"path": 42, "extra": True}))

    assert _error_code(result) == ErrorCode.INVALID_ARGUMENTS
    assert result.invoked is False
    assert len(result.error.violations) == 2
    assert invocations == []


@pytest.mark.asyncio
async def test_non_object_arguments_are_rejected(file_registry) -> None:
    dispatcher = ToolDispatcher(file_registry)

    result = await dispatcher.dispatch_one(_call("n", "read_file", "[1, 2]"))

    assert _error_code(result) == ErrorCode.INVALID_ARGUMENTS


@pytest.mark.asyncio
async def test_empty_arguments_mean_empty_object(registry: CapabilityRegistry) -> None:
    registry.register_function("list_directory", lambda arguments: ["a", "b"])
    dispatcher = ToolDispatcher(registry)

    result = await dispatcher.dispatch_one(_call("e", "list_directory", ""))

    assert result.success
    assert result.content == '["a", "b"]'


@pytest.mark.asyncio
async def test_denied_confirmation_skips_invocation(file_registry, invocations) -> None:
    requests: list[ConfirmationRequest] = []

    def confirmer(request: ConfirmationRequest) -> ConfirmationDecision:
        requests.append(request)
        return ConfirmationDecision.deny()

    dispatcher = ToolDispatcher(file_registry, confirmer=confirmer)

    result = await dispatcher.dispatch_one(_call("w", "write_file", {"path": "out.txt"}))

    assert _error_code(result) == ErrorCode.REJECTED
    assert result.error.message == "User rejected the tool call: write_file"
    assert invocations == []
    assert requests[0].tool_name == "write_file"
    assert '"path": "out.txt"' in requests[0].preview


@pytest.mark.asyncio
async def test_missing_confirmer_denies_confirmation_tools(file_registry, invocations) -> None:
    dispatcher = ToolDispatcher(file_registry)

    result = await dispatcher.dispatch_one(_call("w", "write_file", {"path": "out.txt"}))

    assert _error_code(result) == ErrorCode.REJECTED
    assert invocations == []


@pytest.mark.asyncio
async def test_crashing_confirmer_rejects_without_invoking(file_registry, invocations) -> None:
    listener = _Listener()

    def confirmer(request: ConfirmationRequest) -> ConfirmationDecision:
        raise RuntimeError("prompt UI crashed")

    dispatcher = ToolDispatcher(file_registry, confirmer=confirmer, listener=listener)

    results = await dispatcher.dispatch(
        [_call("c1", "write_file", {"path": "out.txt"}), _call("c2", "read_file", {"path": "in.txt"})]
    )

    assert [result.call_id for result in results] == ["c1", "c2"]
    assert _error_code(results[0]) == ErrorCode.REJECTED
    assert "prompt UI crashed" in results[0].error.message
    assert results[0].error.details["exception_type"] == "RuntimeError"
    assert results[1].success
    assert invocations == [("read_file", {"path": "in.txt"})]
    assert listener.finished == ["c1", "c2"]


class _ReadOnlyPolicyStore(ConfirmationPolicyStore):
    def save(self):
        raise OSError("read-only file system")


@pytest.mark.asyncio
async def test_policy_save_failure_keeps_the_approval(file_registry, invocations, tmp_path) -> None:
    store = _ReadOnlyPolicyStore(tmp_path / "policy.json")
    prompts: list[str] = []

    def confirmer(request: ConfirmationRequest) -> ConfirmationDecision:
        prompts.append(request.call_id)
        return ConfirmationDecision.approve(persist=True)

    dispatcher = ToolDispatcher(file_registry, policy_store=store, confirmer=confirmer)

    first = await dispatcher.dispatch_one(_call("w1", "write_file", {"path": "a.txt"}))
    second = await dispatcher.dispatch_one(_call("w2", "write_file", {"path": "b.txt"}))

    assert first.success and second.success
    assert prompts == ["w1"]
    assert len(invocations) == 2
    assert not (tmp_path / "policy.json").exists()

@pytest.mark.asyncio
async def test_persisted_approval_disables_future_prompts(file_registry, invocations, tmp_path) -> None:
    store = ConfirmationPolicyStore(tmp_path / "policy.json")
    prompts: list[str] = []

    async def confirmer(request: ConfirmationRequest) -> ConfirmationDecision:
        prompts.append(request.call_id)
        return ConfirmationDecision.approve(persist=True)

    dispatcher = ToolDispatcher(file_registry, policy_store=store, confirmer=confirmer)

    first = await dispatcher.dispatch_one(_call("w1", "write_file", {"path": "a.txt"}))
    second = await dispatcher.dispatch_one(_call("w2", "write_file", {"path": "b.txt"}))

    assert first.success and second.success
    assert prompts == ["w1"]
    assert store.requires_confirmation("write_file") is False
    assert json.loads((tmp_path / "policy.json").read_text()) == {"write_file": False}
    assert ConfirmationPolicyStore(tmp_path / "policy.json").requires_confirmation("write_file") is False


@pytest.mark.asyncio
async def test_policy_store_can_require_confirmation_for_flagless_tool(file_registry) -> None:
    store = ConfirmationPolicyStore.in_memory({"read_file": True})
    dispatcher = ToolDispatcher(file_registry, policy_store=store)

    assert dispatcher.requires_confirmation("read_file") is True
    result = await dispatcher.dispatch_one(_call("r", "read_file", {"path": "x"}))
    assert _error_code(result) == ErrorCode.REJECTED


@pytest.mark.asyncio
async def test_custom_preview_is_shown_to_confirmer(registry: CapabilityRegistry) -> None:
    seen: list[str] = []
    registry.register_function(
        "apply_patch",
        lambda arguments: "ok",
        schema=PATH_SCHEMA,
        requires_confirmation=True,
        preview=lambda arguments: f"patch {arguments['path']}",
    )

    def confirmer(request: ConfirmationRequest) -> ConfirmationDecision:
        seen.append(request.preview)
        return ConfirmationDecision.approve()

    dispatcher = ToolDispatcher(registry, confirmer=confirmer)
    result = await dispatcher.dispatch_one(_call("p", "apply_patch", {"path": "main.py"}))

    assert result.success
    assert seen == ["patch main.py"]


@pytest.mark.asyncio
async def test_tool_exceptions_become_execution_failed(registry: CapabilityRegistry) -> None:
    def explode(arguments: ToolArguments) -> None:
        raise PermissionError("access denied")

    registry.register_function("read_file", explode)
    dispatcher = ToolDispatcher(registry)

    result = await dispatcher.dispatch_one(_call("x", "read_file", {}))

    assert _error_code(result) == ErrorCode.EXECUTION_FAILED
    assert result.invoked is True
    assert json.loads(result.content)["exception_type"] == "PermissionError"


@pytest.mark.asyncio
async def test_slow_tools_time_out(registry: CapabilityRegistry) -> None:
    async def slow(arguments: ToolArguments) -> str:
        await asyncio.sleep(5)
        return "late"

    registry.register_function("run_command", slow)
    dispatcher = ToolDispatcher(registry, tool_timeout_seconds=0.01)

    result = await dispatcher.dispatch_one(_call("t", "run_command", {}))

    assert _error_code(result) == ErrorCode.TIMEOUT
    assert result.error.timeout_seconds == pytest.approx(0.01)


@pytest.mark.asyncio
async def test_cancelled_token_marks_unstarted_calls(file_registry, invocations) -> None:
    token = CancellationToken()

    class _CancelOnFirst:
        def on_tool_start(self, call, arguments):
            token.cancel()

        def on_tool_result(self, result):
            return None

    dispatcher = ToolDispatcher(file_registry, listener=_CancelOnFirst())
    calls = [_call(f"c{index}", "read_file", {"path": f"{index}.txt"}) for index in range(3)]

    results = await dispatcher.dispatch(calls, cancellation_token=token)

    assert [result.success for result in results] == [True, False, False]
    assert [_error_code(result) for result in results[1:]] == [ErrorCode.CANCELLED, ErrorCode.CANCELLED]
    assert len(invocations) == 1


@pytest.mark.asyncio
async def test_cancel_during_confirmation_prompt(file_registry, invocations) -> None:
    token = CancellationToken()

    async def confirmer(request: ConfirmationRequest) -> ConfirmationDecision:
        token.cancel()
        await asyncio.sleep(5)
        return ConfirmationDecision.approve()

    dispatcher = ToolDispatcher(file_registry, confirmer=confirmer)

    results = await dispatcher.dispatch([_call("w", "write_file", {"path": "a"})], cancellation_token=token)

    assert _error_code(results[0]) == ErrorCode.CANCELLED
    assert invocations == []


@pytest.mark.asyncio
async def test_parallel_dispatch_preserves_call_order(registry: CapabilityRegistry) -> None:
    finished: list[str] = []

    async def sleeper(arguments: ToolArguments) -> str:
        await asyncio.sleep(arguments["delay"])
        finished.append(arguments["name"])
        return arguments["name"]

    schema = {"type": "object", "properties": {"delay": {"type": "number"}, "name": {"type": "string"}}}
    registry.register_function("sleep", sleeper, schema=schema)
    listener = _Listener()
    dispatcher = ToolDispatcher(registry, listener=listener, allow_parallel_tools=True)
    calls = [
        _call("slow", "sleep", {"delay": 0.05, "name": "slow"}),
        _call("fast", "sleep", {"delay": 0.0, "name": "fast"}),
    ]

    results = await dispatcher.dispatch(calls)

    assert finished == ["fast", "slow"]
    assert [result.content for result in results] == ["slow", "fast"]
    assert listener.finished == ["slow", "fast"]
