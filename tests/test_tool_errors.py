"""Tests for tool error payloads."""

from __future__ import annotations

from termpilot.ai.tools.errors import (
    ErrorCode,
    ToolArgumentError,
    ToolCancelledError,
    ToolExecutionError,
    ToolRejectedError,
    ToolTimeoutError,
    UnknownToolError,
    error_from_dict,
)


def test_error_codes_and_string_form() -> None:
    error = ToolRejectedError.for_tool("execute_command")

    assert error.error_code == ErrorCode.REJECTED
    assert str(error) == "[rejected] User rejected the tool call: execute_command"
    assert ToolCancelledError().error_code == ErrorCode.CANCELLED


def test_to_dict_includes_subclass_fields() -> None:
    assert ToolArgumentError(violations=["path: required"]).to_dict()["violations"] == ["path: required"]
    assert UnknownToolError(tool_name="x", available=["a"]).to_dict()["available_tools"] == ["a"]
    assert ToolTimeoutError(timeout_seconds=2.5).to_dict()["timeout_seconds"] == 2.5


def test_execution_error_from_exception() -> None:
    error = ToolExecutionError.from_exception(FileNotFoundError("missing.txt"))

    payload = error.to_dict()
    assert payload["error"] == ErrorCode.EXECUTION_FAILED
    assert payload["message"] == "missing.txt"
    assert payload["exception_type"] == "FileNotFoundError"


def test_error_from_dict_restores_base_fields() -> None:
    original = ToolArgumentError(message="bad", details={"raw": "{"})

    restored = error_from_dict(original.to_dict())

    assert restored.error_code == ErrorCode.INVALID_ARGUMENTS
    assert restored.message == "bad"
    assert restored.details == {"raw": "{"}
