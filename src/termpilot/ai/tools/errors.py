"""Standardized error types for tool calls.

Every failure a tool call can hit is represented here and serialized into the
tool-result message sent back to the model; none of them abort a turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool results."""

    INVALID_ARGUMENTS = "invalid_arguments"
    UNKNOWN_TOOL = "unknown_tool"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Base exception class for all tool errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for the model.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON tool results."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class ToolArgumentError(ToolError):
    """Arguments were not a JSON object or failed schema validation."""

    error_code: str = field(default=ErrorCode.INVALID_ARGUMENTS)
    message: str = field(default="Tool arguments are invalid")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Send a JSON object matching the tool's parameter schema")

    violations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.violations:
            result["violations"] = list(self.violations)
        return result


@dataclass
class UnknownToolError(ToolError):
    """The model asked for a tool that is not registered."""

    error_code: str = field(default=ErrorCode.UNKNOWN_TOOL)
    message: str = field(default="Unknown tool")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Call one of the tools listed in the request")

    tool_name: str | None = field(default=None)
    available: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name is not None:
            result["tool"] = self.tool_name
        if self.available:
            result["available_tools"] = list(self.available)
        return result


@dataclass
class ToolExecutionError(ToolError):
    """The tool raised while running."""

    error_code: str = field(default=ErrorCode.EXECUTION_FAILED)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    exception_type: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.exception_type:
            result["exception_type"] = self.exception_type
        return result

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ToolExecutionError":
        return cls(message=str(exc) or exc.__class__.__name__, exception_type=exc.__class__.__name__)


@dataclass
class ToolTimeoutError(ToolError):
    """The tool did not finish within the configured timeout."""

    error_code: str = field(default=ErrorCode.TIMEOUT)
    message: str = field(default="Tool execution timed out")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Try again with a narrower scope")

    timeout_seconds: float | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.timeout_seconds is not None:
            result["timeout_seconds"] = self.timeout_seconds
        return result


@dataclass
class ToolRejectedError(ToolError):
    """The user declined the confirmation prompt."""

    error_code: str = field(default=ErrorCode.REJECTED)
    message: str = field(default="User rejected the tool call")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Ask the user how they would like to proceed")

    severity: ClassVar[str] = "warning"

    @classmethod
    def for_tool(cls, name: str) -> "ToolRejectedError":
        return cls(message=f"User rejected the tool call: {name}")


@dataclass
class ToolCancelledError(ToolError):
    """The turn was cancelled before the tool started."""

    error_code: str = field(default=ErrorCode.CANCELLED)
    message: str = field(default="Tool call cancelled before it started")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    severity: ClassVar[str] = "warning"


# -----------------------------------------------------------------------------
# Utility Functions
# -----------------------------------------------------------------------------

def error_from_dict(data: Mapping[str, Any]) -> ToolError:
    """Reconstruct a ToolError from its dictionary representation."""
    return ToolError(
        error_code=data.get("error", ErrorCode.EXECUTION_FAILED),
        message=data.get("message", "Unknown error"),
        details=dict(data.get("details", {})),
        suggestion=data.get("suggestion", ""),
    )


__all__ = [
    "ErrorCode",
    "ToolError",
    "ToolArgumentError",
    "UnknownToolError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "ToolRejectedError",
    "ToolCancelledError",
    "error_from_dict",
]
