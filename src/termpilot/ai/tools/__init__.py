"""Tool capabilities, confirmation, and error payloads."""

from . import confirmation, diff_builder, errors, tool_registry

__all__ = ["confirmation", "diff_builder", "errors", "tool_registry"]
