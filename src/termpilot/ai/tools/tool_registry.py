"""Capability registry for model-callable tools.

Each capability carries a JSON Schema for its arguments. Raw arguments are
validated with :mod:`jsonschema` and wrapped in a :class:`ToolArguments`
value before any handler sees them.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Iterator, Mapping, Union

from jsonschema import Draft202012Validator

from .errors import ToolArgumentError, UnknownToolError

LOGGER = logging.getLogger(__name__)

ToolResult = Any
ToolHandler = Callable[["ToolArguments"], Union[ToolResult, Awaitable[ToolResult]]]
PreviewBuilder = Callable[["ToolArguments"], str]

_EMPTY_SCHEMA: Mapping[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True, eq=False)
class ToolArguments(Mapping[str, Any]):
    """Schema-validated arguments tagged with the tool they belong to.

    Only :meth:`ToolCapability.validate` builds these, so a handler can rely
    on its arguments having passed the capability's schema.
    """

    tool_name: str
    data: Mapping[str, Any]

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ToolArguments):
            return self.tool_name == other.tool_name and dict(self.data) == dict(other.data)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)


@dataclass(slots=True)
class ToolCapability:
    """A registered tool: its schema, confirmation flag and implementation.

    Attributes:
        name: Tool name (identifier) advertised to the model.
        argument_schema: JSON Schema describing the arguments object.
        handler: Callable receiving :class:`ToolArguments`; may be async.
        description: Human-readable description shown to the model.
        requires_confirmation: Whether the user must approve each call.
        preview: Optional builder for the confirmation preview text.
    """

    name: str
    argument_schema: Mapping[str, Any]
    handler: ToolHandler
    description: str = ""
    requires_confirmation: bool = False
    preview: PreviewBuilder | None = None
    _validator: Draft202012Validator = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool capabilities require a name")
        schema = dict(self.argument_schema or _EMPTY_SCHEMA)
        Draft202012Validator.check_schema(schema)
        self.argument_schema = schema
        self._validator = Draft202012Validator(schema)

    def validate(self, arguments: Mapping[str, Any]) -> ToolArguments:
        """Validate ``arguments`` against the schema or raise :class:`ToolArgumentError`."""

        errors = sorted(self._validator.iter_errors(dict(arguments)), key=lambda error: list(error.path))
        if errors:
            violations = [_format_violation(error) for error in errors]
            raise ToolArgumentError(
                message=f"Arguments for {self.name} failed validation: {violations[0]}",
                violations=violations,
            )
        return ToolArguments(tool_name=self.name, data=arguments)

    async def invoke(self, arguments: ToolArguments) -> ToolResult:
        if arguments.tool_name != self.name:
            raise ToolArgumentError(
                message=f"Arguments were validated for {arguments.tool_name}, not {self.name}",
            )
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def render_preview(self, arguments: ToolArguments) -> str:
        """Return the human-readable preview shown before confirmation."""

        if self.preview is not None:
            return self.preview(arguments)
        return json.dumps(arguments.to_dict(), indent=2, sort_keys=True, default=str)

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.argument_schema),
            },
        }


def _format_violation(error: Any) -> str:
    location = "/".join(str(part) for part in error.path)
    return f"{location}: {error.message}" if location else error.message


class CapabilityRegistry:
    """Registry of tool capabilities keyed by name.

    Example:
        registry = CapabilityRegistry()
        registry.register(ToolCapability(name="list_directory", argument_schema=schema, handler=list_dir))
        tools = registry.to_openai_tools()
    """

    def __init__(self, capabilities: Iterable[ToolCapability] = ()) -> None:
        self._capabilities: dict[str, ToolCapability] = {}
        for capability in capabilities:
            self.register(capability)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, capability: ToolCapability) -> ToolCapability:
        if capability.name in self._capabilities:
            LOGGER.debug("Replacing registered tool: %s", capability.name)
        self._capabilities[capability.name] = capability
        LOGGER.debug(
            "Registered tool: %s (requires_confirmation=%s)",
            capability.name,
            capability.requires_confirmation,
        )
        return capability

    def register_function(
        self,
        name: str,
        handler: ToolHandler,
        *,
        schema: Mapping[str, Any] | None = None,
        description: str = "",
        requires_confirmation: bool = False,
        preview: PreviewBuilder | None = None,
    ) -> ToolCapability:
        return self.register(
            ToolCapability(
                name=name,
                argument_schema=schema or _EMPTY_SCHEMA,
                handler=handler,
                description=description,
                requires_confirmation=requires_confirmation,
                preview=preview,
            )
        )

    def unregister(self, name: str) -> bool:
        removed = self._capabilities.pop(name, None)
        if removed is not None:
            LOGGER.debug("Unregistered tool: %s", name)
        return removed is not None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> ToolCapability | None:
        return self._capabilities.get(name)

    def has(self, name: str) -> bool:
        return name in self._capabilities

    def names(self) -> list[str]:
        return list(self._capabilities)

    def list_capabilities(self) -> list[dict[str, Any]]:
        """Return ``{name, schema, description, requires_confirmation}`` entries."""

        return [
            {
                "name": capability.name,
                "schema": dict(capability.argument_schema),
                "description": capability.description,
                "requires_confirmation": capability.requires_confirmation,
            }
            for capability in self._capabilities.values()
        ]

    async def invoke(self, name: str, arguments: Mapping[str, Any]) -> ToolResult:
        """Validate (when needed) and run the named capability."""

        capability = self._capabilities.get(name)
        if capability is None:
            raise UnknownToolError(message=f"Unknown tool: {name}", tool_name=name, available=self.names())
        if not isinstance(arguments, ToolArguments):
            arguments = capability.validate(arguments)
        return await capability.invoke(arguments)

    def to_openai_tools(self) -> list[dict[str, Any]]:
        """Convert all capabilities to OpenAI function calling format."""

        return [capability.to_openai_tool() for capability in self._capabilities.values()]

    def __len__(self) -> int:
        return len(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities


__all__ = [
    "CapabilityRegistry",
    "PreviewBuilder",
    "ToolArguments",
    "ToolCapability",
    "ToolHandler",
    "ToolResult",
]
