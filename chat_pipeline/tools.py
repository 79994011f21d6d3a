"""Tool registry and tool registration record."""

from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel, model_validator

from chat_pipeline.exceptions import ArgumentParseError, ToolNotFoundError
from chat_pipeline.expect import parse_json
from chat_pipeline.llm import ToolDefinition
from chat_pipeline.logging import get_logger

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Structured result a handler may return."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


# handler(args, locals, agent) -> value or awaitable
ToolHandler = Callable[..., Any]


@dataclass
class Tool:
    """A callable the backend may request by name."""

    name: str
    handler: ToolHandler
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    def get_definition(self) -> ToolDefinition:
        """Definition offered to the backend."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


class ToolRegistry:
    """Tools registered on one engine, with that engine's invocation counts."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._calls: dict[str, int] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool to register; replaces any tool of the same name
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool
        self._calls.setdefault(tool.name, 0)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
        self._calls.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        return [tool.get_definition() for tool in self._tools.values()]

    def record_call(self, name: str) -> int:
        """Count one invocation of ``name`` and return the new total."""
        self._calls[name] = self._calls.get(name, 0) + 1
        return self._calls[name]

    def calls(self, name: str) -> int:
        return self._calls.get(name, 0)

    def reset_calls(self) -> None:
        self._calls = {name: 0 for name in self._tools}

    def copy(self) -> "ToolRegistry":
        """Registry sharing the same tools with fresh invocation counts."""
        registry = ToolRegistry()
        for tool in self._tools.values():
            registry.register(tool)
        return registry

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def parse_arguments(name: str, raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Decode tool-call arguments into a dict.

    Models often send almost-JSON (single quotes, trailing commas,
    fractions); it is repaired before decoding.

    Raises:
        ArgumentParseError when no JSON object can be recovered
    """
    if isinstance(raw, dict):
        return raw
    if raw is None or not str(raw).strip():
        return {}
    try:
        parsed = parse_json(raw)
    except ValueError as e:
        raise ArgumentParseError(name, str(e))
    if not isinstance(parsed, dict):
        raise ArgumentParseError(name, f"expected a JSON object, got {type(parsed).__name__}")
    return parsed
