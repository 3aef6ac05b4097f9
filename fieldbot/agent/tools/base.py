"""Tool contract consumed by the conversation engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from fieldbot.agent.request import Actor


@dataclass
class ToolResult:
    """Outcome of one tool call; serialized verbatim into the tool message."""

    success: bool
    data: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        return out

    @classmethod
    def from_value(cls, value: Any) -> ToolResult:
        if isinstance(value, ToolResult):
            return value
        if isinstance(value, dict) and "success" in value:
            return cls(success=bool(value["success"]), data=value.get("data"), error=value.get("error"))
        return cls(success=True, data=value)

    @classmethod
    def failure(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


class ToolExecutor(Protocol):
    """What the engine needs from the domain tool layer."""

    def get_definitions(self) -> list[dict[str, Any]]: ...

    async def execute(self, name: str, args: dict[str, Any], actor: Actor) -> ToolResult: ...


class Tool(ABC):
    """A single domain capability exposed to the model."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Description shown to the model."""

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON schema for parameters."""

    @abstractmethod
    async def execute(self, arguments: dict[str, Any], actor: Actor) -> ToolResult | dict[str, Any]:
        """Run the tool for *actor*."""

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """Return a list of problems (missing required fields, wrong top-level types)."""
        errors: list[str] = []
        schema = self.parameters or {}
        for key in schema.get("required", []):
            if key not in params or params[key] is None:
                errors.append(f"missing required parameter '{key}'")
        type_map = {"string": str, "integer": int, "number": (int, float), "boolean": bool,
                    "array": list, "object": dict}
        for key, prop in (schema.get("properties") or {}).items():
            expected = type_map.get(prop.get("type", ""))
            if expected and key in params and params[key] is not None and not isinstance(params[key], expected):
                errors.append(f"parameter '{key}' should be {prop['type']}")
        return errors

    def to_schema(self) -> dict[str, Any]:
        """OpenAI function-calling definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
