"""Tool registry implementing the engine's tool-executor contract."""

import time
from typing import Any

from fieldbot.agent.request import Actor
from fieldbot.agent.tools.base import Tool, ToolResult
from fieldbot.errors import ToolExecutionError
from fieldbot.logging import get_logger

audit_log = get_logger("fieldbot.audit")

_REDACTED_ARGS = frozenset({"password", "token", "api_key"})
_LONG_TEXT_ARGS = frozenset({"query", "description", "details", "note"})
_LONG_TEXT_LIMIT = 200


def audit_params(args: dict[str, Any]) -> dict[str, Any]:
    """Tool arguments as they may appear in the audit log."""
    shown: dict[str, Any] = {}
    for key, value in args.items():
        if key in _REDACTED_ARGS:
            shown[key] = f"<{len(str(value))} chars>"
        elif key in _LONG_TEXT_ARGS and isinstance(value, str) and len(value) > _LONG_TEXT_LIMIT:
            shown[key] = value[:_LONG_TEXT_LIMIT] + "..."
        else:
            shown[key] = value
    return shown


class ToolRegistry:
    """
    Name -> tool dispatch with an audit trail on ``fieldbot.audit``.

    ``execute`` never raises: an unknown name, arguments failing the
    tool's schema and exceptions inside the tool all come back as
    ``ToolResult(success=False)`` so the model can read what went wrong.
    """

    def __init__(self, audit: bool = True):
        self._tools: dict[str, Tool] = {}
        self._audit = audit

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(self, name: str, args: dict[str, Any], actor: Actor) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.failure(f"Tool '{name}' not found. Available: {', '.join(self._tools)}")

        if self._audit:
            audit_log.info("tool_call_started", tool=name, employee_id=actor.employee_id, params=audit_params(args))
        started = time.monotonic()

        problems = tool.validate_params(args)
        if problems:
            if self._audit:
                audit_log.warning("tool_call_failed", tool=name, error="invalid_params")
            return ToolResult.failure(f"Invalid parameters for tool '{name}': " + "; ".join(problems))

        try:
            result = ToolResult.from_value(await tool.execute(args, actor))
        except ToolExecutionError as e:
            if self._audit:
                audit_log.warning("tool_call_failed", tool=name, error=e.reason, duration_ms=_elapsed_ms(started))
            return ToolResult.failure(e.reason)
        except Exception as e:
            if self._audit:
                audit_log.warning("tool_call_failed", tool=name, error=str(e), duration_ms=_elapsed_ms(started))
            return ToolResult.failure(f"Error executing {name}: {e}")

        if self._audit:
            audit_log.info("tool_call_completed", tool=name, duration_ms=_elapsed_ms(started), success=result.success)
        return result

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 1)
