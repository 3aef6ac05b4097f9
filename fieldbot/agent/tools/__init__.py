"""Agent tools module."""

from fieldbot.agent.tools.base import Tool, ToolExecutor, ToolResult
from fieldbot.agent.tools.descriptions import describe_tool
from fieldbot.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolExecutor", "ToolRegistry", "ToolResult", "describe_tool"]
