"""Human-in-the-loop gate in front of tool execution."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator

from fieldbot.agent.directory import PartialIdResolver
from fieldbot.agent.request import Actor, ConfirmedTool
from fieldbot.agent.sequence import sanitize_tool_call_id
from fieldbot.agent.sse_events import (
    PendingToolPayload,
    SSEEvent,
    ToolConfirmationEvent,
    tool_confirmation_event,
    tool_end_event,
    tool_start_event,
)
from fieldbot.agent.stream_handler import AssembledToolCall
from fieldbot.agent.tools.base import ToolExecutor, ToolResult
from fieldbot.agent.tools.descriptions import describe_tool
from fieldbot.agent.turn_state import TurnState
from fieldbot.logging import get_logger
from fieldbot.memory.extraction import EntityExtractor

logger = get_logger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def confirmed_call_id(index: int, now_ms: int | None = None) -> str:
    """Synthetic id for the *index*-th confirmed tool: ``cf_<base36 ms>_<index>``."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"cf_{_base36(stamp)}_{index}"


@dataclass
class PendingTool:
    """A resolved tool call waiting for (or about to get) execution."""

    call_id: str
    name: str
    description: str
    arguments: dict[str, Any]

    def to_payload(self) -> PendingToolPayload:
        return {"name": self.name, "description": self.description, "arguments": self.arguments}

    def to_tool_call(self) -> dict[str, Any]:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments, ensure_ascii=False)},
        }


class ToolConfirmationWorkflow:
    """
    Resolve, describe and execute tool calls on behalf of a turn.

    Execution never raises: executor failures are folded into the tool's
    ``{success: false, error}`` result and fed back to the model.
    """

    def __init__(
        self,
        tools: ToolExecutor,
        resolver: PartialIdResolver,
        extractor: EntityExtractor | None = None,
    ) -> None:
        self.tools = tools
        self.resolver = resolver
        self.extractor = extractor or EntityExtractor()

    async def prepare(self, calls: list[AssembledToolCall]) -> list[PendingTool]:
        pending: list[PendingTool] = []
        for position, call in enumerate(calls):
            arguments = await self.resolver.resolve_arguments(call.parsed_arguments())
            pending.append(PendingTool(
                call_id=sanitize_tool_call_id(call.id or f"call_{position}"),
                name=call.name,
                description=describe_tool(call.name, arguments),
                arguments=arguments,
            ))
        return pending

    def suspend(self, state: TurnState, content: str, pending: list[PendingTool]) -> ToolConfirmationEvent:
        """Record the proposed calls without running them and end the turn awaiting approval."""
        state.messages.append({
            "role": "assistant",
            "content": content or None,
            "tool_calls": [p.to_tool_call() for p in pending],
        })
        state.awaiting_confirmation = True
        logger.info(
            "tool_confirmation_requested",
            tools=[p.name for p in pending],
            session_id=state.session_id,
        )
        return tool_confirmation_event([p.to_payload() for p in pending], content or None)

    async def _execute(self, name: str, arguments: dict[str, Any], actor: Actor) -> ToolResult:
        try:
            return ToolResult.from_value(await self.tools.execute(name, arguments, actor))
        except Exception as e:
            logger.warning("tool_execution_failed", tool=name, error=str(e))
            return ToolResult.failure(str(e))

    async def execute(self, state: TurnState, pending: list[PendingTool]) -> AsyncIterator[SSEEvent]:
        """Run each call in order, appending one tool message per call."""
        for tool in pending:
            yield tool_start_event(tool.name, tool.description)
            result = await self._execute(tool.name, tool.arguments, state.actor)
            self.extractor.extract(tool.name, result.to_dict(), state.entity_memory)
            state.tools_used.append(tool.name)
            yield tool_end_event(tool.name, result.success, result.data or result.error)
            state.messages.append({
                "role": "tool",
                "tool_call_id": tool.call_id,
                "content": json.dumps(result.to_dict(), ensure_ascii=False, default=str),
            })

    async def apply_confirmed(
        self,
        state: TurnState,
        confirmed: list[ConfirmedTool],
        now_ms: int | None = None,
    ) -> AsyncIterator[SSEEvent]:
        """Inject one assistant message for the approved calls, then execute them."""
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        pending: list[PendingTool] = []
        for i, tool in enumerate(confirmed):
            arguments = await self.resolver.resolve_arguments(tool.arguments)
            pending.append(PendingTool(
                call_id=confirmed_call_id(i, stamp),
                name=tool.name,
                description=describe_tool(tool.name, arguments),
                arguments=arguments,
            ))
        state.messages.append({
            "role": "assistant",
            "content": None,
            "tool_calls": [p.to_tool_call() for p in pending],
        })
        logger.info("confirmed_tools_executing", tools=[p.name for p in pending], session_id=state.session_id)
        async for event in self.execute(state, pending):
            yield event
