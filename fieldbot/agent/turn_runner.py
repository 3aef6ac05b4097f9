"""Streaming turn loop: model call, tool round, repeat."""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol

from fieldbot.agent.confirmation import ToolConfirmationWorkflow
from fieldbot.agent.router import RoutingDecision
from fieldbot.agent.sequence import repair_messages
from fieldbot.agent.sse_events import SSEEvent, error_event
from fieldbot.agent.stream_handler import StreamProtocolHandler
from fieldbot.agent.tools.base import ToolExecutor
from fieldbot.agent.turn_state import TurnState
from fieldbot.errors import UpstreamError
from fieldbot.logging import get_logger
from fieldbot.providers.base import sanitize_messages

logger = get_logger(__name__)


class StreamingModelAPI(Protocol):
    def stream_chat(self, payload: dict[str, Any]) -> AsyncIterator[bytes]: ...


class StreamingTurnRunner:
    """Run up to ``max_iterations`` streamed model calls for one turn."""

    def __init__(
        self,
        *,
        client: StreamingModelAPI,
        tools: ToolExecutor,
        workflow: ToolConfirmationWorkflow,
        max_iterations: int = 5,
    ) -> None:
        self.client = client
        self.tools = tools
        self.workflow = workflow
        self.max_iterations = max_iterations

    def build_payload(self, messages: list[dict[str, Any]], decision: RoutingDecision) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": decision.config.model,
            "messages": sanitize_messages(messages),
            "max_tokens": decision.config.max_tokens,
            "temperature": decision.config.temperature,
        }
        definitions = self.tools.get_definitions()
        if definitions:
            payload["tools"] = definitions
            payload["tool_choice"] = "auto"
        return payload

    async def run(
        self,
        state: TurnState,
        decision: RoutingDecision,
        *,
        require_confirmation: bool,
    ) -> AsyncIterator[SSEEvent]:
        while state.iterations < self.max_iterations:
            state.iterations += 1
            state.replace_messages(repair_messages(state.messages))

            handler = StreamProtocolHandler()
            try:
                async for event in handler.events(self.client.stream_chat(self.build_payload(state.messages, decision))):
                    yield event
            except UpstreamError as e:
                state.upstream_error = str(e)
                logger.error(
                    "turn_aborted_upstream",
                    session_id=state.session_id,
                    iteration=state.iterations,
                    status=e.status_code,
                    error=str(e),
                )
                yield error_event(str(e))
                return

            outcome = handler.outcome
            state.add_usage(outcome.input_tokens, outcome.output_tokens)

            if not outcome.wants_tools:
                handler.finalize_text(state.messages)
                return

            pending = await self.workflow.prepare(outcome.tool_calls)
            if require_confirmation:
                yield self.workflow.suspend(state, outcome.content, pending)
                handler.mark_done()
                return

            state.messages.append({
                "role": "assistant",
                "content": outcome.content or None,
                "tool_calls": [p.to_tool_call() for p in pending],
            })
            async for event in self.workflow.execute(state, pending):
                yield event
            handler.mark_done()

        logger.warning(
            "tool_iterations_exhausted",
            session_id=state.session_id,
            max_iterations=self.max_iterations,
            tools_used=state.tools_used,
        )
