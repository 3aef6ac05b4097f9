"""State machine over one streamed chat-completions response."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator

import json_repair

from fieldbot.agent.sse_events import TextEvent, text_event
from fieldbot.logging import get_logger
from fieldbot.providers.stream_parser import iter_stream_records

logger = get_logger(__name__)

FINISH_TOOL_CALLS = "tool_calls"


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING_DELTAS = "streaming_deltas"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    TEXT_COMPLETE = "text_complete"
    DONE = "done"
    ERROR = "error"


@dataclass
class AssembledToolCall:
    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        if not self.arguments.strip():
            return {}
        try:
            parsed = json_repair.loads(self.arguments)
        except Exception:
            return {}
        return parsed if isinstance(parsed, dict) else {}


@dataclass
class StreamOutcome:
    content: str = ""
    tool_calls: list[AssembledToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def wants_tools(self) -> bool:
        return self.finish_reason == FINISH_TOOL_CALLS and bool(self.tool_calls)


class StreamProtocolHandler:
    """
    Consume one upstream stream, forwarding text deltas as they arrive.

    ``Idle -> StreamingDeltas -> (ToolCallsPending | TextComplete) -> Done``;
    any exception from the byte source moves the handler to ``Error`` and is
    re-raised. A handler serves exactly one upstream call.
    """

    def __init__(self) -> None:
        self.state = StreamState.IDLE
        self.outcome = StreamOutcome()
        self._text_parts: list[str] = []
        self._calls: dict[int, AssembledToolCall] = {}

    def _accumulate_tool_calls(self, raw_calls: Any) -> None:
        if not isinstance(raw_calls, list):
            return
        for position, tc in enumerate(raw_calls):
            if not isinstance(tc, dict):
                continue
            index = tc.get("index")
            if not isinstance(index, int):
                index = position
            call = self._calls.setdefault(index, AssembledToolCall(index=index))
            if tc.get("id"):
                call.id = tc["id"]
            fn = tc.get("function") or {}
            if fn.get("name"):
                call.name = fn["name"]
            if isinstance(fn.get("arguments"), str):
                call.arguments += fn["arguments"]

    def _record_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        self.outcome.input_tokens = int(usage.get("prompt_tokens") or 0)
        self.outcome.output_tokens = int(usage.get("completion_tokens") or 0)

    async def events(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[TextEvent]:
        if self.state is not StreamState.IDLE:
            raise RuntimeError("StreamProtocolHandler is single-use")
        self.state = StreamState.STREAMING_DELTAS
        try:
            async for record in iter_stream_records(chunks):
                self._record_usage(record.get("usage"))
                choices = record.get("choices") or []
                if not choices or not isinstance(choices[0], dict):
                    continue
                choice = choices[0]
                delta = choice.get("delta") or {}
                content = delta.get("content")
                if isinstance(content, str) and content:
                    self._text_parts.append(content)
                    yield text_event(content)
                self._accumulate_tool_calls(delta.get("tool_calls"))
                if choice.get("finish_reason"):
                    self.outcome.finish_reason = choice["finish_reason"]
        except BaseException:
            self.state = StreamState.ERROR
            raise

        self.outcome.content = "".join(self._text_parts)
        self.outcome.tool_calls = [
            call for _, call in sorted(self._calls.items()) if call.name
        ]
        if self.outcome.wants_tools:
            self.state = StreamState.TOOL_CALLS_PENDING
        else:
            self.state = StreamState.TEXT_COMPLETE
        logger.debug(
            "stream_consumed",
            state=self.state.value,
            finish_reason=self.outcome.finish_reason,
            text_chars=len(self.outcome.content),
            tool_calls=len(self.outcome.tool_calls),
        )

    def finalize_text(self, messages: list[dict[str, Any]]) -> None:
        """Append the accumulated text as the final assistant message (skipped when empty)."""
        if self.state is not StreamState.TEXT_COMPLETE:
            raise RuntimeError(f"cannot finalize text in state {self.state.value}")
        if self.outcome.content:
            messages.append({"role": "assistant", "content": self.outcome.content})
        self.state = StreamState.DONE

    def mark_done(self) -> None:
        if self.state is not StreamState.TOOL_CALLS_PENDING:
            raise RuntimeError(f"no pending tool calls in state {self.state.value}")
        self.state = StreamState.DONE
