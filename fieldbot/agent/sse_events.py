"""Typed client-facing stream events and their SSE wire framing."""

from __future__ import annotations

import json
from typing import Any, Literal, NotRequired, TypeAlias, TypedDict

SSE_EVENT_SESSION = "session"
SSE_EVENT_MODEL = "model"
SSE_EVENT_FILE_PROCESSING = "file_processing"
SSE_EVENT_TEXT = "text"
SSE_EVENT_TOOL_START = "tool_start"
SSE_EVENT_TOOL_END = "tool_end"
SSE_EVENT_TOOL_CONFIRMATION = "tool_confirmation"
SSE_EVENT_DONE = "done"
SSE_EVENT_ERROR = "error"

SSEEventType: TypeAlias = Literal[
    "session",
    "model",
    "file_processing",
    "text",
    "tool_start",
    "tool_end",
    "tool_confirmation",
    "done",
    "error",
]

SSE_EVENT_TYPES: frozenset[str] = frozenset({
    SSE_EVENT_SESSION,
    SSE_EVENT_MODEL,
    SSE_EVENT_FILE_PROCESSING,
    SSE_EVENT_TEXT,
    SSE_EVENT_TOOL_START,
    SSE_EVENT_TOOL_END,
    SSE_EVENT_TOOL_CONFIRMATION,
    SSE_EVENT_DONE,
    SSE_EVENT_ERROR,
})

SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class SessionEvent(TypedDict):
    type: Literal["session"]
    sessionId: str


class ModelEvent(TypedDict):
    type: Literal["model"]
    tier: str
    model: str


class FileProcessingEvent(TypedDict):
    type: Literal["file_processing"]
    fileName: str
    status: Literal["start", "done", "error"]
    message: NotRequired[str]


class TextEvent(TypedDict):
    type: Literal["text"]
    content: str


class ToolStartEvent(TypedDict):
    type: Literal["tool_start"]
    tool: str
    description: str


class ToolEndEvent(TypedDict):
    type: Literal["tool_end"]
    tool: str
    success: bool
    result: NotRequired[Any]


class PendingToolPayload(TypedDict):
    name: str
    description: str
    arguments: dict[str, Any]


class ToolConfirmationEvent(TypedDict):
    type: Literal["tool_confirmation"]
    tools: list[PendingToolPayload]
    assistantMessage: NotRequired[str]


class UsagePayload(TypedDict):
    inputTokens: int
    outputTokens: int


class ContextStatsPayload(TypedDict):
    compressionRatio: int
    entitiesTracked: int
    filesProcessed: int


class DoneEvent(TypedDict):
    type: Literal["done"]
    sessionId: str | None
    entityMemory: str
    usage: UsagePayload
    contextStats: ContextStatsPayload
    awaitingConfirmation: NotRequired[bool]


class ErrorEvent(TypedDict):
    type: Literal["error"]
    message: str


SSEEvent: TypeAlias = (
    SessionEvent
    | ModelEvent
    | FileProcessingEvent
    | TextEvent
    | ToolStartEvent
    | ToolEndEvent
    | ToolConfirmationEvent
    | DoneEvent
    | ErrorEvent
)


def session_event(session_id: str) -> SessionEvent:
    return {"type": "session", "sessionId": session_id}


def model_event(tier: str, model: str) -> ModelEvent:
    return {"type": "model", "tier": tier, "model": model}


def file_processing_event(
    file_name: str,
    status: Literal["start", "done", "error"],
    message: str | None = None,
) -> FileProcessingEvent:
    event: FileProcessingEvent = {"type": "file_processing", "fileName": file_name, "status": status}
    if message:
        event["message"] = message
    return event


def text_event(content: str) -> TextEvent:
    return {"type": "text", "content": content}


def tool_start_event(tool: str, description: str) -> ToolStartEvent:
    return {"type": "tool_start", "tool": tool, "description": description}


def tool_end_event(tool: str, success: bool, result: Any = None) -> ToolEndEvent:
    event: ToolEndEvent = {"type": "tool_end", "tool": tool, "success": success}
    if result is not None:
        event["result"] = result
    return event


def tool_confirmation_event(
    tools: list[PendingToolPayload],
    assistant_message: str | None = None,
) -> ToolConfirmationEvent:
    event: ToolConfirmationEvent = {"type": "tool_confirmation", "tools": tools}
    if assistant_message:
        event["assistantMessage"] = assistant_message
    return event


def done_event(
    *,
    session_id: str | None,
    entity_memory: str,
    input_tokens: int,
    output_tokens: int,
    compression_ratio: int,
    entities_tracked: int,
    files_processed: int,
    awaiting_confirmation: bool = False,
) -> DoneEvent:
    event: DoneEvent = {
        "type": "done",
        "sessionId": session_id,
        "entityMemory": entity_memory,
        "usage": {"inputTokens": input_tokens, "outputTokens": output_tokens},
        "contextStats": {
            "compressionRatio": compression_ratio,
            "entitiesTracked": entities_tracked,
            "filesProcessed": files_processed,
        },
    }
    if awaiting_confirmation:
        event["awaitingConfirmation"] = True
    return event


def error_event(message: str) -> ErrorEvent:
    return {"type": "error", "message": message}


def format_sse(event: SSEEvent) -> str:
    """Frame one event as ``data: <json>\\n\\n``."""
    event_type = event.get("type")
    if event_type not in SSE_EVENT_TYPES:
        raise ValueError(f"Unknown SSE event type: {event_type!r}")
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"
