"""Repair message lists so they satisfy the chat-completions ordering contract."""

from __future__ import annotations

import copy
from typing import Any

from fieldbot.logging import get_logger

logger = get_logger(__name__)

MAX_TOOL_CALL_ID_LENGTH = 40
_ID_HEAD = 32
_ID_TAIL = 7


def sanitize_tool_call_id(call_id: str) -> str:
    """Shorten ids over 40 chars to ``<first 32>_<last 7>``; shorter ids are returned unchanged."""
    if len(call_id) <= MAX_TOOL_CALL_ID_LENGTH:
        return call_id
    return f"{call_id[:_ID_HEAD]}_{call_id[-_ID_TAIL:]}"


def _has_tool_calls(msg: dict[str, Any] | None) -> bool:
    return bool(msg and msg.get("role") == "assistant" and msg.get("tool_calls"))


class MessageSequenceBuilder:
    """Append-only message list with a single ``remove_last`` rollback."""

    def __init__(self) -> None:
        self._messages: list[dict[str, Any]] = []

    def append(self, message: dict[str, Any]) -> None:
        self._messages.append(message)

    def remove_last(self) -> dict[str, Any]:
        return self._messages.pop()

    @property
    def last(self) -> dict[str, Any] | None:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def build(self) -> list[dict[str, Any]]:
        return list(self._messages)


def repair_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Return a copy of *messages* that the upstream model will accept.

    Rules, scanning left to right:

    1. system messages pass through;
    2. a tool message is kept only if the tracked assistant-with-tool_calls
       has a call whose raw or sanitized id matches its ``tool_call_id``;
    3. a user message after a user message replaces it;
    4. a user message after an assistant with pending tool_calls drops that assistant;
    5. an assistant with neither content nor tool_calls is dropped;
    6. tool_call ids on assistant messages are sanitized to at most 40 chars.

    Input messages are never mutated.
    """
    builder = MessageSequenceBuilder()
    tracked_ids: set[str] | None = None
    dropped = 0

    for original in messages:
        role = original.get("role")

        if role == "system":
            builder.append(original)
            continue

        if role == "tool":
            raw_id = original.get("tool_call_id") or ""
            sanitized = sanitize_tool_call_id(raw_id)
            if tracked_ids is not None and (raw_id in tracked_ids or sanitized in tracked_ids):
                builder.append({**original, "tool_call_id": sanitized})
            else:
                dropped += 1
            continue

        if role == "user":
            # Rules 3 and 4 can cascade: dropping a dangling assistant may expose an earlier user.
            while True:
                prev = builder.last
                if prev is not None and prev.get("role") == "user":
                    builder.remove_last()
                    dropped += 1
                elif _has_tool_calls(prev):
                    builder.remove_last()
                    dropped += 1
                else:
                    break
            builder.append(original)
            tracked_ids = None
            continue

        if role == "assistant":
            if not original.get("content") and not original.get("tool_calls"):
                dropped += 1
                continue
            if original.get("tool_calls"):
                calls = []
                for tc in original["tool_calls"]:
                    call = copy.deepcopy(tc)
                    call["id"] = sanitize_tool_call_id(str(call.get("id") or ""))
                    calls.append(call)
                builder.append({**original, "tool_calls": calls})
                tracked_ids = {c["id"] for c in calls}
                continue

        builder.append(original)
        tracked_ids = None

    if dropped:
        logger.debug("messages_repaired", input=len(messages), output=len(builder), dropped=dropped)
    return builder.build()
