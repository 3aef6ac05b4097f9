"""Keep recent turns verbatim, digest older ones, and feed entity extraction.

Turns are segmented at each ``user`` message. The most recent
``recent_turns_to_keep`` turns pass through untouched; older turns are reduced
to one-line digests which, together with digests persisted from earlier
requests, are capped at ``MAX_RECENT_SUMMARIES`` and injected as a single
synthetic system message right after the real system messages.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any

from fieldbot.logging import get_logger
from fieldbot.memory.entities import EntityMemory
from fieldbot.memory.extraction import EntityExtractor

logger = get_logger(__name__)

MAX_RECENT_SUMMARIES = 10
_INTENT_MAX = 50
_REPLY_MAX = 80

_ACTION_TAGS: list[tuple[tuple[str, ...], str]] = [
    (("สร้าง", "create", "เปิด"), "สร้างข้อมูล"),
    (("ค้นหา", "หา", "search", "ดู"), "ค้นหาข้อมูล"),
    (("แก้ไข", "update", "เปลี่ยน"), "แก้ไขข้อมูล"),
]
_TOPIC_TAGS: list[tuple[tuple[str, ...], str]] = [
    (("ตั๋ว", "ticket"), "ตั๋วงาน"),
    (("ลูกค้า", "site", "สถานที่"), "ลูกค้า/สถานที่"),
    (("ช่าง", "technician", "พนักงาน"), "พนักงาน"),
]
_CONFIRM_RE = re.compile(r"^(ยืนยัน|ตกลง|confirm|ok|yes|ใช่)", re.IGNORECASE)


def estimate_tokens(content: Any) -> int:
    """Approximate token count as ceil(chars / 3); image parts count as zero."""
    if not content:
        return 0
    if isinstance(content, list):
        text = "".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    else:
        text = str(content)
    return math.ceil(len(text) / 3)


def content_text(content: Any) -> str:
    """Plain text of a message content (string or multimodal parts)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def _shorten(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _add_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)


@dataclass
class ConversationSummary:
    """Deduplicated tag sets plus a bounded list of turn digests."""

    topics: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    pending_tasks: list[str] = field(default_factory=list)
    key_decisions: list[str] = field(default_factory=list)
    recent_summaries: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "topics": list(self.topics),
            "actions": list(self.actions),
            "pendingTasks": list(self.pending_tasks),
            "keyDecisions": list(self.key_decisions),
            "recentSummaries": list(self.recent_summaries),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ConversationSummary:
        if not isinstance(data, dict):
            return cls()
        return cls(
            topics=list(data.get("topics") or []),
            actions=list(data.get("actions") or []),
            pending_tasks=list(data.get("pendingTasks") or []),
            key_decisions=list(data.get("keyDecisions") or []),
            recent_summaries=list(data.get("recentSummaries") or [])[-MAX_RECENT_SUMMARIES:],
        )


@dataclass
class CompressedContext:
    summary: ConversationSummary
    entities: EntityMemory
    recent_messages: list[dict[str, Any]]
    total_original_tokens: int
    compressed_tokens: int

    @property
    def compression_ratio(self) -> int:
        """Saved share of tokens in percent (0 when there was nothing to compress)."""
        if self.total_original_tokens <= 0:
            return 0
        return round((1 - self.compressed_tokens / self.total_original_tokens) * 100)


@dataclass
class _Turn:
    user: dict[str, Any]
    followers: list[dict[str, Any]] = field(default_factory=list)

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [self.user, *self.followers]

    @property
    def tool_names(self) -> list[str]:
        names: list[str] = []
        for msg in self.followers:
            if msg.get("role") != "assistant":
                continue
            for tc in msg.get("tool_calls") or []:
                name = (tc.get("function") or {}).get("name")
                if name:
                    names.append(name)
        return names

    @property
    def reply(self) -> str | None:
        for msg in reversed(self.followers):
            if msg.get("role") == "assistant":
                text = content_text(msg.get("content"))
                if text:
                    return text
        return None

    @property
    def unanswered_tool_calls(self) -> list[str]:
        """Tool names of a trailing assistant message that never got results (awaiting confirmation)."""
        if not self.followers:
            return []
        last = self.followers[-1]
        if last.get("role") != "assistant" or not last.get("tool_calls"):
            return []
        return [(tc.get("function") or {}).get("name", "") for tc in last["tool_calls"]]


def summarize_turn(user_text: str, reply: str | None, tool_names: list[str]) -> str:
    """Compact digest: ``Q: <intent> | Tools: <names> | A: <reply>``."""
    parts: list[str] = []
    if user_text:
        parts.append(f"Q: {_shorten(user_text, _INTENT_MAX)}")
    if tool_names:
        parts.append(f"Tools: {', '.join(tool_names)}")
    if reply:
        parts.append(f"A: {_shorten(reply, _REPLY_MAX)}")
    return " | ".join(parts)


def _segment_turns(
    messages: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], list[_Turn]]:
    """Split into (messages before the first user message, turns)."""
    preamble: list[dict[str, Any]] = []
    turns: list[_Turn] = []
    current: _Turn | None = None
    for msg in messages:
        if msg.get("role") == "user":
            current = _Turn(user=msg)
            turns.append(current)
        elif current is not None:
            current.followers.append(msg)
        else:
            preamble.append(msg)
    return preamble, turns


def _extract_entities(
    messages: list[dict[str, Any]],
    memory: EntityMemory,
    extractor: EntityExtractor,
) -> None:
    call_names: dict[str, str] = {}
    for msg in messages:
        role = msg.get("role")
        if role == "assistant":
            for tc in msg.get("tool_calls") or []:
                name = (tc.get("function") or {}).get("name")
                if tc.get("id") and name:
                    call_names[tc["id"]] = name
        elif role == "tool":
            try:
                result = json.loads(msg.get("content") or "{}")
            except (json.JSONDecodeError, TypeError):
                continue
            name = call_names.get(msg.get("tool_call_id") or "") or extractor.infer_tool_name(result)
            if name:
                extractor.extract(name, result, memory)
        elif role == "user":
            text = content_text(msg.get("content"))
            if text:
                extractor.extract_from_user_text(text, memory)


def _tag(summary: ConversationSummary, turn: _Turn) -> None:
    text = content_text(turn.user.get("content")).lower()
    for keywords, tag in _ACTION_TAGS:
        if any(k in text for k in keywords):
            _add_unique(summary.actions, tag)
    for keywords, tag in _TOPIC_TAGS:
        if any(k in text for k in keywords):
            _add_unique(summary.topics, tag)
    for name in turn.unanswered_tool_calls:
        if name:
            _add_unique(summary.pending_tasks, name)
    if _CONFIRM_RE.match(text.strip()):
        names = [n for n in turn.tool_names if n]
        if names:
            _add_unique(summary.key_decisions, f"ยืนยัน: {', '.join(names)}")


def _summary_message(summary: ConversationSummary, max_length: int) -> dict[str, Any]:
    digests = _shorten("\n".join(summary.recent_summaries), max_length)
    lines: list[str] = []
    if summary.topics:
        lines.append(f"หัวข้อที่พูดถึง: {', '.join(summary.topics)}")
    if summary.actions:
        lines.append(f"การดำเนินการ: {', '.join(summary.actions)}")
    if summary.pending_tasks:
        lines.append(f"งานที่รอยืนยัน: {', '.join(summary.pending_tasks)}")
    if summary.key_decisions:
        lines.append(f"การตัดสินใจ: {', '.join(summary.key_decisions)}")
    lines.append(f"\nประวัติบทสนทนา:\n{digests}")
    header = f"[สรุปบทสนทนาก่อนหน้า - {len(summary.recent_summaries)} turns]"
    return {"role": "system", "content": header + "\n" + "\n".join(lines)}


def compress_context(
    messages: list[dict[str, Any]],
    entity_memory: EntityMemory | None = None,
    *,
    recent_turns_to_keep: int = 3,
    max_summary_length: int = 800,
    existing_summaries: list[str] | None = None,
    previous_summary: ConversationSummary | None = None,
    extractor: EntityExtractor | None = None,
) -> CompressedContext:
    """
    Compress *messages* into system messages + optional summary + recent turns.

    The passed ``entity_memory`` is cloned; extraction results land on the
    returned ``CompressedContext.entities`` only.

    Args:
        messages: Full message list (system messages included).
        entity_memory: Memory carried over from earlier turns.
        recent_turns_to_keep: Number of trailing turns kept verbatim.
        max_summary_length: Character cap for the digest block.
        existing_summaries: Digests persisted from earlier requests.
        previous_summary: Persisted summary whose tag sets are carried forward.
        extractor: Entity extraction rules; a default instance is used when omitted.
    """
    memory = entity_memory.clone() if entity_memory is not None else EntityMemory()
    extractor = extractor or EntityExtractor()

    summary = ConversationSummary()
    if previous_summary is not None:
        summary.topics = list(previous_summary.topics)
        summary.actions = list(previous_summary.actions)
        summary.pending_tasks = list(previous_summary.pending_tasks)
        summary.key_decisions = list(previous_summary.key_decisions)
        if existing_summaries is None:
            existing_summaries = previous_summary.recent_summaries

    total_original = sum(estimate_tokens(m.get("content")) for m in messages)

    system_messages = [m for m in messages if m.get("role") == "system"]
    conversation = [m for m in messages if m.get("role") != "system"]

    _extract_entities(conversation, memory, extractor)

    preamble, turns = _segment_turns(conversation)
    if recent_turns_to_keep > 0:
        old_turns, recent_turns = turns[:-recent_turns_to_keep], turns[-recent_turns_to_keep:]
    else:
        old_turns, recent_turns = turns, []

    digests = list(existing_summaries or [])
    for turn in old_turns:
        digest = summarize_turn(content_text(turn.user.get("content")), turn.reply, turn.tool_names)
        if not digest:
            continue
        _tag(summary, turn)
        # windows overlap between requests; a turn already digested is not repeated
        if digest not in digests:
            digests.append(digest)
    summary.recent_summaries = digests[-MAX_RECENT_SUMMARIES:]

    output = list(system_messages)
    if summary.recent_summaries:
        output.append(_summary_message(summary, max_summary_length))
    if not old_turns:
        output.extend(preamble)
    for turn in recent_turns:
        output.extend(turn.messages)

    compressed = sum(estimate_tokens(m.get("content")) for m in output)
    memory.touch()

    if old_turns:
        logger.debug(
            "context_compressed",
            turns=len(turns),
            summarized=len(old_turns),
            summaries=len(summary.recent_summaries),
            original_tokens=total_original,
            compressed_tokens=compressed,
        )

    return CompressedContext(
        summary=summary,
        entities=memory,
        recent_messages=output,
        total_original_tokens=total_original,
        compressed_tokens=compressed,
    )
