"""Tests for context compression: turn digests, summary capping, idempotence, token stats."""

import json

from fieldbot.context.compressor import (
    MAX_RECENT_SUMMARIES,
    ConversationSummary,
    CompressedContext,
    compress_context,
    estimate_tokens,
    summarize_turn,
)
from fieldbot.memory.entities import EntityMemory

SYSTEM = {"role": "system", "content": "คุณคือผู้ช่วย"}


def _turn(i: int, *, tool: str | None = None, result: dict | None = None) -> list[dict]:
    user = {"role": "user", "content": f"ค้นหาตั๋วงานหมายเลข {i}"}
    if tool is None:
        return [user, {"role": "assistant", "content": f"คำตอบที่ {i}"}]
    call_id = f"call_{i}"
    return [
        user,
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": call_id, "type": "function", "function": {"name": tool, "arguments": "{}"}}],
        },
        {"role": "tool", "tool_call_id": call_id, "content": json.dumps(result or {"success": True, "data": []})},
        {"role": "assistant", "content": f"คำตอบที่ {i}"},
    ]


def _conversation(n: int) -> list[dict]:
    messages = [SYSTEM]
    for i in range(n):
        messages.extend(_turn(i))
    return messages


def _non_system(messages: list[dict]) -> list[dict]:
    return [m for m in messages if m["role"] != "system"]


# ---------------------------------------------------------------------------
# digests
# ---------------------------------------------------------------------------

def test_summarize_turn_formats_and_truncates() -> None:
    digest = summarize_turn("ก" * 60, "ข" * 100, ["search_sites", "create_ticket"])
    q, tools, a = digest.split(" | ")
    assert q == "Q: " + "ก" * 47 + "..."
    assert tools == "Tools: search_sites, create_ticket"
    assert a == "A: " + "ข" * 77 + "..."


def test_summarize_turn_omits_empty_parts() -> None:
    assert summarize_turn("สวัสดี", None, []) == "Q: สวัสดี"


# ---------------------------------------------------------------------------
# compression
# ---------------------------------------------------------------------------

def test_short_conversation_is_unchanged() -> None:
    messages = _conversation(3)
    result = compress_context(messages, recent_turns_to_keep=3)

    assert result.recent_messages[0] is SYSTEM
    assert _non_system(result.recent_messages) == _non_system(messages)
    assert result.summary.recent_summaries == []


def test_compression_is_idempotent_when_within_window() -> None:
    messages = _conversation(2)
    first = compress_context(messages, recent_turns_to_keep=3)
    second = compress_context(first.recent_messages, recent_turns_to_keep=3)

    assert second.recent_messages == first.recent_messages
    assert second.compression_ratio == 0


def test_old_turns_become_one_summary_message() -> None:
    messages = _conversation(5)
    result = compress_context(messages, recent_turns_to_keep=3)

    assert len(result.summary.recent_summaries) == 2
    assert result.summary.recent_summaries[0] == "Q: ค้นหาตั๋วงานหมายเลข 0 | A: คำตอบที่ 0"

    system_messages = [m for m in result.recent_messages if m["role"] == "system"]
    assert len(system_messages) == 2
    assert system_messages[1]["content"].startswith("[สรุปบทสนทนาก่อนหน้า - 2 turns]")
    assert "ค้นหาข้อมูล" in system_messages[1]["content"]

    kept_users = [m["content"] for m in result.recent_messages if m["role"] == "user"]
    assert kept_users == [f"ค้นหาตั๋วงานหมายเลข {i}" for i in (2, 3, 4)]


def test_long_history_reports_savings() -> None:
    messages = [SYSTEM]
    for i in range(6):
        messages.append({"role": "user", "content": f"ดูตั๋วงาน {i}"})
        messages.append({"role": "assistant", "content": "รายละเอียดงาน " * 100})

    result = compress_context(messages, recent_turns_to_keep=3)

    assert result.compressed_tokens < result.total_original_tokens
    assert 0 < result.compression_ratio < 100
    expected = round((1 - result.compressed_tokens / result.total_original_tokens) * 100)
    assert result.compression_ratio == expected


def test_recent_summaries_never_exceed_cap() -> None:
    existing = [f"Q: old {i}" for i in range(8)]
    result = compress_context(_conversation(10), recent_turns_to_keep=3, existing_summaries=existing)

    assert len(result.summary.recent_summaries) == MAX_RECENT_SUMMARIES
    # oldest evicted first
    assert result.summary.recent_summaries[-1].startswith("Q: ค้นหาตั๋วงานหมายเลข 6")
    assert "Q: old 0" not in result.summary.recent_summaries


def test_previous_summary_is_carried_forward_without_duplicates() -> None:
    messages = _conversation(4)
    first = compress_context(messages, recent_turns_to_keep=3)
    assert len(first.summary.recent_summaries) == 1

    second = compress_context(messages, recent_turns_to_keep=3, previous_summary=first.summary)
    assert second.summary.recent_summaries == first.summary.recent_summaries
    assert second.summary.actions == first.summary.actions


def test_summary_message_respects_max_length() -> None:
    result = compress_context(_conversation(10), recent_turns_to_keep=1, max_summary_length=60)
    summary_msg = result.recent_messages[1]["content"]
    history = summary_msg.split("ประวัติบทสนทนา:\n", 1)[1]
    assert len(history) <= 60
    assert history.endswith("...")


def test_entities_are_extracted_from_tool_results_into_a_copy() -> None:
    site = {"id": "s-1", "name": "Central", "company": {"name_th": "Central Co"}}
    messages = [SYSTEM, *_turn(0, tool="search_sites", result={"success": True, "data": [site]}), *_turn(1)]
    original = EntityMemory()

    result = compress_context(messages, original, recent_turns_to_keep=3)

    assert "s-1" in result.entities.sites
    assert original.sites == {}


def test_tool_kind_inferred_when_call_is_missing() -> None:
    orphan = {
        "role": "tool",
        "tool_call_id": "gone",
        "content": json.dumps({"success": True, "data": [{"tax_id": "0105", "name_th": "บริษัท"}]}),
    }
    result = compress_context([SYSTEM, {"role": "user", "content": "หา"}, orphan], recent_turns_to_keep=3)
    assert "0105" in result.entities.companies


def test_pending_tool_calls_and_confirmations_are_tagged() -> None:
    pending = [
        {"role": "user", "content": "สร้างตั๋วงานให้หน่อย"},
        {
            "role": "assistant",
            "content": "ยืนยันไหม",
            "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "create_ticket", "arguments": "{}"}}],
        },
    ]
    confirmed = [
        {"role": "user", "content": "ยืนยัน"},
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "c2", "type": "function", "function": {"name": "create_ticket", "arguments": "{}"}}],
        },
        {"role": "tool", "tool_call_id": "c2", "content": json.dumps({"success": True, "data": {"ticket_id": "t9"}})},
        {"role": "assistant", "content": "สร้างแล้ว"},
    ]
    messages = [SYSTEM, *pending, *confirmed, *_conversation(3)[1:]]

    result = compress_context(messages, recent_turns_to_keep=3)

    assert result.summary.pending_tasks == ["create_ticket"]
    assert result.summary.key_decisions == ["ยืนยัน: create_ticket"]
    assert "สร้างข้อมูล" in result.summary.actions
    assert "ตั๋วงาน" in result.summary.topics
    assert "t9" in result.entities.tickets


def test_leading_orphans_kept_only_without_old_turns() -> None:
    orphan = {"role": "assistant", "content": "สวัสดีค่ะ"}
    short = compress_context([SYSTEM, orphan, *_conversation(1)[1:]], recent_turns_to_keep=3)
    assert short.recent_messages[1] is orphan

    long = compress_context([SYSTEM, orphan, *_conversation(5)[1:]], recent_turns_to_keep=3)
    assert orphan not in long.recent_messages


# ---------------------------------------------------------------------------
# token accounting and serialization
# ---------------------------------------------------------------------------

def test_estimate_tokens_uses_chars_over_three() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 2
    assert estimate_tokens([
        {"type": "text", "text": "abc"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
    ]) == 1


def test_compression_ratio_zero_without_original_tokens() -> None:
    ctx = CompressedContext(
        summary=ConversationSummary(),
        entities=EntityMemory(),
        recent_messages=[],
        total_original_tokens=0,
        compressed_tokens=0,
    )
    assert ctx.compression_ratio == 0


def test_summary_dict_uses_camel_case_and_caps_on_load() -> None:
    summary = ConversationSummary(pending_tasks=["create_ticket"], key_decisions=["ยืนยัน"])
    data = summary.to_dict()
    assert data["pendingTasks"] == ["create_ticket"]
    assert data["keyDecisions"] == ["ยืนยัน"]

    loaded = ConversationSummary.from_dict({"recentSummaries": [f"s{i}" for i in range(15)]})
    assert loaded.recent_summaries == [f"s{i}" for i in range(5, 15)]
