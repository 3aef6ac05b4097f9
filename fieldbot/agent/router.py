"""Pattern-based routing of a query to a model tier, plus tone detection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, TypeAlias

from fieldbot.config.schema import ModelsConfig, ModelTierConfig
from fieldbot.logging import get_logger

logger = get_logger(__name__)

ModelTier: TypeAlias = Literal["mini", "standard", "reasoning"]
Tone: TypeAlias = Literal["playful", "neutral", "urgent"]

_I = re.IGNORECASE

_SIMPLE_PATTERNS = [
    re.compile(r"^(สวัสดี|หวัดดี|hello|hi|hey)", _I),
    re.compile(r"^(ขอบคุณ|thanks|thank you)", _I),
    re.compile(r"^(ใช่|ไม่|ok|yes|no|ได้|ตกลง|ยืนยัน)", _I),
    re.compile(r"ค้นหา.{1,20}$", _I),
    re.compile(r"หา.{1,15}$", _I),
]

_COMPLEX_PATTERNS = [
    re.compile(p, _I)
    for p in (
        r"สรุป", r"summary", r"รายงาน", r"report", r"วิเคราะห์", r"analyze",
        r"ทั้งหมด", r"all", r"รายละเอียด.*ทุก", r"งานวันนี้", r"งานสัปดาห์", r"งานเดือน",
    )
]

_REASONING_PATTERNS = [
    re.compile(p, _I)
    for p in (
        r"วางแผน", r"plan", r"เปรียบเทียบ", r"compare", r"คำนวณ", r"calculate",
        r"ทำไม", r"why", r"อธิบาย.*เหตุผล",
    )
]

_URGENT_PATTERNS = [
    re.compile(
        r"ด่วน|เร่ง|ทันที|ตอนนี้|รีบ|ฉุกเฉิน|สำคัญมาก|ปัญหา|แก้ไข"
        r"|urgent|asap|emergency|critical|now|immediately",
        _I,
    ),
]

_PLAYFUL_PATTERNS = [
    re.compile(
        r"55+|ฮ่า+|555+|หุหุ|เฮ้ย|โอ้โห|ว้าว|ยี้|เย้|จ้า|จ๊ะ|น้า|นะคะ|ครับผม|ค่ะ+|จุ๊บ|^หวัดดี|^ดีจ้า",
        _I,
    ),
    re.compile(r"[😀-😿🎉🎊🤣🥳😎😂🙈🙊🙉🤪😜😝😛👻🤖💪🔥✨⭐🌟💯🎮🎯🚀]"),
    re.compile(
        r"บอกเล่น|ล้อเล่น|หยอก|แซว|เล่น|สนุก|ขำ|ฮา|เกม|ตลก|ซน|น่ารัก|เท่|โคตร|สุดยอด|ดีมาก|เจ๋ง|ปัง|แจ่ม|เริ่ด",
        _I,
    ),
    re.compile(
        r"lol|lmao|haha|hehe|rofl|xd|yay|woo|wow|cool|awesome|nice|fun|joke|play|kidding|teasing",
        _I,
    ),
    re.compile(r"^(yo|sup|heya|wassup|ดีจ้า|หวัดดีจ้า|ไงจ้า|ว่าไงจ้า)", _I),
    re.compile(
        r"เป็นใคร|ชื่ออะไร|รู้จัก.?ไหม|ทำอะไรได้|เก่ง.?ไหม|ฉลาด.?ไหม|who are you|what.?s your name",
        _I,
    ),
]

_SUMMARY_KEYWORDS = ("สรุป", "งานวันนี้", "ทั้งหมด")
_CONTEXT_KEYWORDS = ("entities", "tickets")

_LONG_QUERY = 100


def classify_task_fast(query: str) -> ModelTier:
    """Classify a query without any model call.

    Order: reasoning patterns, complex patterns (standard), simple patterns
    (mini), then a length fallback.
    """
    normalized = query.strip().lower()

    if any(p.search(normalized) for p in _REASONING_PATTERNS):
        return "reasoning"
    if any(p.search(normalized) for p in _COMPLEX_PATTERNS):
        return "standard"
    if any(p.search(normalized) for p in _SIMPLE_PATTERNS):
        return "mini"

    # short and mid-length queries both default to the cheap tier
    if len(normalized) > _LONG_QUERY:
        return "standard"
    return "mini"


def detect_tone(query: str) -> Tone:
    """Tag the query for response style only; routing ignores it."""
    normalized = query.strip()
    if any(p.search(normalized) for p in _URGENT_PATTERNS):
        return "urgent"
    if any(p.search(normalized) for p in _PLAYFUL_PATTERNS):
        return "playful"
    return "neutral"


@dataclass(frozen=True)
class RoutingDecision:
    tier: ModelTier
    config: ModelTierConfig
    reason: str


class ModelRouter:
    """Map queries to a tier and its generation parameters."""

    def __init__(self, models: ModelsConfig | None = None) -> None:
        self.models = models or ModelsConfig()

    def get_model_config(self, tier: ModelTier) -> ModelTierConfig:
        if tier == "reasoning" and not self.models.reasoning_enabled:
            return self.models.standard
        return getattr(self.models, tier)

    def route(self, query: str, context_text: str | None = None) -> RoutingDecision:
        tier = classify_task_fast(query)
        reason = "pattern-based"

        if tier == "mini" and context_text and any(k in context_text for k in _CONTEXT_KEYWORDS):
            tier = "standard"
            reason = "context-upgrade"

        if any(k in query for k in _SUMMARY_KEYWORDS):
            tier = "standard"
            reason = "summary-task"

        return RoutingDecision(tier=tier, config=self.get_model_config(tier), reason=reason)


def route_query(
    query: str,
    context_text: str | None = None,
    models: ModelsConfig | None = None,
) -> RoutingDecision:
    """Convenience wrapper around :meth:`ModelRouter.route`."""
    return ModelRouter(models).route(query, context_text)


def log_routing(query: str, decision: RoutingDecision) -> None:
    logger.info(
        "model_routed",
        tier=decision.tier,
        model=decision.config.model,
        reason=decision.reason,
        query_preview=query[:50],
    )
