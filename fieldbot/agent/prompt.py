"""System prompt assembly."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fieldbot.agent.request import Actor
from fieldbot.agent.router import Tone
from fieldbot.memory.entities import EntityMemory

BANGKOK = timezone(timedelta(hours=7), "Asia/Bangkok")

_THAI_WEEKDAYS = ("จันทร์", "อังคาร", "พุธ", "พฤหัสบดี", "ศุกร์", "เสาร์", "อาทิตย์")

_TONE_INSTRUCTIONS: dict[Tone, str] = {
    "playful": (
        "🎭 โหมดเล่น: ผู้ใช้ชวนคุยเล่น ตอบแบบเป็นกันเอง แซวได้เล็กน้อย ใช้อีโมจิได้\n"
        "- ถ้ามีงานจริงจังให้ช่วยเต็มที่ ไม่เล่นตลอด"
    ),
    "urgent": (
        "⚡ โหมดเร่งด่วน: ผู้ใช้ต้องการความช่วยเหลือทันที ตอบตรงประเด็น รวดเร็ว\n"
        "- ให้ข้อมูลสำคัญก่อน\n"
        "- ถ้าต้องใช้ tool ให้ทำทันที\n"
        "- สรุปให้กระชับที่สุด"
    ),
    "neutral": "",
}


def bangkok_now(now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)).astimezone(BANGKOK)


class SystemPromptBuilder:
    """Builds the Thai system prompt for one turn."""

    def __init__(self, assistant_name: str = "ผู้ช่วย AI ระบบตั๋วงานบริการ") -> None:
        self.assistant_name = assistant_name

    def build(
        self,
        actor: Actor,
        tone: Tone,
        entity_memory: EntityMemory | None = None,
        now: datetime | None = None,
    ) -> str:
        local = bangkok_now(now)
        date = local.strftime("%Y-%m-%d")
        time = local.strftime("%H:%M")
        weekday = _THAI_WEEKDAYS[local.weekday()]
        user = actor.name or actor.employee_id
        role = actor.role or "พนักงาน"

        sections = [
            f"คุณคือ{self.assistant_name} ช่วยจัดการตั๋วงานบริการภาคสนาม",
            f"วันที่: {date} (วัน{weekday}) เวลา: {time} น. | ผู้ใช้: {user} | ตำแหน่ง: {role}",
            "ความสามารถ: ค้นหา/สร้างตั๋วงาน, ค้นหาลูกค้า/สถานที่/ช่าง, สรุปงานตามพื้นที่, แนะนำการจัดสายงาน",
            (
                "กฎ:\n"
                "- ตอบภาษาไทย กระชับ\n"
                "- ค้นหาข้อมูลที่มีก่อนสร้างใหม่\n"
                "- ใช้ Entity Memory ด้านล่างเพื่ออ้างอิงข้อมูลที่เคยค้นหา (ไม่ต้องค้นหาซ้ำ)\n"
                "- ประเภทงาน: pm/rma/sales/survey/start_up/pickup/account/ags_battery"
            ),
        ]
        tone_text = _TONE_INSTRUCTIONS.get(tone, "")
        if tone_text:
            sections.append(tone_text)
        sections.append(
            "⚠️ การสร้าง/แก้ไขข้อมูล:\n"
            "- ก่อนสร้างหรือแก้ไขข้อมูล ต้องสรุปรายละเอียดให้ผู้ใช้ยืนยันก่อนเสมอ\n"
            "- ห้ามสร้างหรือแก้ไขข้อมูลโดยไม่ได้รับการยืนยันจากผู้ใช้"
        )

        prompt = "\n\n".join(sections)
        if entity_memory is not None:
            prompt += entity_memory.build_entity_context()
        return prompt
