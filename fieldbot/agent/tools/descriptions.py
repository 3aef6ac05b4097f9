"""Human-readable (Thai) descriptions of tool invocations for the client UI."""

from __future__ import annotations

from typing import Any, Callable

_LOCATION_LEVEL = {"district": "อำเภอ", "subdistrict": "ตำบล"}


def _dated(with_date: str, without: str) -> Callable[[dict[str, Any]], str]:
    return lambda a: f"{with_date} {a['date']}" if a.get("date") else without


def _queried(with_query: str, without: str) -> Callable[[dict[str, Any]], str]:
    return lambda a: f'{with_query}: "{a["query"]}"' if a.get("query") else without


_DESCRIBERS: dict[str, Callable[[dict[str, Any]], str]] = {
    "search_sites": lambda a: f'ค้นหาสถานที่: "{a.get("query", "")}"',
    "search_companies": lambda a: f'ค้นหาบริษัท: "{a.get("query", "")}"',
    "search_employees": _queried("ค้นหาพนักงาน", "ดึงรายชื่อพนักงาน"),
    "get_reference_data": lambda a: f"ดึงข้อมูลอ้างอิง: {a.get('type', '')}",
    "create_ticket": lambda a: f"สร้างตั๋วงาน {a.get('work_type_code', '')}".rstrip(),
    "get_ticket_summary": _dated("ดึงสรุปตั๋วงานวันที่", "ดึงสรุปตั๋วงาน"),
    "search_tickets": _queried("ค้นหาตั๋วงาน", "ดึงรายการตั๋วงาน"),
    "get_available_employees": _dated("ดึงช่างที่ว่างวันที่", "ดึงช่างที่ว่าง"),
    "search_locations": lambda a: (
        f'ค้นหาสถานที่: "{a["query"]}"' if a.get("query")
        else f"ดึงรายการ{_LOCATION_LEVEL.get(a.get('type', ''), 'จังหวัด')}"
    ),
    "get_ticket_summary_by_location": _dated("ดึงสรุปตั๋วงานตามจังหวัดวันที่", "ดึงสรุปตั๋วงานตามจังหวัด"),
    "suggest_routes": _dated("แนะนำการจัดสายงานวันที่", "แนะนำการจัดสายงาน"),
    "web_search": lambda a: f'ค้นหาเว็บ: "{a.get("query", "")}"',
    "get_ticket_details": lambda a: f"ดูรายละเอียดตั๋วงาน: {a.get('ticket_id', '')}",
    "review_ticket_safety": lambda a: f"ตรวจสอบความพร้อมออกงาน: {a.get('ticket_id', '')}",
    "recommend_apc_ups": lambda a: (
        f"แนะนำ UPS APC {a['power_load_va']}VA" if a.get("power_load_va") else "แนะนำ UPS APC ตามความต้องการ"
    ),
}


def describe_tool(name: str, arguments: dict[str, Any]) -> str:
    """Describe a tool call; unknown tools fall back to their name."""
    describer = _DESCRIBERS.get(name)
    if describer is None:
        return name
    return describer(arguments or {})
