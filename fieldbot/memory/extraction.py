"""Project tool results and user text into entity memory."""

from __future__ import annotations

import re
from typing import Any, Callable

from fieldbot.memory.entities import EntityMemory, LocationRecord

_PREFERENCE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"ใช้\s*(\S+)\s*เป็นค่าเริ่มต้น", re.IGNORECASE), "default"),
    (re.compile(r"เลือก\s*(\S+)", re.IGNORECASE), "selection"),
    (re.compile(r"ต้องการ\s*(\S+)", re.IGNORECASE), "want"),
]


def _as_records(data: Any) -> list[dict[str, Any]]:
    items = data if isinstance(data, list) else [data]
    return [item for item in items if isinstance(item, dict)]


def _first_str(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


class EntityExtractor:
    """
    Per-tool projection rules into an :class:`EntityMemory`.

    Every rule writes by entity key, so applying the same result twice leaves
    the maps unchanged. Payloads that do not match a rule are ignored.
    """

    def __init__(self) -> None:
        self._rules: dict[str, Callable[[Any, EntityMemory], None]] = {
            "search_sites": self._sites,
            "search_companies": self._companies,
            "search_employees": self._employees,
            "create_ticket": self._created_ticket,
            "search_tickets": self._tickets,
            "search_locations": self._locations,
            "get_ticket_summary_by_location": self._province_summary,
        }

    @property
    def tool_names(self) -> list[str]:
        return list(self._rules)

    def extract(self, tool_name: str, result: Any, memory: EntityMemory) -> bool:
        """Apply the rule for *tool_name* to a ``{success, data}`` result.

        Returns True when a rule ran.
        """
        if not isinstance(result, dict) or not result.get("success") or not result.get("data"):
            return False
        rule = self._rules.get(tool_name)
        if rule is None:
            return False
        try:
            rule(result["data"], memory)
        except (KeyError, TypeError, ValueError, AttributeError):
            return False
        memory.touch()
        return True

    @staticmethod
    def infer_tool_name(result: Any) -> str | None:
        """Guess the producing tool from the shape of a result payload."""
        if not isinstance(result, dict):
            return None
        data = result.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict):
            first = data[0]
            if "tax_id" in first and "name_th" in first:
                return "search_companies"
            if "id" in first and "name" in first and "company" in first:
                return "search_sites"
            if "id" in first and "name" in first and "role_code" in first:
                return "search_employees"
            if "id" in first and "work_type" in first:
                return "search_tickets"
        elif isinstance(data, dict) and "ticket_id" in data:
            return "create_ticket"
        return None

    @staticmethod
    def extract_from_user_text(text: str, memory: EntityMemory) -> None:
        for pattern, key in _PREFERENCE_PATTERNS:
            m = pattern.search(text)
            if m:
                memory.preferences[key] = m.group(1)

    @staticmethod
    def _sites(data: Any, memory: EntityMemory) -> None:
        for site in _as_records(data):
            if not (site.get("id") and site.get("name")):
                continue
            company = site.get("company") if isinstance(site.get("company"), dict) else {}
            record: dict[str, Any] = {"id": str(site["id"]), "name": site["name"]}
            company_name = _first_str(company.get("name_th"), company.get("name_en"), site.get("company_name"))
            if company_name:
                record["company"] = company_name
            for key in ("province", "district"):
                if site.get(key):
                    record[key] = site[key]
            memory.sites[record["id"]] = record  # type: ignore[assignment]

    @staticmethod
    def _companies(data: Any, memory: EntityMemory) -> None:
        for company in _as_records(data):
            if not company.get("tax_id"):
                continue
            tax_id = str(company["tax_id"])
            memory.companies[tax_id] = {
                "taxId": tax_id,
                "name": _first_str(company.get("name_th"), company.get("name_en")) or "",
            }

    @staticmethod
    def _employees(data: Any, memory: EntityMemory) -> None:
        for emp in _as_records(data):
            if not (emp.get("id") and emp.get("name")):
                continue
            record: dict[str, Any] = {"id": str(emp["id"]), "name": emp["name"]}
            if emp.get("role_code"):
                record["role"] = emp["role_code"]
            memory.employees[record["id"]] = record  # type: ignore[assignment]

    @staticmethod
    def _created_ticket(data: Any, memory: EntityMemory) -> None:
        if not isinstance(data, dict) or not data.get("ticket_id"):
            return
        ticket_id = str(data["ticket_id"])
        record: dict[str, Any] = {"id": ticket_id, "workType": "created"}
        if data.get("site_name"):
            record["site"] = data["site_name"]
        memory.tickets[ticket_id] = record  # type: ignore[assignment]

    @staticmethod
    def _tickets(data: Any, memory: EntityMemory) -> None:
        for ticket in _as_records(data):
            if not ticket.get("id"):
                continue
            work_type = ticket.get("work_type") if isinstance(ticket.get("work_type"), dict) else {}
            site = ticket.get("site") if isinstance(ticket.get("site"), dict) else {}
            record: dict[str, Any] = {
                "id": str(ticket["id"]),
                "workType": _first_str(ticket.get("work_type_code"), work_type.get("code")) or "unknown",
            }
            site_name = _first_str(ticket.get("site_name"), site.get("name"))
            if site_name:
                record["site"] = site_name
            if ticket.get("province"):
                record["province"] = ticket["province"]
            memory.tickets[record["id"]] = record  # type: ignore[assignment]

    @staticmethod
    def _locations(data: Any, memory: EntityMemory) -> None:
        for loc in _as_records(data):
            if not (loc.get("code") and loc.get("name_th")):
                continue
            code = int(loc["code"])
            record: dict[str, Any] = {"code": code, "name": loc["name_th"], "type": loc.get("type") or "province"}
            parent = _first_str(loc.get("province_name"), loc.get("district_name"))
            if parent:
                record["parentName"] = parent
            memory.locations[code] = record  # type: ignore[assignment]

    @staticmethod
    def _province_summary(data: Any, memory: EntityMemory) -> None:
        if not isinstance(data, dict):
            return
        for prov in data.get("by_province") or []:
            if not isinstance(prov, dict):
                continue
            code = prov.get("province_code")
            if code and code != 0 and prov.get("province_name"):
                record: LocationRecord = {"code": int(code), "name": prov["province_name"], "type": "province"}
                memory.locations[int(code)] = record
