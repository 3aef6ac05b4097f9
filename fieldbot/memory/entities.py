"""Entity memory maps and their serialized/prompt representations."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, NotRequired, TypedDict

from fieldbot.logging import get_logger

logger = get_logger(__name__)

LocationType = Literal["province", "district", "subdistrict"]


class SiteRecord(TypedDict):
    id: str
    name: str
    company: NotRequired[str]
    province: NotRequired[str]
    district: NotRequired[str]


class CompanyRecord(TypedDict):
    taxId: str
    name: str


class EmployeeRecord(TypedDict):
    id: str
    name: str
    role: NotRequired[str]


class TicketRecord(TypedDict):
    id: str
    workType: str
    site: NotRequired[str]
    province: NotRequired[str]


class LocationRecord(TypedDict):
    code: int
    name: str
    type: LocationType
    parentName: NotRequired[str]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _valid_records(raw: Any, required: tuple[str, ...]) -> dict[str, Any]:
    """Records of one map that carry every required field."""
    if not isinstance(raw, dict):
        return {}
    kept: dict[str, Any] = {}
    for key, record in raw.items():
        if isinstance(record, dict) and all(record.get(k) is not None for k in required):
            kept[str(key)] = dict(record)
    dropped = len(raw) - len(kept)
    if dropped:
        logger.debug("entity_records_dropped", dropped=dropped, required=list(required))
    return kept


@dataclass
class EntityMemory:
    """
    Five id -> record maps plus free-form preferences.

    Each session-scoped context owns its maps. Use ``clone()`` whenever a
    snapshot is handed across a boundary (compression, persistence) so the
    live memory and the stored copy never alias.
    """

    sites: dict[str, SiteRecord] = field(default_factory=dict)
    companies: dict[str, CompanyRecord] = field(default_factory=dict)
    employees: dict[str, EmployeeRecord] = field(default_factory=dict)
    tickets: dict[str, TicketRecord] = field(default_factory=dict)
    locations: dict[int, LocationRecord] = field(default_factory=dict)
    preferences: dict[str, str] = field(default_factory=dict)
    last_updated: str = field(default_factory=_now_iso)

    def touch(self) -> None:
        self.last_updated = _now_iso()

    def clone(self) -> EntityMemory:
        return EntityMemory(
            sites=copy.deepcopy(self.sites),
            companies=copy.deepcopy(self.companies),
            employees=copy.deepcopy(self.employees),
            tickets=copy.deepcopy(self.tickets),
            locations=copy.deepcopy(self.locations),
            preferences=dict(self.preferences),
            last_updated=self.last_updated,
        )

    def merge(self, other: EntityMemory) -> None:
        """Merge *other* into this memory; entries from *other* win per key."""
        self.sites.update(copy.deepcopy(other.sites))
        self.companies.update(copy.deepcopy(other.companies))
        self.employees.update(copy.deepcopy(other.employees))
        self.tickets.update(copy.deepcopy(other.tickets))
        self.locations.update(copy.deepcopy(other.locations))
        self.preferences.update(other.preferences)
        self.touch()

    @property
    def entities_tracked(self) -> int:
        """Count of sites, companies, employees and tickets (locations excluded)."""
        return len(self.sites) + len(self.companies) + len(self.employees) + len(self.tickets)

    @property
    def is_empty(self) -> bool:
        return not (
            self.sites or self.companies or self.employees
            or self.tickets or self.locations or self.preferences
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sites": copy.deepcopy(self.sites),
            "companies": copy.deepcopy(self.companies),
            "employees": copy.deepcopy(self.employees),
            "tickets": copy.deepcopy(self.tickets),
            # JSON object keys are strings
            "locations": {str(code): dict(rec) for code, rec in self.locations.items()},
            "preferences": dict(self.preferences),
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EntityMemory:
        """Build from the JSON form, skipping maps and records that lack their identifying fields."""
        if not isinstance(data, dict):
            return cls()
        locations: dict[int, LocationRecord] = {}
        for key, value in _valid_records(data.get("locations"), ("code", "name", "type")).items():
            try:
                locations[int(key)] = value  # type: ignore[assignment]
            except (TypeError, ValueError):
                continue
        preferences = data.get("preferences")
        return cls(
            sites=_valid_records(data.get("sites"), ("id", "name")),  # type: ignore[arg-type]
            companies=_valid_records(data.get("companies"), ("taxId", "name")),  # type: ignore[arg-type]
            employees=_valid_records(data.get("employees"), ("id", "name")),  # type: ignore[arg-type]
            tickets=_valid_records(data.get("tickets"), ("id", "workType")),  # type: ignore[arg-type]
            locations=locations,
            preferences={str(k): str(v) for k, v in preferences.items()} if isinstance(preferences, dict) else {},
            last_updated=str(data.get("lastUpdated") or _now_iso()),
        )

    def serialize(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def deserialize(cls, raw: str | None) -> EntityMemory:
        """Parse the client/persisted JSON form. Unparseable input yields an empty memory."""
        if not raw:
            return cls()
        try:
            return cls.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug("entity_memory_deserialize_failed", error=str(e))
            return cls()

    def routing_hint(self) -> str | None:
        """Context text for the model router; ``None`` when nothing is tracked."""
        if not self.entities_tracked:
            return None
        return f"entities={self.entities_tracked} tickets={len(self.tickets)}"

    def build_entity_context(self) -> str:
        """Render the memory as a Thai block appended to the system prompt."""
        parts: list[str] = []

        if self.sites:
            items = []
            for s in list(self.sites.values())[:5]:
                company = f" ({s['company']})" if s.get("company") else ""
                location = f" จ.{s['province']}" if s.get("province") else ""
                items.append(f"{s.get('name', '')}{company}{location} [{str(s.get('id', ''))[:8]}]")
            parts.append(f"สถานที่ที่กล่าวถึง: {', '.join(items)}")

        if self.companies:
            items = [f"{c.get('name', '')} [{c.get('taxId', '')}]" for c in list(self.companies.values())[:5]]
            parts.append(f"บริษัทที่กล่าวถึง: {', '.join(items)}")

        if self.employees:
            items = []
            for e in list(self.employees.values())[:5]:
                role = f" ({e['role']})" if e.get("role") else ""
                items.append(f"{e.get('name', '')}{role} [{str(e.get('id', ''))[:8]}]")
            parts.append(f"พนักงานที่กล่าวถึง: {', '.join(items)}")

        if self.tickets:
            items = []
            for t in list(self.tickets.values())[:3]:
                site = f" @{t['site']}" if t.get("site") else ""
                location = f" จ.{t['province']}" if t.get("province") else ""
                items.append(f"{t.get('workType', '')}{site}{location} [{str(t.get('id', ''))[:8]}]")
            parts.append(f"ตั๋วงานที่เกี่ยวข้อง: {', '.join(items)}")

        if self.locations:
            provinces = [loc for loc in self.locations.values() if loc.get("type") == "province"][:10]
            districts = [loc for loc in self.locations.values() if loc.get("type") == "district"][:5]
            if provinces:
                items = [f"{p.get('name', '')} [รหัส {p.get('code', '')}]" for p in provinces]
                parts.append(f"จังหวัดที่กล่าวถึง: {', '.join(items)}")
            if districts:
                items = []
                for d in districts:
                    parent = f" ({d['parentName']})" if d.get("parentName") else ""
                    items.append(f"{d.get('name', '')}{parent} [รหัส {d.get('code', '')}]")
                parts.append(f"อำเภอที่กล่าวถึง: {', '.join(items)}")

        if self.preferences:
            items = [f"{k}={v}" for k, v in self.preferences.items()]
            parts.append(f"ความต้องการของผู้ใช้: {', '.join(items)}")

        if not parts:
            return ""
        return "\n\nEntity Memory:\n" + "\n".join(parts)
