"""Recover full entity ids from truncated prefixes in model-generated arguments."""

from __future__ import annotations

import re
from typing import Any, Iterable, Literal, Protocol, TypeAlias

from fieldbot.logging import get_logger

logger = get_logger(__name__)

EntityKind: TypeAlias = Literal["site", "employee", "company"]

UUID_LENGTH = 36
MIN_PREFIX_HEX = 4

_NOISE_RE = re.compile(r"[\[\]\"'.\s]")
_LEADING_UUID_RE = re.compile(r"^[0-9a-fA-F-]+")


def extract_uuid_prefix(value: str) -> str | None:
    """Clean a shortened id such as ``"[a1b2c3d4...]"`` down to ``a1b2c3d4``.

    Returns ``None`` when fewer than four hex characters remain.
    """
    cleaned = _NOISE_RE.sub("", value)
    m = _LEADING_UUID_RE.match(cleaned)
    if not m:
        return None
    prefix = m.group(0).rstrip("-")
    if len(prefix.replace("-", "")) < MIN_PREFIX_HEX:
        return None
    return prefix.lower()


class Directory(Protocol):
    """Lookup of a full id by its leading characters."""

    async def resolve(self, kind: EntityKind, prefix: str) -> str | None: ...


class InMemoryDirectory:
    """Directory over known id sets; first match in insertion order wins."""

    def __init__(self, ids: dict[EntityKind, Iterable[str]] | None = None) -> None:
        self._ids: dict[str, list[str]] = {k: list(v) for k, v in (ids or {}).items()}

    def add(self, kind: EntityKind, entity_id: str) -> None:
        self._ids.setdefault(kind, []).append(entity_id)

    async def resolve(self, kind: EntityKind, prefix: str) -> str | None:
        needle = prefix.lower()
        for entity_id in self._ids.get(kind, []):
            if entity_id.lower().startswith(needle):
                return entity_id
        return None


class PartialIdResolver:
    """Rewrites ``site_id``, ``company_id`` and ``employee_ids`` entries shorter than a UUID."""

    def __init__(self, directory: Directory | None) -> None:
        self.directory = directory

    async def _resolve_one(self, kind: EntityKind, value: Any) -> Any:
        if self.directory is None or not isinstance(value, str) or len(value) >= UUID_LENGTH:
            return value
        prefix = extract_uuid_prefix(value)
        if not prefix:
            return value
        full = await self.directory.resolve(kind, prefix)
        if full:
            logger.info("partial_id_resolved", kind=kind, partial=value, resolved=full)
            return full
        return value

    async def resolve_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of *arguments* with partial ids replaced where the directory knows them."""
        resolved = dict(arguments)
        if "site_id" in resolved:
            resolved["site_id"] = await self._resolve_one("site", resolved["site_id"])
        if "company_id" in resolved:
            resolved["company_id"] = await self._resolve_one("company", resolved["company_id"])
        if isinstance(resolved.get("employee_ids"), list):
            resolved["employee_ids"] = [
                await self._resolve_one("employee", emp_id) for emp_id in resolved["employee_ids"]
            ]
        return resolved
