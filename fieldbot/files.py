"""Attachment processing and multi-modal user message assembly."""

from __future__ import annotations

import base64
import binascii
import csv
import io
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from fieldbot.agent.request import FileAttachment
from fieldbot.logging import get_logger

logger = get_logger(__name__)

FileKind = Literal["image", "document", "spreadsheet", "text"]

IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})
SPREADSHEET_TYPES = frozenset({"text/csv"})
TEXT_TYPES = frozenset({"text/plain", "text/markdown"})

_MAX_TABLE_ROWS = 100


@dataclass
class ProcessedFile:
    name: str
    kind: FileKind
    mime_type: str
    text: str | None = None
    image_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class FileProcessor(Protocol):
    """Turns raw attachments into text and image parts; unsupported files are skipped."""

    async def process(self, attachments: list[FileAttachment]) -> list[ProcessedFile]: ...


def _decode(data: str | None) -> bytes:
    if not data:
        return b""
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    return base64.b64decode(data, validate=False)


def _format_table(rows: list[list[str]]) -> str:
    if not rows:
        return ""
    width = max(len(r) for r in rows)
    padded = [r + [""] * (width - len(r)) for r in rows[:_MAX_TABLE_ROWS]]
    lines = ["| " + " | ".join(padded[0]) + " |", "|" + " --- |" * width]
    lines.extend("| " + " | ".join(r) + " |" for r in padded[1:])
    if len(rows) > _MAX_TABLE_ROWS:
        lines.append(f"... ({len(rows) - _MAX_TABLE_ROWS} more rows)")
    return "\n".join(lines)


class BasicFileProcessor:
    """
    Handles images, CSV and plain-text attachments.

    Binary document formats (PDF, XLSX) need a dedicated extractor and are
    reported as unsupported here.
    """

    async def process(self, attachments: list[FileAttachment]) -> list[ProcessedFile]:
        results: list[ProcessedFile] = []
        for attachment in attachments:
            processed = self.process_one(attachment)
            if processed is not None:
                results.append(processed)
        return results

    def process_one(self, attachment: FileAttachment) -> ProcessedFile | None:
        mime = attachment.mime_type
        if mime in IMAGE_TYPES:
            url = attachment.url or f"data:{mime};base64,{attachment.data or ''}"
            return ProcessedFile(name=attachment.name, kind="image", mime_type=mime, image_url=url)

        if mime in SPREADSHEET_TYPES:
            text = self._decode_text(attachment)
            rows = [r for r in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in r)]
            return ProcessedFile(
                name=attachment.name,
                kind="spreadsheet",
                mime_type=mime,
                text=_format_table(rows),
                metadata={"rows": len(rows), "columns": max((len(r) for r in rows), default=0)},
            )

        if mime in TEXT_TYPES:
            return ProcessedFile(
                name=attachment.name,
                kind="text",
                mime_type=mime,
                text=self._decode_text(attachment),
            )

        logger.warning("file_type_unsupported", file_name=attachment.name, mime_type=mime)
        return None

    @staticmethod
    def _decode_text(attachment: FileAttachment) -> str:
        try:
            return _decode(attachment.data).decode("utf-8-sig", errors="replace")
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"attachment {attachment.name} is not valid base64") from e


def build_message_content(query: str, processed: list[ProcessedFile]) -> str | list[dict[str, Any]]:
    """
    Build the user message content for *query* plus processed attachments.

    Extracted text is merged into one leading text part; images follow it,
    never precede it. Without images the plain string is returned.
    """
    text = query
    for f in processed:
        if not f.text:
            continue
        if f.kind == "document":
            text += f'\n\n📄 ไฟล์ PDF "{f.name}":\n{f.text}'
        elif f.kind == "spreadsheet":
            rows = f.metadata.get("rows", 0)
            cols = f.metadata.get("columns", 0)
            text += f'\n\n📊 ไฟล์ตาราง "{f.name}" ({rows} แถว, {cols} คอลัมน์):\n{f.text}'
        else:
            text += f'\n\n📎 ไฟล์ "{f.name}":\n{f.text}'

    images = [f for f in processed if f.kind == "image" and f.image_url]
    if not images:
        return text

    content: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for f in images:
        content.append({"type": "image_url", "image_url": {"url": f.image_url, "detail": "auto"}})
    return content
