"""Normalize turn messages before they are persisted."""

from __future__ import annotations

from typing import Any


class TurnHistoryWriter:
    """Shape turn messages for the recent-message window and the durable log."""

    def __init__(self, *, recent_window: int = 8, tool_result_max_chars: int = 4000) -> None:
        self.recent_window = recent_window
        self.tool_result_max_chars = tool_result_max_chars

    @staticmethod
    def strip_images_from_content(content: Any) -> Any:
        """Replace image blocks with a lightweight placeholder."""
        if not isinstance(content, list):
            return content
        stripped: list[dict] = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "image_url":
                stripped.append({"type": "text", "text": "[image]"})
            else:
                stripped.append(block)
        texts = [b["text"] for b in stripped if isinstance(b, dict) and b.get("type") == "text"]
        if len(texts) == len(stripped):
            return " ".join(texts)
        return stripped

    def normalize(self, message: dict[str, Any]) -> dict[str, Any]:
        entry: dict[str, Any] = {"role": message.get("role"), "content": message.get("content")}
        for key in ("tool_calls", "tool_call_id", "name"):
            if message.get(key):
                entry[key] = message[key]
        entry["content"] = self.strip_images_from_content(entry["content"])
        if entry["role"] == "tool" and isinstance(entry["content"], str):
            content = entry["content"]
            if len(content) > self.tool_result_max_chars:
                entry["content"] = content[:self.tool_result_max_chars] + "\n... (truncated)"
        return entry

    def recent_window_of(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Last ``recent_window`` non-system messages, normalized."""
        conversation = [m for m in messages if m.get("role") != "system"]
        return [self.normalize(m) for m in conversation[-self.recent_window:]]
