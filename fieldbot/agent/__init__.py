"""Conversation orchestration: routing, streaming turns, tool confirmation."""
