"""Session persistence."""

from fieldbot.session.manager import Session, SessionStore, StoredMessage

__all__ = ["Session", "SessionStore", "StoredMessage"]
