"""HTTP surface."""

from fieldbot.api.app import create_app

__all__ = ["create_app"]
