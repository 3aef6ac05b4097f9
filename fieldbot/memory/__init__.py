"""Entity memory: cross-turn cache of domain objects referenced in a conversation."""

from fieldbot.memory.entities import EntityMemory
from fieldbot.memory.extraction import EntityExtractor

__all__ = ["EntityExtractor", "EntityMemory"]
