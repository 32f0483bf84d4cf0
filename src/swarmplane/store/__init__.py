"""Declarative state store."""

from swarmplane.store.memory import (
    ADDED,
    DELETED,
    MODIFIED,
    InMemoryStore,
    Watch,
    WatchEvent,
)

__all__ = [
    "ADDED",
    "DELETED",
    "MODIFIED",
    "InMemoryStore",
    "Watch",
    "WatchEvent",
]
