"""Collaborator stores: protocols plus in-memory and SQLite implementations."""

from src.storage.base import (
    AlertStore,
    DeviceTokenStore,
    EventStore,
    NotificationStore,
    PreferenceStore,
)
from src.storage.memory import MemoryStore
from src.storage.sqlite import SQLiteStore

__all__ = [
    "AlertStore",
    "DeviceTokenStore",
    "EventStore",
    "MemoryStore",
    "NotificationStore",
    "PreferenceStore",
    "SQLiteStore",
]
