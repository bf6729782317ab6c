"""Collaborator interfaces for the persistent stores.

The production system talks to a relational service over a query API;
anything implementing these protocols can be plugged into the pipeline.
All time ranges are inclusive on both ends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from src.contracts.alert import Alert
from src.contracts.event import Event
from src.contracts.notification import Notification


class EventStore(Protocol):
    def insert(self, event: Event) -> str: ...

    def get(self, event_id: str) -> Event | None: ...

    def count(self, store_id: str, event_type: str, start: datetime, end: datetime) -> int: ...

    def exists(self, store_id: str, event_type: str, start: datetime, end: datetime) -> bool: ...

    def find_by_natural_key(
        self, store_id: str, event_type: str, captured_at: datetime
    ) -> Event | None: ...

    def recent(self, store_id: str, limit: int = 100) -> list[Event]: ...


class AlertStore(Protocol):
    def insert_alert(self, alert: Alert) -> str: ...

    def find_alert(self, event_id: str, rule_id: str) -> Alert | None: ...

    def open_alerts(self, store_id: str | None = None) -> list[Alert]: ...

    def mark_sent(self, alert_id: str, sent_at: datetime) -> None: ...

    def list_alerts(self, event_id: str | None = None) -> list[Alert]: ...


class NotificationStore(Protocol):
    def insert_notification(self, notification: Notification) -> str: ...

    def get_notification(self, notification_id: str) -> Notification | None: ...

    def list_notifications(self, user_id: str, limit: int = 50) -> list[Notification]: ...

    def mark_read(self, notification_id: str) -> bool: ...

    def mark_all_read(self, user_id: str) -> int: ...

    def unread_count(self, user_id: str) -> int: ...

    def delete_notification(self, notification_id: str) -> bool: ...


class PreferenceStore(Protocol):
    def get_preferences_blob(self, user_id: str) -> str | None: ...

    def put_preferences_blob(self, user_id: str, blob: str) -> None: ...


class DeviceTokenStore(Protocol):
    def register_token(self, user_id: str, token: str) -> None: ...

    def tokens_for(self, user_id: str) -> list[str]: ...
