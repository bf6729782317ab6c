"""In-memory implementation of every store protocol.

Thread-safe; intended for tests, local replays and a single process.
Uniqueness rules match the SQL schema: event ids, (event_id, rule_id) on
alerts and (user_id, token) on device tokens.
"""

from __future__ import annotations

import bisect
import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime

from src.contracts.alert import Alert
from src.contracts.event import Event, parse_ts
from src.contracts.notification import Notification
from src.shared.errors import DuplicateAlertError, DuplicateEventError


def _captured(row: tuple[datetime, str]) -> datetime:
    return row[0]


class MemoryStore:
    """Events, alerts, notifications, preferences and device tokens in dicts."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._events: dict[str, Event] = {}
        # (store_id, event_type) -> sorted list of (captured_at, event_id)
        self._index: dict[tuple[str, str], list[tuple[datetime, str]]] = defaultdict(list)
        self._alerts: dict[str, Alert] = {}
        self._alert_keys: dict[tuple[str, str], str] = {}
        self._notifications: dict[str, Notification] = {}
        self._preferences: dict[str, str] = {}
        self._tokens: dict[str, list[str]] = defaultdict(list)

    # ── events ───────────────────────────────────────────────────────────

    def insert(self, event: Event) -> str:
        with self._lock:
            if event.id in self._events:
                raise DuplicateEventError(f"event {event.id} already stored")
            self._events[event.id] = event
            bisect.insort(self._index[(event.store_id, event.event_type)], (event.captured_at, event.id))
        return event.id

    def get(self, event_id: str) -> Event | None:
        with self._lock:
            return self._events.get(event_id)

    def _range(self, store_id: str, event_type: str, start: datetime, end: datetime) -> list[str]:
        start, end = parse_ts(start), parse_ts(end)
        rows = self._index.get((store_id, event_type), [])
        lo = bisect.bisect_left(rows, start, key=_captured)
        hi = bisect.bisect_right(rows, end, key=_captured)
        return [eid for _, eid in rows[lo:hi]]

    def count(self, store_id: str, event_type: str, start: datetime, end: datetime) -> int:
        with self._lock:
            return len(self._range(store_id, event_type, start, end))

    def exists(self, store_id: str, event_type: str, start: datetime, end: datetime) -> bool:
        return self.count(store_id, event_type, start, end) > 0

    def find_by_natural_key(
        self, store_id: str, event_type: str, captured_at: datetime
    ) -> Event | None:
        with self._lock:
            ids = self._range(store_id, event_type, captured_at, captured_at)
            return self._events[ids[0]] if ids else None

    def recent(self, store_id: str, limit: int = 100) -> list[Event]:
        with self._lock:
            evts = [e for e in self._events.values() if e.store_id == store_id]
        evts.sort(key=lambda e: e.captured_at, reverse=True)
        return evts[:limit]

    # ── alerts ───────────────────────────────────────────────────────────

    def insert_alert(self, alert: Alert) -> str:
        with self._lock:
            if alert.key in self._alert_keys:
                raise DuplicateAlertError(f"alert for {alert.key} already exists")
            self._alerts[alert.id] = replace(alert)
            self._alert_keys[alert.key] = alert.id
        return alert.id

    def find_alert(self, event_id: str, rule_id: str) -> Alert | None:
        with self._lock:
            aid = self._alert_keys.get((event_id, rule_id))
            return replace(self._alerts[aid]) if aid else None

    def open_alerts(self, store_id: str | None = None) -> list[Alert]:
        with self._lock:
            found = [
                replace(a) for a in self._alerts.values()
                if a.is_open and (store_id is None or self._events[a.event_id].store_id == store_id)
            ]
        found.sort(key=lambda a: a.created_at)
        return found

    def mark_sent(self, alert_id: str, sent_at: datetime) -> None:
        with self._lock:
            alert = self._alerts[alert_id]
            alert.sent_at = parse_ts(sent_at)

    def list_alerts(self, event_id: str | None = None) -> list[Alert]:
        with self._lock:
            found = [
                replace(a) for a in self._alerts.values()
                if event_id is None or a.event_id == event_id
            ]
        found.sort(key=lambda a: a.created_at)
        return found

    # ── notifications ────────────────────────────────────────────────────

    def insert_notification(self, notification: Notification) -> str:
        with self._lock:
            self._notifications[notification.id] = replace(notification)
        return notification.id

    def get_notification(self, notification_id: str) -> Notification | None:
        with self._lock:
            n = self._notifications.get(notification_id)
            return replace(n) if n else None

    def list_notifications(self, user_id: str, limit: int = 50) -> list[Notification]:
        with self._lock:
            rows = [replace(n) for n in self._notifications.values() if n.user_id == user_id]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return rows[:limit]

    def mark_read(self, notification_id: str) -> bool:
        with self._lock:
            n = self._notifications.get(notification_id)
            if n is None:
                return False
            n.is_read = True
            return True

    def mark_all_read(self, user_id: str) -> int:
        changed = 0
        with self._lock:
            for n in self._notifications.values():
                if n.user_id == user_id and not n.is_read:
                    n.is_read = True
                    changed += 1
        return changed

    def unread_count(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for n in self._notifications.values() if n.user_id == user_id and not n.is_read)

    def delete_notification(self, notification_id: str) -> bool:
        with self._lock:
            return self._notifications.pop(notification_id, None) is not None

    # ── preferences / device tokens ──────────────────────────────────────

    def get_preferences_blob(self, user_id: str) -> str | None:
        with self._lock:
            return self._preferences.get(user_id)

    def put_preferences_blob(self, user_id: str, blob: str) -> None:
        with self._lock:
            self._preferences[user_id] = blob

    def register_token(self, user_id: str, token: str) -> None:
        with self._lock:
            if token not in self._tokens[user_id]:
                self._tokens[user_id].append(token)

    def tokens_for(self, user_id: str) -> list[str]:
        with self._lock:
            return list(self._tokens.get(user_id, []))
