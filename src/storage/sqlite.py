"""
SQLite Storage
Reference persistence for the collaborator stores.

Responsibilities:
- Append-only events table with (store_id, event_type, captured_at) index
- Alerts with a UNIQUE(event_id, rule_id) constraint: the authoritative
  guard against duplicate alerts under concurrent retries
- Notifications, preference blobs, device tokens

NOT responsible for:
- Rule evaluation or dispatch decisions
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

from src.contracts.alert import Alert
from src.contracts.event import Event, format_ts, parse_ts
from src.contracts.notification import Notification
from src.shared.errors import DuplicateAlertError, DuplicateEventError, StoreError

log = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    store_id TEXT NOT NULL,
    device_id TEXT,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'info',
    payload TEXT NOT NULL DEFAULT '{}',
    captured_at TEXT NOT NULL,
    captured_us INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_store_type_ts
ON events(store_id, event_type, captured_us);

CREATE TABLE IF NOT EXISTS alerts (
    id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL REFERENCES events(id),
    rule_id TEXT NOT NULL,
    event_type TEXT NOT NULL DEFAULT '',
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    channels TEXT NOT NULL DEFAULT '[]',
    sent_at TEXT,
    created_at TEXT NOT NULL,
    created_us INTEGER NOT NULL,
    UNIQUE(event_id, rule_id)
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    message TEXT NOT NULL,
    type TEXT,
    severity TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    created_us INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notifications_user
ON notifications(user_id, created_us);

CREATE TABLE IF NOT EXISTS notification_preferences (
    user_id TEXT PRIMARY KEY,
    blob TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS device_tokens (
    user_id TEXT NOT NULL,
    token TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, token)
);
"""

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _us(dt: datetime) -> int:
    """Microseconds since the epoch; used for range comparisons."""
    delta = parse_ts(dt) - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


class SQLiteStore:
    """
    SQLite persistence for events, alerts and notifications.

    One short-lived connection per call; ``timeout`` is the sqlite busy
    timeout so a locked database surfaces as an error instead of blocking.
    """

    def __init__(self, db_path: str = "data/guardian.db", timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.executescript(_SCHEMA)
        log.info("SQLite store ready at %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with closing(self._connect()) as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as exc:
            raise StoreError(f"query failed: {exc}") from exc

    def _execute(self, sql: str, params: tuple = ()) -> int:
        try:
            with closing(self._connect()) as conn, conn:
                return conn.execute(sql, params).rowcount
        except sqlite3.OperationalError as exc:
            raise StoreError(f"write failed: {exc}") from exc

    # =========================================================================
    # Events
    # =========================================================================

    def insert(self, event: Event) -> str:
        try:
            self._execute(
                """INSERT INTO events
                   (id, store_id, device_id, event_type, severity, payload, captured_at, captured_us)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (event.id, event.store_id, event.device_id, event.event_type, event.severity,
                 json.dumps(event.payload), format_ts(event.captured_at), _us(event.captured_at)),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateEventError(f"event {event.id} already stored") from exc
        return event.id

    @staticmethod
    def _event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            store_id=row["store_id"],
            device_id=row["device_id"],
            event_type=row["event_type"],
            severity=row["severity"],
            payload=json.loads(row["payload"]),
            captured_at=parse_ts(row["captured_at"]),
        )

    def get(self, event_id: str) -> Event | None:
        rows = self._query("SELECT * FROM events WHERE id = ?", (event_id,))
        return self._event(rows[0]) if rows else None

    def count(self, store_id: str, event_type: str, start: datetime, end: datetime) -> int:
        rows = self._query(
            """SELECT COUNT(*) FROM events
               WHERE store_id = ? AND event_type = ? AND captured_us BETWEEN ? AND ?""",
            (store_id, event_type, _us(start), _us(end)),
        )
        return int(rows[0][0])

    def exists(self, store_id: str, event_type: str, start: datetime, end: datetime) -> bool:
        rows = self._query(
            """SELECT 1 FROM events
               WHERE store_id = ? AND event_type = ? AND captured_us BETWEEN ? AND ?
               LIMIT 1""",
            (store_id, event_type, _us(start), _us(end)),
        )
        return bool(rows)

    def find_by_natural_key(
        self, store_id: str, event_type: str, captured_at: datetime
    ) -> Event | None:
        rows = self._query(
            """SELECT * FROM events
               WHERE store_id = ? AND event_type = ? AND captured_us = ?
               ORDER BY id LIMIT 1""",
            (store_id, event_type, _us(captured_at)),
        )
        return self._event(rows[0]) if rows else None

    def recent(self, store_id: str, limit: int = 100) -> list[Event]:
        rows = self._query(
            "SELECT * FROM events WHERE store_id = ? ORDER BY captured_us DESC LIMIT ?",
            (store_id, limit),
        )
        return [self._event(r) for r in rows]

    # =========================================================================
    # Alerts
    # =========================================================================

    @staticmethod
    def _alert(row: sqlite3.Row) -> Alert:
        return Alert(
            id=row["id"],
            event_id=row["event_id"],
            rule_id=row["rule_id"],
            event_type=row["event_type"],
            severity=row["severity"],
            message=row["message"],
            channels=frozenset(json.loads(row["channels"])),
            sent_at=parse_ts(row["sent_at"]) if row["sent_at"] else None,
            created_at=parse_ts(row["created_at"]),
        )

    def insert_alert(self, alert: Alert) -> str:
        try:
            self._execute(
                """INSERT INTO alerts
                   (id, event_id, rule_id, event_type, severity, message, channels, sent_at,
                    created_at, created_us)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (alert.id, alert.event_id, alert.rule_id, alert.event_type, alert.severity,
                 alert.message, json.dumps(sorted(alert.channels)),
                 format_ts(alert.sent_at) if alert.sent_at else None,
                 format_ts(alert.created_at), _us(alert.created_at)),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateAlertError(f"alert for {alert.key} already exists") from exc
        return alert.id

    def find_alert(self, event_id: str, rule_id: str) -> Alert | None:
        rows = self._query(
            "SELECT * FROM alerts WHERE event_id = ? AND rule_id = ?", (event_id, rule_id)
        )
        return self._alert(rows[0]) if rows else None

    def open_alerts(self, store_id: str | None = None) -> list[Alert]:
        if store_id is None:
            rows = self._query("SELECT * FROM alerts WHERE sent_at IS NULL ORDER BY created_us, rowid")
        else:
            rows = self._query(
                """SELECT a.* FROM alerts a JOIN events e ON e.id = a.event_id
                   WHERE a.sent_at IS NULL AND e.store_id = ? ORDER BY a.created_us, a.rowid""",
                (store_id,),
            )
        return [self._alert(r) for r in rows]

    def mark_sent(self, alert_id: str, sent_at: datetime) -> None:
        self._execute("UPDATE alerts SET sent_at = ? WHERE id = ?", (format_ts(sent_at), alert_id))

    def list_alerts(self, event_id: str | None = None) -> list[Alert]:
        if event_id is None:
            rows = self._query("SELECT * FROM alerts ORDER BY created_us, rowid")
        else:
            rows = self._query("SELECT * FROM alerts WHERE event_id = ? ORDER BY created_us, rowid", (event_id,))
        return [self._alert(r) for r in rows]

    # =========================================================================
    # Notifications
    # =========================================================================

    @staticmethod
    def _notification(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            message=row["message"],
            type=row["type"],
            severity=row["severity"],
            is_read=bool(row["is_read"]),
            created_at=parse_ts(row["created_at"]),
        )

    def insert_notification(self, notification: Notification) -> str:
        n = notification
        self._execute(
            """INSERT INTO notifications
               (id, user_id, message, type, severity, is_read, created_at, created_us)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (n.id, n.user_id, n.message, n.type, n.severity, int(n.is_read),
             format_ts(n.created_at), _us(n.created_at)),
        )
        return n.id

    def get_notification(self, notification_id: str) -> Notification | None:
        rows = self._query("SELECT * FROM notifications WHERE id = ?", (notification_id,))
        return self._notification(rows[0]) if rows else None

    def list_notifications(self, user_id: str, limit: int = 50) -> list[Notification]:
        rows = self._query(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_us DESC LIMIT ?",
            (user_id, limit),
        )
        return [self._notification(r) for r in rows]

    def mark_read(self, notification_id: str) -> bool:
        return self._execute(
            "UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,)
        ) > 0

    def mark_all_read(self, user_id: str) -> int:
        return self._execute(
            "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,)
        )

    def unread_count(self, user_id: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
        )
        return int(rows[0][0])

    def delete_notification(self, notification_id: str) -> bool:
        return self._execute("DELETE FROM notifications WHERE id = ?", (notification_id,)) > 0

    # =========================================================================
    # Preferences & device tokens
    # =========================================================================

    def get_preferences_blob(self, user_id: str) -> str | None:
        rows = self._query("SELECT blob FROM notification_preferences WHERE user_id = ?", (user_id,))
        return rows[0]["blob"] if rows else None

    def put_preferences_blob(self, user_id: str, blob: str) -> None:
        self._execute(
            """INSERT INTO notification_preferences (user_id, blob) VALUES (?, ?)
               ON CONFLICT(user_id) DO UPDATE SET blob = excluded.blob""",
            (user_id, blob),
        )

    def register_token(self, user_id: str, token: str) -> None:
        self._execute(
            "INSERT OR IGNORE INTO device_tokens (user_id, token) VALUES (?, ?)", (user_id, token)
        )

    def tokens_for(self, user_id: str) -> list[str]:
        rows = self._query(
            "SELECT token FROM device_tokens WHERE user_id = ? ORDER BY rowid", (user_id,)
        )
        return [r["token"] for r in rows]
