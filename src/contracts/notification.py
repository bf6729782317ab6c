"""Notification record and per-user delivery preferences."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, time, timezone
from typing import Any

from src.contracts.enums import SeverityFilter, SoundType
from src.contracts.event import format_ts, parse_ts

log = logging.getLogger(__name__)


@dataclass(slots=True)
class Notification:
    """User-facing message.  Only ``is_read`` ever changes after creation.

    ``to_dict()`` is both the storage row and the wire shape delivered to
    live subscribers; new fields must be additive.
    """

    user_id: str
    message: str
    severity: str                 # info | warning | critical
    type: str | None = None
    is_read: bool = False
    id: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"ntf_{uuid.uuid4().hex[:12]}"
        self.created_at = parse_ts(self.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "message": self.message,
            "type": self.type,
            "severity": self.severity,
            "is_read": self.is_read,
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Notification:
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            message=data["message"],
            type=data.get("type"),
            severity=data["severity"],
            is_read=bool(data.get("is_read", False)),
            created_at=parse_ts(data["created_at"]),
        )


def parse_hhmm(value: str) -> time:
    if not isinstance(value, str):
        raise ValueError(f"expected HH:MM, got {value!r}")
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


@dataclass(slots=True)
class NotificationPreferences:
    """Per-user delivery preferences, persisted as a JSON blob."""

    email_enabled: bool = True
    push_enabled: bool = True
    sms_enabled: bool = False
    sound_enabled: bool = True
    sound_type: str = SoundType.DEFAULT.value
    severity_filter: str = SeverityFilter.ALL.value
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "06:00"
    muted_event_types: frozenset[str] = frozenset()
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        self.muted_event_types = frozenset(self.muted_event_types)
        # Validate eagerly so a bad blob falls back to defaults in from_blob().
        SoundType(self.sound_type)
        SeverityFilter(self.severity_filter)
        parse_hhmm(self.quiet_hours_start)
        parse_hhmm(self.quiet_hours_end)

    def to_blob(self) -> str:
        data = asdict(self)
        data["muted_event_types"] = sorted(self.muted_event_types)
        return json.dumps(data, sort_keys=True)

    @classmethod
    def from_blob(cls, blob: str | None) -> NotificationPreferences:
        """Merge a stored blob over the defaults.

        Raises ValueError (json.JSONDecodeError included) or TypeError when
        the blob cannot be understood; callers decide the fallback.
        """
        if not blob:
            return cls()
        data = json.loads(blob)
        if not isinstance(data, dict):
            raise ValueError("preferences blob is not an object")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            log.debug("Ignoring unknown preference keys: %s", ", ".join(sorted(unknown)))
        return cls(**{k: v for k, v in data.items() if k in known})
