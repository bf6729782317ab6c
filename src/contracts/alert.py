"""Alert model - a rule match bound to one persisted Event."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.contracts.event import format_ts, parse_ts

DEFAULT_CHANNELS: tuple[str, ...] = ("email", "push")


@dataclass(slots=True)
class Alert:
    """Open while ``sent_at`` is None; closed by the dispatcher."""

    event_id: str
    rule_id: str
    severity: str               # rule severity: info | warn | suspicious
    message: str
    event_type: str = ""
    channels: frozenset[str] = frozenset(DEFAULT_CHANNELS)
    sent_at: datetime | None = None
    id: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"alr_{uuid.uuid4().hex[:12]}"
        self.channels = frozenset(self.channels)

    @property
    def is_open(self) -> bool:
        return self.sent_at is None

    @property
    def key(self) -> tuple[str, str]:
        return (self.event_id, self.rule_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "rule_id": self.rule_id,
            "event_type": self.event_type,
            "severity": self.severity,
            "message": self.message,
            "channels": sorted(self.channels),
            "sent_at": format_ts(self.sent_at) if self.sent_at else None,
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        sent = data.get("sent_at")
        return cls(
            id=data["id"],
            event_id=data["event_id"],
            rule_id=data["rule_id"],
            event_type=data.get("event_type", ""),
            severity=data.get("severity", "info"),
            message=data.get("message", ""),
            channels=frozenset(data.get("channels") or ()),
            sent_at=parse_ts(sent) if sent else None,
            created_at=parse_ts(data["created_at"]),
        )
