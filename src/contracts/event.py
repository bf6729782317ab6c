"""Canonical Event data-class - one immutable POS event."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Keys of the raw ingestion payload that are folded into Event.payload.
_PAYLOAD_KEYS = ("amount", "employee_id", "description")


def parse_ts(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp to an aware UTC datetime.

    Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_ts(dt: datetime) -> str:
    """Format an aware datetime as ISO-8601 UTC with a ``Z`` suffix."""
    dt = parse_ts(dt)
    text = dt.strftime("%Y-%m-%dT%H:%M:%S")
    if dt.microsecond:
        text += f".{dt.microsecond:06d}"
    return text + "Z"


@dataclass(frozen=True, slots=True)
class Event:
    """One captured event at a store.  Never mutated after capture."""

    id: str
    store_id: str
    event_type: str              # transaction | void | refund | drawer_open | login_failure ...
    captured_at: datetime        # aware, UTC
    severity: str = "info"       # info | warn | suspicious, set by the ingester
    device_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "captured_at", parse_ts(self.captured_at))

    @property
    def amount(self) -> float | None:
        raw = self.payload.get("amount")
        if raw is None or raw == "":
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    # ── serialisation ─────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "device_id": self.device_id,
            "event_type": self.event_type,
            "severity": self.severity,
            "payload": dict(self.payload),
            "captured_at": format_ts(self.captured_at),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Build an Event from a stored row or a raw ingestion payload.

        The raw POS payload carries ``timestamp`` instead of ``captured_at``
        and keeps ``amount``/``employee_id``/``metadata`` at the top level;
        those are folded into ``payload``.
        """
        payload = dict(data.get("payload") or {})
        for key in _PAYLOAD_KEYS:
            if key in data and data[key] is not None:
                payload.setdefault(key, data[key])
        metadata = data.get("metadata")
        if isinstance(metadata, dict):
            for key, value in metadata.items():
                payload.setdefault(key, value)

        captured = data.get("captured_at") or data.get("timestamp")
        if not captured:
            raise ValueError(f"event {data.get('id')!r} has no captured_at/timestamp")

        return cls(
            id=str(data["id"]),
            store_id=str(data["store_id"]),
            event_type=str(data["event_type"]),
            captured_at=parse_ts(captured),
            severity=data.get("severity") or "info",
            device_id=data.get("device_id"),
            payload=payload,
        )
