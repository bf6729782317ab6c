"""Tests for src.contracts - Event, Rule, Alert, Notification, preferences."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from src.contracts.alert import DEFAULT_CHANNELS, Alert
from src.contracts.enums import to_notification_severity
from src.contracts.event import Event, format_ts, parse_ts
from src.contracts.notification import Notification, NotificationPreferences
from src.contracts.rule import Rule
from tests.conftest import make_event

# ═══════════════════════════════════════════════════════════════════════════
#  Event
# ═══════════════════════════════════════════════════════════════════════════


class TestTimestamps:
    def test_parse_z_suffix(self):
        dt = parse_ts("2026-03-02T14:00:00Z")
        assert dt == datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)

    def test_parse_offset_normalised_to_utc(self):
        dt = parse_ts("2026-03-02T16:00:00+02:00")
        assert dt.hour == 14
        assert dt.utcoffset().total_seconds() == 0

    def test_naive_taken_as_utc(self):
        assert parse_ts(datetime(2026, 3, 2, 14)).tzinfo is not None

    def test_format_drops_zero_microseconds(self):
        assert format_ts(parse_ts("2026-03-02T14:00:00Z")) == "2026-03-02T14:00:00Z"

    def test_format_keeps_microseconds(self):
        assert format_ts(parse_ts("2026-03-02T14:00:00.250Z")) == "2026-03-02T14:00:00.250000Z"


class TestEvent:
    def test_amount_from_payload(self):
        assert make_event(amount="150").amount == 150.0

    def test_amount_missing_or_garbage(self):
        assert make_event().amount is None
        assert make_event(amount="n/a").amount is None

    def test_dict_roundtrip(self):
        e = make_event(event_type="void", amount=150, employee_id="emp-7")
        assert Event.from_dict(e.to_dict()) == e

    def test_from_raw_ingestion_payload(self):
        e = Event.from_dict({
            "id": "e1",
            "store_id": "s1",
            "device_id": "pos-1",
            "event_type": "void",
            "timestamp": "2026-03-02T14:00:00Z",
            "amount": 150,
            "employee_id": "emp-7",
            "metadata": {"reason": "customer changed mind"},
        })
        assert e.captured_at == parse_ts("2026-03-02T14:00:00Z")
        assert e.severity == "info"
        assert e.payload == {"amount": 150, "employee_id": "emp-7", "reason": "customer changed mind"}

    def test_missing_timestamp_rejected(self):
        with pytest.raises(ValueError):
            Event.from_dict({"id": "e1", "store_id": "s1", "event_type": "void"})

    def test_frozen(self):
        e = make_event()
        with pytest.raises(AttributeError):
            e.event_type = "void"


# ═══════════════════════════════════════════════════════════════════════════
#  Rule / Alert
# ═══════════════════════════════════════════════════════════════════════════


class TestRule:
    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            Rule(id="r", store_id="*", name="r", kind="regex")

    def test_wildcard_event_type(self):
        r = Rule(id="r", store_id="*", name="r", kind="pattern")
        assert r.applies_to("void")
        assert r.applies_to("transaction")

    def test_bound_event_type(self):
        r = Rule(id="r", store_id="*", name="r", kind="threshold", parameters={"event_type": "void"})
        assert r.applies_to("void")
        assert not r.applies_to("refund")

    def test_default_severity_is_warn(self):
        assert Rule(id="r", store_id="*", name="r", kind="threshold").severity == "warn"


class TestAlert:
    def test_new_alert_is_open_with_default_channels(self):
        a = Alert(event_id="e1", rule_id="r1", severity="warn", message="m")
        assert a.is_open
        assert a.channels == frozenset(DEFAULT_CHANNELS)
        assert a.id.startswith("alr_")

    def test_key(self):
        assert Alert(event_id="e1", rule_id="r1", severity="warn", message="m").key == ("e1", "r1")

    def test_dict_roundtrip_keeps_unknown_channels(self):
        a = Alert(event_id="e1", rule_id="r1", severity="warn", message="m",
                  channels={"email", "pager"})
        assert Alert.from_dict(a.to_dict()) == a


class TestSeverityMapping:
    @pytest.mark.parametrize("rule_sev,expected", [
        ("suspicious", "critical"),
        ("warn", "warning"),
        ("info", "info"),
        ("critical", "critical"),
        ("bogus", "info"),
    ])
    def test_mapping(self, rule_sev, expected):
        assert to_notification_severity(rule_sev) == expected


# ═══════════════════════════════════════════════════════════════════════════
#  Notification / preferences
# ═══════════════════════════════════════════════════════════════════════════


class TestNotification:
    def test_wire_roundtrip(self):
        n = Notification(user_id="u1", message="hello", severity="critical", type="event_alert")
        assert Notification.from_dict(n.to_dict()) == n

    def test_wire_shape(self):
        n = Notification(user_id="u1", message="hello", severity="info")
        assert set(n.to_dict()) == {"id", "user_id", "message", "type", "severity", "is_read", "created_at"}
        assert n.to_dict()["is_read"] is False


class TestPreferences:
    def test_empty_blob_gives_defaults(self):
        assert NotificationPreferences.from_blob(None) == NotificationPreferences()
        assert NotificationPreferences.from_blob("") == NotificationPreferences()

    def test_blob_merges_over_defaults(self):
        prefs = NotificationPreferences.from_blob(json.dumps({"severity_filter": "critical_only"}))
        assert prefs.severity_filter == "critical_only"
        assert prefs.push_enabled is True

    def test_blob_roundtrip(self):
        prefs = NotificationPreferences(muted_event_types={"void"}, quiet_hours_enabled=True)
        assert NotificationPreferences.from_blob(prefs.to_blob()) == prefs

    def test_unknown_keys_ignored(self):
        prefs = NotificationPreferences.from_blob(json.dumps({"theme": "dark"}))
        assert prefs == NotificationPreferences()

    @pytest.mark.parametrize("blob", [
        "{not json",
        json.dumps(["a"]),
        json.dumps({"severity_filter": "loud"}),
        json.dumps({"quiet_hours_start": "late"}),
    ])
    def test_bad_blob_raises(self, blob):
        with pytest.raises((ValueError, TypeError)):
            NotificationPreferences.from_blob(blob)
