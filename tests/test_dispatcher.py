"""Tests for src.notifier.dispatcher - gates, delivery and alert closing."""

from __future__ import annotations

import pytest

from src.alerting.manager import AlertManager
from src.contracts.notification import NotificationPreferences
from src.contracts.rule import RuleMatch
from src.notifier.dispatcher import NotificationDispatcher
from src.notifier.preferences import save_preferences
from src.notifier.push import LoggingPushSender, TaskSupervisor
from src.notifier.sound import LoggingSoundSink
from src.realtime import NOTIFICATIONS_TOPIC, RealtimeBridge
from src.shared.errors import PushDeliveryError
from tests.conftest import FixedClock, make_event

OWNER = "owner-1"


class FailingPushSender:
    def __init__(self):
        self.attempts = 0

    def send(self, notification, token):
        self.attempts += 1
        raise PushDeliveryError("gateway down")


@pytest.fixture
def parts(store, settings):
    clock = FixedClock("2026-03-02T14:05:00Z")
    bridge = RealtimeBridge(buffer_size=50)
    sender = LoggingPushSender()
    sink = LoggingSoundSink()
    alerts = AlertManager(store, settings)
    supervisor = TaskSupervisor(max_workers=1, timeout=2.0)
    dispatcher = NotificationDispatcher(
        store, bridge, alerts,
        settings=settings, push_sender=sender, supervisor=supervisor, sound_sink=sink, clock=clock,
    )
    yield dispatcher, sender, sink, clock
    supervisor.close()


def _alert(store, alerts, *, event_type="void", severity="suspicious", amount=150):
    event = make_event(event_type=event_type, amount=amount, timestamp="2026-03-02T14:05:00Z")
    store.insert(event)
    match = RuleMatch(rule_id=f"rule_{event_type}", severity=severity, message=f"{event_type} alert")
    return alerts.record(event, [match])[0]


class TestDeliver:
    def test_void_alert_creates_critical_notification(self, parts, store):
        dispatcher, sender, sink, clock = parts
        store.register_token(OWNER, "tok-1")
        alert = _alert(store, dispatcher.alerts)

        n = dispatcher.dispatch(alert, OWNER)
        dispatcher.supervisor.join(timeout=5)

        assert n.severity == "critical"
        assert n.type == "event_alert"
        assert n.is_read is False
        assert store.unread_count(OWNER) == 1
        assert sink.played == [(OWNER, "alert")]
        assert sender.sent[0]["notification"]["title"] == "Critical Security Alert"
        assert store.find_alert(*alert.key).sent_at == clock.now

    def test_published_to_owner(self, parts, store):
        dispatcher = parts[0]
        sub = dispatcher.bridge.subscribe(NOTIFICATIONS_TOPIC, OWNER)
        n = dispatcher.dispatch(_alert(store, dispatcher.alerts), OWNER)
        assert sub.get(timeout=1) == n.to_dict()
        sub.cancel()

    def test_no_token_no_push(self, parts, store):
        dispatcher, sender, _, _ = parts
        assert dispatcher.dispatch(_alert(store, dispatcher.alerts), OWNER) is not None
        dispatcher.supervisor.join(timeout=5)
        assert sender.sent == []

    def test_push_disabled(self, parts, store):
        dispatcher, sender, _, _ = parts
        store.register_token(OWNER, "tok-1")
        save_preferences(store, OWNER, NotificationPreferences(push_enabled=False))
        dispatcher.dispatch(_alert(store, dispatcher.alerts), OWNER)
        dispatcher.supervisor.join(timeout=5)
        assert sender.sent == []

    def test_push_failure_keeps_notification(self, store, settings):
        clock = FixedClock("2026-03-02T14:05:00Z")
        sender = FailingPushSender()
        supervisor = TaskSupervisor(max_workers=1, timeout=2.0)
        alerts = AlertManager(store, settings)
        dispatcher = NotificationDispatcher(
            store, RealtimeBridge(), alerts, settings=settings,
            push_sender=sender, supervisor=supervisor, clock=clock,
        )
        store.register_token(OWNER, "tok-1")
        alert = _alert(store, alerts)
        n = dispatcher.dispatch(alert, OWNER)
        supervisor.join(timeout=5)
        supervisor.close()
        assert sender.attempts == 1
        assert store.get_notification(n.id) is not None
        assert not store.find_alert(*alert.key).is_open
        assert supervisor.outcomes[0].ok is False

    def test_sound_type_none_still_delivers(self, parts, store):
        dispatcher, _, sink, _ = parts
        save_preferences(store, OWNER, NotificationPreferences(sound_type="none"))
        assert dispatcher.dispatch(_alert(store, dispatcher.alerts), OWNER) is not None
        assert sink.played == []


class TestGates:
    def test_critical_only_suppresses_warning(self, parts, store):
        dispatcher = parts[0]
        save_preferences(store, OWNER, NotificationPreferences(severity_filter="critical_only"))
        alert = _alert(store, dispatcher.alerts, event_type="refund", severity="warn")
        assert dispatcher.dispatch(alert, OWNER) is None
        assert store.unread_count(OWNER) == 0
        assert store.find_alert(*alert.key).is_open

    def test_warning_and_critical_suppresses_info(self, parts, store):
        dispatcher = parts[0]
        save_preferences(store, OWNER, NotificationPreferences(severity_filter="warning_and_critical"))
        alert = _alert(store, dispatcher.alerts, event_type="transaction", severity="info", amount=600)
        assert dispatcher.dispatch(alert, OWNER) is None

    def test_muted_type_creates_nothing(self, parts, store):
        dispatcher, sender, sink, _ = parts
        store.register_token(OWNER, "tok-1")
        save_preferences(store, OWNER, NotificationPreferences(muted_event_types={"void"}))
        alert = _alert(store, dispatcher.alerts)
        assert dispatcher.dispatch(alert, OWNER) is None
        dispatcher.supervisor.join(timeout=5)
        assert store.list_notifications(OWNER) == []
        assert sender.sent == [] and sink.played == []
        assert store.find_alert(*alert.key).is_open

    def test_quiet_hours_keep_record_skip_noise(self, parts, store):
        dispatcher, sender, sink, clock = parts
        clock.set("2026-03-02T23:30:00Z")
        store.register_token(OWNER, "tok-1")
        save_preferences(store, OWNER, NotificationPreferences(
            quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="06:00",
        ))
        alert = _alert(store, dispatcher.alerts)
        n = dispatcher.dispatch(alert, OWNER)
        dispatcher.supervisor.join(timeout=5)
        assert n is not None
        assert store.unread_count(OWNER) == 1
        assert sender.sent == []
        assert sink.played == []
        assert not store.find_alert(*alert.key).is_open

    def test_bad_preferences_fall_back_to_all(self, parts, store):
        dispatcher = parts[0]
        store.put_preferences_blob(OWNER, "not json at all")
        alert = _alert(store, dispatcher.alerts, event_type="transaction", severity="info", amount=600)
        assert dispatcher.dispatch(alert, OWNER) is not None

    @pytest.mark.parametrize("blob", ['{"quiet_hours_start": null}', '{"quiet_hours_end": 6}'])
    def test_null_or_numeric_quiet_hours_still_deliver(self, parts, store, blob):
        dispatcher = parts[0]
        store.put_preferences_blob(OWNER, blob)
        assert dispatcher.dispatch(_alert(store, dispatcher.alerts), OWNER) is not None
        assert store.unread_count(OWNER) == 1


class TestNotifySystem:
    def test_system_message(self, parts, store):
        dispatcher = parts[0]
        n = dispatcher.notify_system(OWNER, "Store connected", severity="info")
        assert n.type == "system"
        assert store.unread_count(OWNER) == 1

    def test_filtered_by_severity(self, parts, store):
        dispatcher = parts[0]
        save_preferences(store, OWNER, NotificationPreferences(severity_filter="critical_only"))
        assert dispatcher.notify_system(OWNER, "FYI", severity="info") is None

    def test_ignores_muting(self, parts, store):
        dispatcher = parts[0]
        save_preferences(store, OWNER, NotificationPreferences(muted_event_types={"system"}))
        assert dispatcher.notify_system(OWNER, "hello", severity="warn") is not None
