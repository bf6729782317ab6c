"""Tests for src.alerting.manager - idempotent Alert recording."""

from __future__ import annotations

import threading

import pytest

from src.alerting.manager import AlertManager
from src.contracts.event import parse_ts
from src.contracts.rule import RuleMatch
from src.shared.errors import EventNotFoundError
from src.storage.memory import MemoryStore
from tests.conftest import make_event, ts_offset

VOID_MATCH = RuleMatch(rule_id="high_void", severity="suspicious", message="Void transaction exceeds $100: $150")


@pytest.fixture
def manager(store, settings):
    return AlertManager(store, settings)


class TestRecord:
    def test_one_open_alert_per_match(self, manager, store):
        e = make_event(event_type="void", amount=150)
        store.insert(e)
        second = RuleMatch(rule_id="after_hours_activity", severity="info", message="late")
        alerts = manager.record(e, [VOID_MATCH, second])
        assert [a.rule_id for a in alerts] == ["high_void", "after_hours_activity"]
        assert all(a.is_open for a in alerts)
        assert alerts[0].event_id == e.id
        assert alerts[0].event_type == "void"
        assert alerts[0].channels == frozenset({"email", "push"})

    def test_no_matches(self, manager):
        assert manager.record(make_event(), []) == []

    def test_idempotent(self, manager, store):
        e = make_event(event_type="void", amount=150)
        store.insert(e)
        assert len(manager.record(e, [VOID_MATCH])) == 1
        assert manager.record(e, [VOID_MATCH]) == []
        assert len(store.list_alerts(e.id)) == 1

    def test_concurrent_records_create_one_alert(self, manager, store):
        e = make_event(event_type="void", amount=150)
        store.insert(e)
        created: list = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            created.extend(manager.record(e, [VOID_MATCH]))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(created) == 1
        assert len(store.list_alerts(e.id)) == 1

    def test_resolves_by_natural_key(self, manager, store):
        persisted = make_event(event_type="void", event_id="db-row-1", amount=150)
        store.insert(persisted)
        incoming = make_event(event_type="void", event_id="ingest-42", amount=150)
        alerts = manager.record(incoming, [VOID_MATCH])
        assert alerts[0].event_id == "db-row-1"

    def test_same_second_events_keep_their_own_alerts(self, manager, store):
        v1 = make_event(event_type="void", event_id="v1", amount=150, timestamp="2026-03-02T14:05:00Z")
        v2 = make_event(event_type="void", event_id="v2", amount=175, timestamp="2026-03-02T14:05:00Z")
        store.insert(v1)
        store.insert(v2)
        assert [a.event_id for a in manager.record(v1, [VOID_MATCH])] == ["v1"]
        assert [a.event_id for a in manager.record(v2, [VOID_MATCH])] == ["v2"]
        assert len(store.list_alerts()) == 2

    def test_missing_event_raises_and_logs(self, manager, caplog):
        e = make_event(event_type="void", amount=150)
        with caplog.at_level("ERROR", logger="src.alerting.manager"):
            with pytest.raises(EventNotFoundError) as exc_info:
                manager.record(e, [VOID_MATCH])
        assert exc_info.value.rule_ids == ["high_void"]
        assert e.id in caplog.text
        assert "high_void" in caplog.text

    def test_configured_channels(self, store, settings):
        settings.default_channels = ("sms",)
        e = make_event(event_type="void")
        store.insert(e)
        alerts = AlertManager(store, settings).record(e, [VOID_MATCH])
        assert alerts[0].channels == frozenset({"sms"})


class TestClose:
    def test_close_sets_sent_at_once(self, manager, store):
        e = make_event(event_type="void")
        store.insert(e)
        alert = manager.record(e, [VOID_MATCH])[0]
        first = parse_ts(ts_offset(seconds=5))
        manager.close(alert, first)
        manager.close(alert, parse_ts(ts_offset(seconds=50)))
        assert alert.sent_at == first
        assert store.find_alert(e.id, "high_void").sent_at == first
        assert manager.open_alerts() == []

    def test_open_alerts_by_store(self, manager):
        store = manager.store
        assert isinstance(store, MemoryStore)
        e1, e2 = make_event(), make_event(store_id="store-2")
        store.insert(e1)
        store.insert(e2)
        manager.record(e1, [VOID_MATCH])
        manager.record(e2, [VOID_MATCH])
        assert len(manager.open_alerts()) == 2
        assert [a.event_id for a in manager.open_alerts("store-2")] == [e2.id]
