"""Tests for src.analyzer.lanes - per-store ordering and isolation."""

from __future__ import annotations

import threading

import pytest

from src.analyzer.lanes import StoreLanes
from tests.conftest import make_event, ts_offset


class Recorder:
    """Handler that records (store, offset) and can hold one store's lane."""

    def __init__(self, hold_store: str | None = None):
        self.seen: list[tuple[str, str]] = []
        self.gate = threading.Event()
        self.hold_store = hold_store
        self._lock = threading.Lock()

    def __call__(self, event):
        if event.store_id == self.hold_store:
            self.gate.wait(5)
        if event.event_type == "boom":
            raise RuntimeError("handler bug")
        with self._lock:
            self.seen.append((event.store_id, event.id))


@pytest.fixture
def recorder():
    return Recorder(hold_store="store-1")


class TestOrdering:
    def test_queued_events_handled_in_capture_order(self, recorder):
        lanes = StoreLanes(recorder)
        lanes.submit(make_event(event_id="t00", timestamp=ts_offset(seconds=0)))
        for sec in (30, 10, 20):
            lanes.submit(make_event(event_id=f"t{sec}", timestamp=ts_offset(seconds=sec)))
        recorder.gate.set()
        lanes.join()
        lanes.close()
        assert [eid for _, eid in recorder.seen] == ["t00", "t10", "t20", "t30"]

    def test_stores_run_independently(self, recorder):
        done = threading.Event()

        def handler(event):
            recorder(event)
            if event.store_id == "store-2":
                done.set()

        lanes = StoreLanes(handler)
        lanes.submit(make_event(event_id="s1", store_id="store-1"))
        lanes.submit(make_event(event_id="s2", store_id="store-2"))
        # store-1 is still blocked on the gate
        assert done.wait(5)
        assert recorder.seen == [("store-2", "s2")]
        recorder.gate.set()
        lanes.join()
        lanes.close()
        assert lanes.stores == ["store-1", "store-2"]


class TestLifecycle:
    def test_handler_failure_does_not_stop_lane(self):
        rec = Recorder()
        lanes = StoreLanes(rec)
        lanes.submit(make_event(event_type="boom", event_id="b1", timestamp=ts_offset(seconds=0)))
        lanes.submit(make_event(event_id="ok", timestamp=ts_offset(seconds=1)))
        assert lanes.join() == 1
        lanes.close()
        assert rec.seen == [("store-1", "ok")]
        assert lanes.failures == {"store-1": 1}

    def test_join_reports_only_new_failures(self):
        rec = Recorder()
        lanes = StoreLanes(rec)
        lanes.submit(make_event(event_type="boom", store_id="store-2"))
        assert lanes.join() == 1
        lanes.submit(make_event(store_id="store-2"))
        assert lanes.join() == 0
        lanes.close()

    def test_close_drains_queue(self):
        rec = Recorder()
        lanes = StoreLanes(rec)
        for i in range(20):
            lanes.submit(make_event(timestamp=ts_offset(seconds=i)))
        lanes.close()
        assert len(rec.seen) == 20

    def test_submit_after_close(self):
        lanes = StoreLanes(lambda e: None)
        lanes.close()
        with pytest.raises(RuntimeError):
            lanes.submit(make_event())
