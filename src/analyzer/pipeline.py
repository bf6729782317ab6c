"""Pipeline - orchestrator: persist -> publish -> evaluate -> record -> dispatch.

``EventPipeline.ingest`` is the per-event path.  ``run_pipeline`` replays a
CSV or JSONL file through per-store lanes; ``watch_pipeline`` tails a JSONL
file and feeds new lines as they appear.
"""

from __future__ import annotations

import csv
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.alerting.manager import AlertManager
from src.analyzer.catalog import RuleCatalog
from src.analyzer.detector import Clock, RuleEvaluator, utc_now
from src.analyzer.lanes import StoreLanes
from src.contracts.alert import Alert
from src.contracts.event import Event
from src.contracts.notification import Notification
from src.contracts.rule import RuleMatch
from src.notifier.dispatcher import NotificationDispatcher
from src.notifier.feed import NotificationFeed
from src.notifier.push import HttpPushSender, LoggingPushSender, PushSender
from src.notifier.sound import SoundSink
from src.realtime import EVENTS_TOPIC, RealtimeBridge
from src.shared.config_loader import Settings, load_settings
from src.shared.errors import DuplicateEventError, EventNotFoundError, StoreError
from src.shared.timeouts import call_with_timeout
from src.storage.memory import MemoryStore
from src.storage.sqlite import SQLiteStore

log = logging.getLogger(__name__)

# "now" for replays: earlier than any captured event, so every forward
# window is deferred until the replay has loaded all of its data.
REPLAY_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_END_OF_TIME = datetime(9999, 1, 1, tzinfo=timezone.utc)


@dataclass(slots=True)
class IngestResult:
    event: Event
    stored: bool                                  # False when the id was already persisted
    matches: list[RuleMatch] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)
    late_alerts: list[Alert] = field(default_factory=list)   # from deferred checks


# ═══════════════════════════════════════════════════════════════════════════
#  Event loaders
# ═══════════════════════════════════════════════════════════════════════════

def _parse_event(row: dict[str, Any]) -> Event:
    """Build an Event from a dict (row from CSV DictReader or JSON object)."""
    row = dict(row)
    if isinstance(row.get("payload"), str):
        row["payload"] = json.loads(row["payload"]) if row["payload"] else {}
    for key in ("device_id", "amount", "employee_id", "description"):
        if row.get(key) == "":
            row.pop(key)
    return Event.from_dict(row)


def load_events_csv(path: str) -> list[Event]:
    """Load events from a CSV file (``payload`` column holds JSON)."""
    events: list[Event] = []
    with open(path, encoding="utf-8", newline="") as fh:
        reader = csv.DictReader(fh)
        for line_no, row in enumerate(reader, 2):
            try:
                events.append(_parse_event(row))
            except (KeyError, ValueError) as exc:
                log.warning("Skipping CSV line %d: %s", line_no, exc)
    log.info("Loaded %d events from CSV: %s", len(events), path)
    return events


def load_events_jsonl(path: str) -> list[Event]:
    """Load events from a JSONL (one JSON object per line) file."""
    events: list[Event] = []
    with open(path, encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(_parse_event(json.loads(line)))
            except (KeyError, ValueError) as exc:
                log.warning("Skipping JSONL line %d: %s", line_no, exc)
    log.info("Loaded %d events from JSONL: %s", len(events), path)
    return events


def load_events(path: str) -> list[Event]:
    """Auto-detect format by file extension and load events."""
    if Path(path).suffix in (".jsonl", ".ndjson"):
        return load_events_jsonl(path)
    return load_events_csv(path)


# ═══════════════════════════════════════════════════════════════════════════
#  Pipeline core
# ═══════════════════════════════════════════════════════════════════════════

class EventPipeline:
    """Wires the store, evaluator, alert manager, dispatcher and bridge.

    Parameters
    ──────────
    clock        - wall clock for notification and delivery timestamps
    event_clock  - "now" for forward-looking windows; defaults to ``clock``
    """

    def __init__(
        self,
        store,
        catalog: RuleCatalog,
        settings: Settings | None = None,
        *,
        bridge: RealtimeBridge | None = None,
        push_sender: PushSender | None = None,
        sound_sink: SoundSink | None = None,
        clock: Clock = utc_now,
        event_clock: Clock | None = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.bridge = bridge or RealtimeBridge.from_settings(self.settings)
        self.evaluator = RuleEvaluator(catalog, store, self.settings, clock=event_clock or clock)
        self.alerts = AlertManager(store, self.settings)
        self.dispatcher = NotificationDispatcher(
            store, self.bridge, self.alerts,
            settings=self.settings, push_sender=push_sender, sound_sink=sound_sink, clock=clock,
        )
        self.feed = NotificationFeed(store, self.bridge)

    def ingest(self, event: Event) -> IngestResult:
        s = self.settings
        try:
            call_with_timeout(
                self.store.insert, event,
                timeout=s.store_timeout_sec, retries=s.retries, backoff=s.retry_backoff_sec,
                label=f"insert({event.id})",
            )
            stored = True
        except DuplicateEventError:
            # Re-delivered event: evaluate again, alert idempotency absorbs repeats.
            log.info("Event %s already stored - re-evaluating", event.id)
            stored = False

        result = IngestResult(event=event, stored=stored)
        if stored:
            self.bridge.publish(EVENTS_TOPIC, event.store_id, event.to_dict())

        result.matches = self.evaluator.evaluate(event)
        result.alerts, result.notifications = self._record_and_notify(event, result.matches)
        result.late_alerts = self.flush_deferred()
        return result

    def flush_deferred(self, now: datetime | None = None) -> list[Alert]:
        """Resolve deferred checks that are due; record and dispatch their alerts."""
        created: list[Alert] = []
        for event, matches in self.evaluator.flush_deferred(now):
            alerts, _ = self._record_and_notify(event, matches)
            created.extend(alerts)
        return created

    def redeliver_open_alerts(self, store_id: str | None = None) -> list[Notification]:
        """Dispatch every Alert that is still open (gated or failed earlier)."""
        delivered: list[Notification] = []
        for alert in self.alerts.open_alerts(store_id):
            event = self.store.get(alert.event_id)
            if event is None:
                log.error("Open alert %s references unknown event %s", alert.id, alert.event_id)
                continue
            delivered.extend(self._notify_owners(alert, event.store_id))
        log.info("Redelivery: %d notifications", len(delivered))
        return delivered

    def close(self) -> None:
        self.dispatcher.supervisor.join(timeout=self.settings.push_timeout_sec)
        self.dispatcher.supervisor.close()
        self.evaluator.close()

    # ── internals ────────────────────────────────────────────────────────

    def _record_and_notify(self, event: Event, matches: list[RuleMatch]) -> tuple[list[Alert], list[Notification]]:
        if not matches:
            return [], []
        try:
            alerts = self.alerts.record(event, matches)
        except EventNotFoundError:
            return [], []
        notifications: list[Notification] = []
        for alert in alerts:
            notifications.extend(self._notify_owners(alert, event.store_id))
        return alerts, notifications

    def _notify_owners(self, alert: Alert, store_id: str) -> list[Notification]:
        owners = self.settings.owners_of(store_id)
        if not owners:
            log.warning("Store %s has no owners configured - alert %s stays open", store_id, alert.id)
            return []
        out: list[Notification] = []
        for user_id in owners:
            try:
                n = self.dispatcher.dispatch(alert, user_id)
            except StoreError as exc:
                log.error("Dispatch of alert %s to %s failed: %s", alert.id, user_id, exc)
                continue
            if n is not None:
                out.append(n)
        return out


# ═══════════════════════════════════════════════════════════════════════════
#  Assembly
# ═══════════════════════════════════════════════════════════════════════════

def build_pipeline(
    config_dir: str = "config",
    db_path: str | None = None,
    event_clock: Clock | None = None,
) -> EventPipeline:
    """Build a pipeline from ``<config_dir>/settings.yaml`` and ``rules.yaml``."""
    settings = load_settings(config_dir)
    catalog = RuleCatalog.from_yaml(f"{config_dir}/rules.yaml")
    store = SQLiteStore(db_path, timeout=settings.store_timeout_sec) if db_path else MemoryStore()
    if settings.push_endpoint:
        sender: PushSender = HttpPushSender(
            settings.push_endpoint, settings.push_api_key, timeout=settings.push_timeout_sec
        )
    else:
        sender = LoggingPushSender()
    return EventPipeline(store, catalog, settings, push_sender=sender, event_clock=event_clock)


def _summary(results: list[IngestResult]) -> dict[str, int]:
    return {
        "events": len(results),
        "stored": sum(1 for r in results if r.stored),
        "matches": sum(len(r.matches) for r in results),
        "alerts": sum(len(r.alerts) + len(r.late_alerts) for r in results),
        "notifications": sum(len(r.notifications) for r in results),
        "failed": 0,
    }


def run_pipeline(
    input_path: str,
    config_dir: str = "config",
    db_path: str | None = None,
) -> dict[str, Any]:
    """Replay an event file through the pipeline.

    Stores run in parallel lanes; absence checks are resolved after every
    event has been loaded, so a sibling that appears later in the file
    still clears them.

    Returns
    ───────
    dict with keys: results (list of IngestResult), late_alerts, summary.
    ``summary["failed"]`` counts events whose processing raised.
    """
    events = load_events(input_path)
    if not events:
        log.warning("No events loaded from %s - nothing to evaluate.", input_path)
        return {"results": [], "late_alerts": [], "summary": _summary([])}

    pipeline = build_pipeline(config_dir, db_path, event_clock=lambda: REPLAY_EPOCH)
    results: list[IngestResult] = []
    guard = threading.Lock()

    def handle(event: Event) -> None:
        r = pipeline.ingest(event)
        with guard:
            results.append(r)

    lanes = StoreLanes(handle)
    try:
        for event in events:
            lanes.submit(event)
        failed = lanes.join()
        late = pipeline.flush_deferred(now=_END_OF_TIME)
    finally:
        lanes.close()
        pipeline.close()

    summary = _summary(results)
    summary["alerts"] += len(late)
    summary["failed"] = failed
    if failed:
        log.error("%d of %d events could not be processed", failed, len(events))
    log.info(
        "Pipeline complete: %d events (%d stored), %d matches, %d alerts, %d notifications",
        summary["events"], summary["stored"], summary["matches"], summary["alerts"], summary["notifications"],
    )
    return {"results": results, "late_alerts": late, "summary": summary}


# ═══════════════════════════════════════════════════════════════════════════
#  Watch mode (tail JSONL)
# ═══════════════════════════════════════════════════════════════════════════

def watch_pipeline(
    input_path: str,
    config_dir: str = "config",
    db_path: str | None = None,
    poll_interval_sec: float = 1.0,
) -> None:
    """Tail a JSONL file and ingest each new line as it appears.

    Blocks until interrupted (Ctrl+C).  Keeps a file offset and reads only
    newly appended lines; deferred checks are flushed on every poll.
    """
    pipeline = build_pipeline(config_dir, db_path)
    lanes = StoreLanes(pipeline.ingest)
    file_offset = os.path.getsize(input_path) if os.path.isfile(input_path) else 0
    total = 0

    print(f"Guardian watch mode -> {input_path}")
    print(f"  poll interval: {poll_interval_sec:.1f}s, starting at offset {file_offset}")
    print("  Press Ctrl+C to stop.")

    try:
        while True:
            new_events: list[Event] = []
            if os.path.isfile(input_path):
                current_size = os.path.getsize(input_path)
                if current_size < file_offset:
                    log.info("Watch: %s truncated - restarting from the top", input_path)
                    file_offset = 0
                if current_size > file_offset:
                    with open(input_path, encoding="utf-8") as fh:
                        fh.seek(file_offset)
                        for line in fh:
                            line = line.strip()
                            if not line:
                                continue
                            try:
                                new_events.append(_parse_event(json.loads(line)))
                            except (KeyError, ValueError) as exc:
                                log.debug("Skipping line: %s", exc)
                    file_offset = current_size

            for event in new_events:
                lanes.submit(event)
            if new_events:
                total += len(new_events)
                log.info("Watch: +%d new, %d total events", len(new_events), total)

            failed = lanes.join()
            if failed:
                log.error("Watch: %d events failed in this poll", failed)
            pipeline.flush_deferred()
            time.sleep(poll_interval_sec)
    except KeyboardInterrupt:
        print(f"\nWatch stopped. Total events ingested: {total}")
    finally:
        lanes.close()
        pipeline.flush_deferred()
        if pipeline.evaluator.pending_count:
            log.info("Watch: %d deferred checks still open at shutdown", pipeline.evaluator.pending_count)
        pipeline.close()
