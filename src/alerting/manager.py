"""AlertManager - turns RuleMatches into persisted, idempotent Alerts.

An Alert is keyed by ``(event_id, rule_id)``.  Concurrent or repeated
``record`` calls for the same pair produce exactly one row: writers for a
key are serialised through a lock table, and the store's uniqueness
constraint backs that up across processes.
"""

from __future__ import annotations

import logging
from datetime import datetime

from src.contracts.alert import Alert
from src.contracts.event import Event, parse_ts
from src.contracts.rule import RuleMatch
from src.shared.config_loader import Settings
from src.shared.errors import DuplicateAlertError, EventNotFoundError
from src.shared.locks import KeyedLocks
from src.shared.timeouts import call_with_timeout

log = logging.getLogger(__name__)


class AlertManager:
    def __init__(self, store, settings: Settings | None = None):
        self.store = store
        self.settings = settings or Settings()
        self._locks = KeyedLocks()

    def _call(self, fn, *args, label: str):
        s = self.settings
        return call_with_timeout(
            fn, *args,
            timeout=s.store_timeout_sec, retries=s.retries, backoff=s.retry_backoff_sec,
            label=label,
        )

    def record(self, event: Event, matches: list[RuleMatch]) -> list[Alert]:
        """Persist one open Alert per match and return the newly created ones.

        The originating event is resolved by its own id, then by its natural
        key (store, type, captured_at).  When it cannot be found the failure is
        logged and ``EventNotFoundError`` raised; it is not retried.
        """
        if not matches:
            return []

        persisted = self._resolve(event)
        if persisted is None:
            err = EventNotFoundError(event.id, [m.rule_id for m in matches])
            log.error("Cannot record alerts: %s", err)
            raise err

        created: list[Alert] = []
        for m in matches:
            alert = Alert(
                event_id=persisted.id,
                rule_id=m.rule_id,
                severity=m.severity,
                message=m.message,
                event_type=persisted.event_type,
                channels=frozenset(self.settings.default_channels),
            )
            with self._locks.hold(alert.key):
                if self.store.find_alert(*alert.key) is not None:
                    log.debug("Alert for %s already recorded", alert.key)
                    continue
                try:
                    self._call(self.store.insert_alert, alert, label=f"insert_alert({alert.key})")
                except DuplicateAlertError:
                    log.debug("Alert for %s inserted concurrently", alert.key)
                    continue
            log.info("Alert %s: rule=%s event=%s severity=%s",
                     alert.id, alert.rule_id, alert.event_id, alert.severity)
            created.append(alert)
        return created

    def _resolve(self, event: Event) -> Event | None:
        """Find the stored row for *event*.

        Several events can share a natural key (two voids in the same
        second); the row carrying the event's own id wins.  The natural-key
        lookup covers events persisted under a different id.
        """
        same = self._call(self.store.get, event.id, label=f"get({event.id})")
        if same is not None and (same.store_id, same.event_type, same.captured_at) == (
            event.store_id, event.event_type, event.captured_at,
        ):
            return same
        return self._call(
            self.store.find_by_natural_key, event.store_id, event.event_type, event.captured_at,
            label=f"find_by_natural_key({event.store_id}, {event.event_type})",
        )

    def open_alerts(self, store_id: str | None = None) -> list[Alert]:
        return self.store.open_alerts(store_id)

    def close(self, alert: Alert, sent_at: datetime) -> Alert:
        """Mark *alert* delivered.  Closing twice keeps the first timestamp."""
        if not alert.is_open:
            return alert
        sent_at = parse_ts(sent_at)
        self._call(self.store.mark_sent, alert.id, sent_at, label=f"mark_sent({alert.id})")
        alert.sent_at = sent_at
        return alert
