"""Detector - evaluates one incoming Event against the store's active rules.

Every applicable rule is turned into its check variant and run on a small
thread pool; checks are independent, so a slow or failing lookback for one
rule never changes the outcome of another.  Results come back in catalog
order, which keeps ``evaluate`` deterministic for a fixed store snapshot.

Absence checks look ahead of the triggering event.  When their forward
window has not elapsed yet they are parked and re-run by
``flush_deferred`` once the window closes, so they never fire early.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from src.analyzer.catalog import RuleCatalog
from src.analyzer.checks import Check, Deferred, build_check
from src.contracts.event import Event
from src.contracts.rule import RuleMatch
from src.shared.config_loader import Settings
from src.shared.errors import ConfigError, StoreError
from src.shared.timeouts import call_with_timeout
from src.storage.base import EventStore

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StoreLookback:
    """Windowed queries for one store, each bounded by timeout and retry."""

    def __init__(self, store: EventStore, store_id: str, settings: Settings):
        self._store = store
        self._store_id = store_id
        self._settings = settings

    def _call(self, fn, event_type: str, start: datetime, end: datetime):
        s = self._settings
        return call_with_timeout(
            fn, self._store_id, event_type, start, end,
            timeout=s.store_timeout_sec,
            retries=s.retries,
            backoff=s.retry_backoff_sec,
            label=f"{fn.__name__}({self._store_id}, {event_type})",
        )

    def count(self, event_type: str, start: datetime, end: datetime) -> int:
        return self._call(self._store.count, event_type, start, end)

    def exists(self, event_type: str, start: datetime, end: datetime) -> bool:
        return self._call(self._store.exists, event_type, start, end)


class RuleEvaluator:
    """``evaluate(event) -> list[RuleMatch]`` plus deferred absence checks."""

    def __init__(
        self,
        catalog: RuleCatalog,
        store: EventStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.catalog = catalog
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, self.settings.evaluator_workers), thread_name_prefix="rule"
        )
        self._pending: list[tuple[datetime, int, Event, str]] = []
        self._pending_keys: set[tuple[str, str]] = set()
        self._pending_lock = threading.Lock()
        self._seq = itertools.count()

    # ═══════════════════════════════════════════════════════════════════════
    #  Public API
    # ═══════════════════════════════════════════════════════════════════════

    def evaluate(self, event: Event) -> list[RuleMatch]:
        """Run every active rule of the event's store against *event*.

        Returns one RuleMatch per matching rule, in catalog order.  Rules
        whose lookback fails are logged and skipped; absence rules whose
        forward window is still open are deferred.
        """
        checks = self._checks_for(event)
        if not checks:
            return []

        now = self.clock()
        lookback = StoreLookback(self.store, event.store_id, self.settings)
        futures = [self._pool.submit(self._run, check, event, lookback, now) for check in checks]

        matches: list[RuleMatch] = []
        for check, future in zip(checks, futures):
            outcome = future.result()
            if isinstance(outcome, Deferred):
                self._defer(outcome.due, event, check.rule_id)
            elif outcome is not None:
                matches.append(outcome)

        log.debug("Event %s (%s): %d rules checked, %d matched",
                  event.id, event.event_type, len(checks), len(matches))
        return matches

    def flush_deferred(self, now: datetime | None = None) -> list[tuple[Event, list[RuleMatch]]]:
        """Re-run parked checks whose window has closed by *now*.

        Returns ``(event, matches)`` pairs for the events whose checks
        resolved to a match, in due-time order.
        """
        now = now or self.clock()
        due: list[tuple[Event, str]] = []
        with self._pending_lock:
            while self._pending and self._pending[0][0] <= now:
                _, _, event, rule_id = heapq.heappop(self._pending)
                self._pending_keys.discard((event.id, rule_id))
                due.append((event, rule_id))

        resolved: dict[str, tuple[Event, list[RuleMatch]]] = {}
        for event, rule_id in due:
            rule = self.catalog.get(rule_id)
            if rule is None or not rule.is_active:
                log.info("Deferred rule %s for event %s dropped: rule no longer active", rule_id, event.id)
                continue
            check = build_check(rule)
            lookback = StoreLookback(self.store, event.store_id, self.settings)
            outcome = self._run(check, event, lookback, now)
            if isinstance(outcome, Deferred):
                self._defer(outcome.due, event, rule_id)
            elif outcome is not None:
                resolved.setdefault(event.id, (event, []))[1].append(outcome)
        return list(resolved.values())

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def next_due(self) -> datetime | None:
        with self._pending_lock:
            return self._pending[0][0] if self._pending else None

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    # ═══════════════════════════════════════════════════════════════════════
    #  Internals
    # ═══════════════════════════════════════════════════════════════════════

    def _checks_for(self, event: Event) -> list[Check]:
        checks: list[Check] = []
        for rule in self.catalog.list_active(event.store_id):
            try:
                check = build_check(rule)
            except ConfigError as exc:
                log.error("Rule %s skipped: %s", rule.id, exc)
                continue
            if check.applies(event):
                checks.append(check)
        return checks

    @staticmethod
    def _run(check: Check, event: Event, lookback: StoreLookback, now: datetime) -> RuleMatch | Deferred | None:
        try:
            return check.evaluate(event, lookback, now)
        except StoreError as exc:
            log.warning("Rule %s skipped for event %s: lookback failed: %s", check.rule_id, event.id, exc)
        except (ConfigError, KeyError, TypeError, ValueError) as exc:
            log.error("Rule %s skipped for event %s: bad parameters: %s", check.rule_id, event.id, exc)
        return None

    def _defer(self, due: datetime, event: Event, rule_id: str) -> None:
        key = (event.id, rule_id)
        with self._pending_lock:
            if key in self._pending_keys:
                return
            self._pending_keys.add(key)
            heapq.heappush(self._pending, (due, next(self._seq), event, rule_id))
        log.debug("Rule %s for event %s deferred until %s", rule_id, event.id, due.isoformat())
