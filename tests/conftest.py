"""Shared fixtures for POS Guardian tests."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from src.analyzer.catalog import RuleCatalog
from src.contracts.event import Event, parse_ts
from src.contracts.rule import Rule
from src.shared.config_loader import Settings
from src.storage.memory import MemoryStore

BASE_TS = "2026-03-02T14:00:00Z"
CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

_ids = itertools.count(1)

# ── Helper: create Event / Rule with sensible defaults ──────────────────


def make_event(
    *,
    event_type: str = "transaction",
    timestamp: str = BASE_TS,
    store_id: str = "store-1",
    event_id: str | None = None,
    severity: str = "info",
    device_id: str | None = "pos-1",
    **payload: Any,
) -> Event:
    return Event(
        id=event_id or f"evt-{next(_ids):05d}",
        store_id=store_id,
        event_type=event_type,
        captured_at=parse_ts(timestamp),
        severity=severity,
        device_id=device_id,
        payload=payload,
    )


def make_rule(
    rule_id: str,
    kind: str = "threshold",
    *,
    store_id: str = "*",
    is_active: bool = True,
    **parameters: Any,
) -> Rule:
    return Rule(
        id=rule_id,
        store_id=store_id,
        name=rule_id.replace("_", " "),
        kind=kind,
        parameters=parameters,
        is_active=is_active,
    )


def void_rule() -> Rule:
    return make_rule(
        "high_void", "threshold", check="value", event_type="void",
        field="amount", operator=">", value=100, severity="suspicious",
        message="Void transaction exceeds $100: ${amount}",
    )


def login_rule() -> Rule:
    return make_rule(
        "multiple_failed_logins", "threshold", event_type="login_failure",
        threshold_value=3, time_window_minutes=60, severity="suspicious",
        message="Multiple failed login attempts detected: {count} in the last hour.",
    )


def drawer_rule() -> Rule:
    return make_rule(
        "drawer_open_no_transaction", "pattern", event_type="drawer_open",
        sibling_event_type="transaction", window_seconds=10, severity="warn",
        message="Drawer opened without a transaction within 10 seconds.",
    )


# ── Timestamp helpers ────────────────────────────────────────────────────


def ts_offset(base: str = BASE_TS, seconds: float = 0) -> str:
    """Return an ISO-8601 timestamp offset from *base* by *seconds*."""
    dt = datetime.fromisoformat(base.replace("Z", "+00:00"))
    dt += timedelta(seconds=seconds)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: str = BASE_TS):
        self.now = parse_ts(start)

    def __call__(self) -> datetime:
        return self.now

    def set(self, ts: str) -> None:
        self.now = parse_ts(ts)

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_timeout_sec=2.0,
        push_timeout_sec=2.0,
        retries=1,
        retry_backoff_sec=0.0,
        store_owners={"store-1": ["owner-1"]},
    )


@pytest.fixture
def clock() -> FixedClock:
    # Far enough after BASE_TS that forward windows have closed.
    return FixedClock(ts_offset(seconds=3600))


@pytest.fixture
def catalog() -> RuleCatalog:
    return RuleCatalog([drawer_rule(), void_rule(), login_rule()])

