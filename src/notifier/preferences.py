"""Per-user preference gates: severity filter, muted types, quiet hours."""

from __future__ import annotations

import logging
from datetime import datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.contracts.enums import NotificationSeverity, SeverityFilter
from src.contracts.notification import NotificationPreferences, parse_hhmm
from src.shared.errors import StoreError

log = logging.getLogger(__name__)

_ALLOWED: dict[str, frozenset[str]] = {
    SeverityFilter.ALL.value: frozenset(s.value for s in NotificationSeverity),
    SeverityFilter.WARNING_AND_CRITICAL.value: frozenset(
        {NotificationSeverity.WARNING.value, NotificationSeverity.CRITICAL.value}
    ),
    SeverityFilter.CRITICAL_ONLY.value: frozenset({NotificationSeverity.CRITICAL.value}),
}


def load_preferences(store, user_id: str) -> NotificationPreferences:
    """Read the user's preferences, falling back to the permissive default.

    A store failure, a missing row or an unreadable blob all yield
    ``NotificationPreferences()`` (severity filter ``all``, quiet hours off)
    so a broken preference row never silences alerts.
    """
    try:
        blob = store.get_preferences_blob(user_id)
    except StoreError as exc:
        log.warning("Preferences for %s unavailable (%s) - using defaults", user_id, exc)
        return NotificationPreferences()
    try:
        return NotificationPreferences.from_blob(blob)
    except (ValueError, TypeError) as exc:
        log.warning("Preferences for %s unreadable (%s) - using defaults", user_id, exc)
        return NotificationPreferences()


def save_preferences(store, user_id: str, prefs: NotificationPreferences) -> None:
    store.put_preferences_blob(user_id, prefs.to_blob())


def passes_severity_filter(prefs: NotificationPreferences, severity: str) -> bool:
    return severity in _ALLOWED.get(prefs.severity_filter, _ALLOWED[SeverityFilter.ALL.value])


def is_muted(prefs: NotificationPreferences, event_type: str) -> bool:
    return bool(event_type) and event_type in prefs.muted_event_types


def _within(now: time, start: time, end: time) -> bool:
    """Inclusive start, exclusive end; wraps past midnight when start > end."""
    if start == end:
        return False
    if start < end:
        return start <= now < end
    return now >= start or now < end


def in_quiet_hours(prefs: NotificationPreferences, now: datetime) -> bool:
    """True if *now* falls inside the user's quiet hours, in their timezone."""
    if not prefs.quiet_hours_enabled:
        return False
    try:
        zone = ZoneInfo(prefs.timezone)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        log.warning("Unknown timezone %r in preferences - quiet hours evaluated in UTC", prefs.timezone)
        zone = ZoneInfo("UTC")
    local = now.astimezone(zone).time().replace(second=0, microsecond=0)
    return _within(local, parse_hhmm(prefs.quiet_hours_start), parse_hhmm(prefs.quiet_hours_end))
