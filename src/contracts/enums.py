"""Canonical enumerations shared by the evaluator, alerting and notifier."""

from __future__ import annotations

from enum import Enum


class EventSeverity(str, Enum):
    """Severity assigned to events by the ingester and to rule matches."""

    INFO = "info"
    WARN = "warn"
    SUSPICIOUS = "suspicious"


class NotificationSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RuleKind(str, Enum):
    THRESHOLD = "threshold"
    PATTERN = "pattern"
    ML = "ml"


class SeverityFilter(str, Enum):
    ALL = "all"
    WARNING_AND_CRITICAL = "warning_and_critical"
    CRITICAL_ONLY = "critical_only"


class SoundType(str, Enum):
    DEFAULT = "default"
    CHIME = "chime"
    ALERT = "alert"
    NONE = "none"


class Channel(str, Enum):
    """Observed alert channels.  Alerts keep channels as plain strings."""

    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"


KNOWN_CHANNELS: frozenset[str] = frozenset(c.value for c in Channel)

_NOTIFICATION_SEVERITY = {
    EventSeverity.SUSPICIOUS.value: NotificationSeverity.CRITICAL.value,
    EventSeverity.WARN.value: NotificationSeverity.WARNING.value,
    EventSeverity.INFO.value: NotificationSeverity.INFO.value,
}


def to_notification_severity(severity: str) -> str:
    """Map a rule/event severity (info|warn|suspicious) to info|warning|critical."""
    if severity in {s.value for s in NotificationSeverity}:
        return severity
    return _NOTIFICATION_SEVERITY.get(severity, NotificationSeverity.INFO.value)
