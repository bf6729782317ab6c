"""Contracts - canonical data structures shared by all modules."""

from src.contracts.alert import DEFAULT_CHANNELS, Alert
from src.contracts.enums import (
    Channel,
    EventSeverity,
    NotificationSeverity,
    RuleKind,
    SeverityFilter,
    SoundType,
    to_notification_severity,
)
from src.contracts.event import Event, format_ts, parse_ts
from src.contracts.notification import Notification, NotificationPreferences
from src.contracts.rule import WILDCARD, Rule, RuleMatch

__all__ = [
    "Alert",
    "Channel",
    "DEFAULT_CHANNELS",
    "Event",
    "EventSeverity",
    "Notification",
    "NotificationPreferences",
    "NotificationSeverity",
    "Rule",
    "RuleKind",
    "RuleMatch",
    "SeverityFilter",
    "SoundType",
    "WILDCARD",
    "format_ts",
    "parse_ts",
    "to_notification_severity",
]
