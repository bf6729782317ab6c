"""Realtime - live fan-out of events and notifications to subscribers."""

from src.realtime.bridge import RealtimeBridge, Subscription

EVENTS_TOPIC = "events"
NOTIFICATIONS_TOPIC = "notifications"

__all__ = ["EVENTS_TOPIC", "NOTIFICATIONS_TOPIC", "RealtimeBridge", "Subscription"]
