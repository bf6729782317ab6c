"""User-facing notification feed: list, unread count, read markers."""

from __future__ import annotations

import logging

from src.contracts.notification import Notification
from src.realtime import NOTIFICATIONS_TOPIC, RealtimeBridge

log = logging.getLogger(__name__)

EPHEMERAL_TYPES = frozenset({"test", "mock"})


class NotificationFeed:
    def __init__(self, store, bridge: RealtimeBridge | None = None):
        self.store = store
        self.bridge = bridge

    def list(self, user_id: str, limit: int = 50) -> list[Notification]:
        return self.store.list_notifications(user_id, limit)

    def unread_count(self, user_id: str) -> int:
        return self.store.unread_count(user_id)

    def mark_as_read(self, notification_id: str) -> Notification | None:
        """Flip ``is_read``; nothing else about the notification changes."""
        if not self.store.mark_read(notification_id):
            log.warning("mark_as_read: notification %s not found", notification_id)
            return None
        notification = self.store.get_notification(notification_id)
        if notification is not None and self.bridge is not None:
            self.bridge.publish(NOTIFICATIONS_TOPIC, notification.user_id, notification.to_dict())
        return notification

    def mark_all_as_read(self, user_id: str) -> int:
        changed = self.store.mark_all_read(user_id)
        log.info("Marked %d notifications read for %s", changed, user_id)
        return changed

    def delete_test_notification(self, notification_id: str) -> bool:
        """Delete a test/mock notification.  Real notifications are never deleted.

        Raises:
            PermissionError: the notification is not of an ephemeral type.
        """
        notification = self.store.get_notification(notification_id)
        if notification is None:
            return False
        if notification.type not in EPHEMERAL_TYPES:
            raise PermissionError(f"notification {notification_id} is not a test notification")
        return self.store.delete_notification(notification_id)
