"""NotificationDispatcher - Alert -> Notification for one owning user.

Gates, in order
───────────────
  1. severity filter    suppresses entirely
  2. muted event types  suppresses entirely
  3. quiet hours        keeps the in-app Notification, skips sound and push

A suppressed Alert stays open so a later redelivery can pick it up.  On
pass the Notification is stored and published live, the Alert is closed,
and push runs in the background; push failures never undo the record.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from src.alerting.manager import AlertManager
from src.contracts.alert import Alert
from src.contracts.enums import Channel, NotificationSeverity, to_notification_severity
from src.contracts.notification import Notification, NotificationPreferences
from src.notifier.preferences import in_quiet_hours, is_muted, load_preferences, passes_severity_filter
from src.notifier.push import LoggingPushSender, PushSender, TaskSupervisor
from src.notifier.sound import LoggingSoundSink, SoundSink, select_sound
from src.realtime import NOTIFICATIONS_TOPIC, RealtimeBridge
from src.shared.config_loader import Settings
from src.shared.errors import StoreError
from src.shared.timeouts import call_with_timeout

log = logging.getLogger(__name__)

EVENT_ALERT_TYPE = "event_alert"
SYSTEM_TYPE = "system"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    def __init__(
        self,
        store,
        bridge: RealtimeBridge,
        alerts: AlertManager,
        *,
        settings: Settings | None = None,
        push_sender: PushSender | None = None,
        supervisor: TaskSupervisor | None = None,
        sound_sink: SoundSink | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.bridge = bridge
        self.alerts = alerts
        self.settings = settings or Settings()
        self.push_sender = push_sender or LoggingPushSender()
        self.supervisor = supervisor or TaskSupervisor(
            max_workers=self.settings.push_workers, timeout=self.settings.push_timeout_sec
        )
        self.sound_sink = sound_sink or LoggingSoundSink()
        self.clock = clock

    # ── public ───────────────────────────────────────────────────────────

    def dispatch(self, alert: Alert, user_id: str) -> Notification | None:
        """Deliver *alert* to *user_id*; returns the Notification or None if gated."""
        prefs = load_preferences(self.store, user_id)
        severity = to_notification_severity(alert.severity)

        if not passes_severity_filter(prefs, severity):
            log.info("Alert %s suppressed for %s: severity %s below filter %s",
                     alert.id, user_id, severity, prefs.severity_filter)
            return None
        if is_muted(prefs, alert.event_type):
            log.info("Alert %s suppressed for %s: %s is muted", alert.id, user_id, alert.event_type)
            return None

        now = self.clock()
        notification = self._deliver(
            user_id, alert.message, severity, EVENT_ALERT_TYPE, prefs, now,
            push=Channel.PUSH.value in alert.channels,
        )
        self.alerts.close(alert, now)
        return notification

    def notify_system(
        self,
        user_id: str,
        message: str,
        severity: str = NotificationSeverity.INFO.value,
        type: str = SYSTEM_TYPE,
    ) -> Notification | None:
        """Synthetic notification (system notices, test messages).

        Same gates as alerts except muting, which only applies to event types.
        """
        prefs = load_preferences(self.store, user_id)
        severity = to_notification_severity(severity)
        if not passes_severity_filter(prefs, severity):
            log.info("System notification for %s suppressed by severity filter", user_id)
            return None
        return self._deliver(user_id, message, severity, type, prefs, self.clock(), push=True)

    # ── internals ────────────────────────────────────────────────────────

    def _deliver(self, user_id: str, message: str, severity: str, type: str,
                 prefs: NotificationPreferences, now: datetime, push: bool) -> Notification:
        quiet = in_quiet_hours(prefs, now)
        notification = Notification(
            user_id=user_id, message=message, severity=severity, type=type, created_at=now,
        )
        s = self.settings
        call_with_timeout(
            self.store.insert_notification, notification,
            timeout=s.store_timeout_sec, retries=s.retries, backoff=s.retry_backoff_sec,
            label=f"insert_notification({user_id})",
        )
        self.bridge.publish(NOTIFICATIONS_TOPIC, user_id, notification.to_dict())
        log.info("Notification %s -> %s [%s]%s", notification.id, user_id, severity,
                 " (quiet hours)" if quiet else "")

        if quiet:
            return notification

        sound = select_sound(prefs, severity)
        if sound:
            self.sound_sink.play(user_id, sound)
        if push and prefs.push_enabled:
            self._push(notification)
        return notification

    def _push(self, notification: Notification) -> None:
        try:
            tokens = self.store.tokens_for(notification.user_id)
        except StoreError as exc:
            log.warning("Device tokens for %s unavailable: %s", notification.user_id, exc)
            return
        if not tokens:
            log.debug("No device token for %s - push skipped", notification.user_id)
            return
        for token in tokens:
            self.supervisor.submit(
                f"push({notification.id})", self.push_sender.send, notification, token
            )
