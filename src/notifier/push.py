"""Push delivery - transports plus a supervisor for background sends.

Push is fire-and-forget from the dispatcher's point of view: a send runs as
a supervised background task with a deadline, and its outcome is recorded
and logged.  A failed push never rolls back the Notification.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from src.contracts.enums import NotificationSeverity
from src.contracts.event import format_ts
from src.contracts.notification import Notification
from src.shared.errors import PushDeliveryError, TransientStoreError
from src.shared.timeouts import call_with_timeout

log = logging.getLogger(__name__)

_TITLES = {
    NotificationSeverity.CRITICAL.value: "Critical Security Alert",
    NotificationSeverity.WARNING.value: "Security Warning",
}


def push_title(severity: str) -> str:
    return _TITLES.get(severity, "SentinelPOS Notification")


def build_message(notification: Notification, token: str) -> dict[str, Any]:
    """Device message: display part plus a data part for the client app."""
    return {
        "token": token,
        "notification": {
            "title": push_title(notification.severity),
            "body": notification.message,
        },
        "data": {
            "notification_id": notification.id,
            "severity": notification.severity,
            "created_at": format_ts(notification.created_at),
            "type": notification.type or "general",
        },
    }


class PushSender(Protocol):
    def send(self, notification: Notification, token: str) -> None: ...


class HttpPushSender:
    """POSTs device messages as JSON to a push gateway."""

    def __init__(self, endpoint: str, api_key: str = "", timeout: float = 10.0,
                 session: requests.Session | None = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def send(self, notification: Notification, token: str) -> None:
        try:
            response = self.session.post(
                self.endpoint,
                json=build_message(notification, token),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.Timeout as exc:
            raise TransientStoreError(f"push gateway timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise PushDeliveryError(f"push to {self.endpoint} failed: {exc}") from exc
        log.debug("Push sent for notification %s", notification.id)


class LoggingPushSender:
    """Local stand-in for a push gateway: logs and remembers the last *history* messages."""

    def __init__(self, history: int = 500) -> None:
        self._sent: deque[dict[str, Any]] = deque(maxlen=history)
        self._lock = threading.Lock()

    @property
    def sent(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._sent)

    def send(self, notification: Notification, token: str) -> None:
        message = build_message(notification, token)
        with self._lock:
            self._sent.append(message)
        log.info("PUSH %s -> %s: %s", message["notification"]["title"], token, notification.message)


# ═══════════════════════════════════════════════════════════════════════════
#  Supervisor
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    label: str
    ok: bool
    error: str = ""


class TaskSupervisor:
    """Runs side effects in the background with a deadline per task.

    Only in-flight futures are held; the last *history* outcomes are kept
    for inspection.
    """

    def __init__(self, max_workers: int = 2, timeout: float = 10.0, history: int = 500):
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="push")
        self._futures: set[Future] = set()
        self._outcomes: deque[TaskOutcome] = deque(maxlen=history)
        self._lock = threading.Lock()

    def submit(self, label: str, fn: Callable[..., Any], *args: Any) -> Future:
        future = self._pool.submit(self._run, label, fn, *args)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _run(self, label: str, fn: Callable[..., Any], *args: Any) -> TaskOutcome:
        try:
            call_with_timeout(fn, *args, timeout=self.timeout, retries=0, label=label)
            outcome = TaskOutcome(label, ok=True)
        except (TransientStoreError, PushDeliveryError) as exc:
            log.warning("Task %s failed: %s", label, exc)
            outcome = TaskOutcome(label, ok=False, error=str(exc))
        except Exception as exc:
            log.exception("Task %s crashed", label)
            outcome = TaskOutcome(label, ok=False, error=f"{type(exc).__name__}: {exc}")
        with self._lock:
            self._outcomes.append(outcome)
        return outcome

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._futures)

    def join(self, timeout: float | None = None) -> None:
        """Wait for every task submitted so far."""
        with self._lock:
            pending = list(self._futures)
        wait(pending, timeout=timeout)

    @property
    def outcomes(self) -> list[TaskOutcome]:
        with self._lock:
            return list(self._outcomes)

    def close(self) -> None:
        self._pool.shutdown(wait=True)
