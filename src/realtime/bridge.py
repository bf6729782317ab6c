"""Realtime bridge - recent-item buffers and live channels per (topic, key).

Topics used by the pipeline:
  events         keyed by store_id, items are ``Event.to_dict()``
  notifications  keyed by user_id, items are ``Notification.to_dict()``

A subscriber first receives the buffered snapshot, then every item
published after it subscribed.  Buffers keep the latest ``buffer_size``
items, most recent first.  Each subscriber has its own bounded backlog;
a subscriber that stops reading loses its oldest items, never blocks the
publisher.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from collections.abc import Callable
from typing import Any

log = logging.getLogger(__name__)

Callback = Callable[[dict[str, Any]], None]

_DEFAULT_BUFFER = 100
_DEFAULT_BACKLOG = 100


class Subscription:
    """Handle for one live channel.  ``cancel()`` is idempotent."""

    def __init__(self, bridge: RealtimeBridge, topic: str, key: str,
                 snapshot: list[dict[str, Any]], backlog: int, callback: Callback | None):
        self.topic = topic
        self.key = key
        self.snapshot = snapshot
        self.callback = callback
        self.dropped = 0
        self._bridge = bridge
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, backlog))
        self._cancelled = threading.Event()

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set()

    def _deliver(self, item: dict[str, Any]) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                break
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass
        if self.callback is not None:
            try:
                self.callback(item)
            except Exception:
                log.exception("Subscriber callback failed on %s/%s", self.topic, self.key)

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next live item, or None if nothing arrives within *timeout*."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[dict[str, Any]]:
        """All queued live items, oldest first."""
        items: list[dict[str, Any]] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._bridge._remove(self)
        self.drain()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()


class RealtimeBridge:
    def __init__(self, buffer_size: int = _DEFAULT_BUFFER, backlog: int = _DEFAULT_BACKLOG):
        self.buffer_size = buffer_size
        self.backlog = backlog
        self._lock = threading.Lock()
        self._buffers: dict[tuple[str, str], deque] = {}
        self._subscribers: dict[tuple[str, str], list[Subscription]] = {}

    @classmethod
    def from_settings(cls, settings) -> RealtimeBridge:
        return cls(buffer_size=settings.buffer_size, backlog=settings.subscriber_backlog)

    def publish(self, topic: str, key: str, item: dict[str, Any]) -> int:
        """Buffer *item* and hand it to every live subscriber of (topic, key).

        Returns the number of subscribers it was delivered to.
        """
        with self._lock:
            buf = self._buffers.get((topic, key))
            if buf is None:
                buf = self._buffers[(topic, key)] = deque(maxlen=self.buffer_size)
            buf.appendleft(item)
            targets = list(self._subscribers.get((topic, key), ()))
        for sub in targets:
            sub._deliver(item)
        return len(targets)

    def subscribe(self, topic: str, key: str, callback: Callback | None = None) -> Subscription:
        with self._lock:
            snapshot = list(self._buffers.get((topic, key), ()))
            sub = Subscription(self, topic, key, snapshot, self.backlog, callback)
            self._subscribers.setdefault((topic, key), []).append(sub)
        log.debug("Subscribed to %s/%s (snapshot=%d)", topic, key, len(snapshot))
        return sub

    def recent(self, topic: str, key: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._buffers.get((topic, key), ()))

    def subscriber_count(self, topic: str | None = None, key: str | None = None) -> int:
        with self._lock:
            return sum(
                len(subs) for (t, k), subs in self._subscribers.items()
                if (topic is None or t == topic) and (key is None or k == key)
            )

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get((sub.topic, sub.key), [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop((sub.topic, sub.key), None)
        log.debug("Unsubscribed from %s/%s", sub.topic, sub.key)
