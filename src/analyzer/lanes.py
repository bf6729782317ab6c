"""Per-store processing lanes.

Each store gets one worker thread fed by a priority queue ordered by
``captured_at``.  Stores are independent and run in parallel; within a
store, queued events are handled one at a time in capture order so that
windowed counts stay monotonic and reproducible.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from src.contracts.event import Event

log = logging.getLogger(__name__)

_EVENT = 0
_STOP = 1


class StoreLanes:
    def __init__(self, handler: Callable[[Event], Any]):
        self.handler = handler
        self._lanes: dict[str, tuple[queue.PriorityQueue, threading.Thread]] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._closed = False
        self._failures: dict[str, int] = {}
        self._reported = 0

    def submit(self, event: Event) -> None:
        """Queue *event* on its store's lane, starting the lane if needed."""
        with self._lock:
            if self._closed:
                raise RuntimeError("lanes are closed")
            lane = self._lanes.get(event.store_id)
            if lane is None:
                q: queue.PriorityQueue = queue.PriorityQueue()
                worker = threading.Thread(
                    target=self._work, args=(event.store_id, q),
                    name=f"lane-{event.store_id}", daemon=True,
                )
                lane = self._lanes[event.store_id] = (q, worker)
                worker.start()
                log.debug("Lane started for store %s", event.store_id)
            lane[0].put((_EVENT, event.captured_at, next(self._seq), event))

    def _work(self, store_id: str, q: queue.PriorityQueue) -> None:
        while True:
            kind, _, _, event = q.get()
            try:
                if kind == _STOP:
                    return
                self.handler(event)
            except Exception:
                log.exception("Lane %s: handling event %s failed", store_id, event.id)
                with self._lock:
                    self._failures[store_id] = self._failures.get(store_id, 0) + 1
            finally:
                q.task_done()

    def join(self) -> int:
        """Block until every event submitted so far has been handled.

        Returns the number of events whose handler raised since the
        previous ``join``.
        """
        with self._lock:
            queues = [q for q, _ in self._lanes.values()]
        for q in queues:
            q.join()
        with self._lock:
            total = sum(self._failures.values())
            new, self._reported = total - self._reported, total
        return new

    @property
    def failures(self) -> dict[str, int]:
        """Handler failures per store since the lanes were created."""
        with self._lock:
            return dict(self._failures)

    @property
    def stores(self) -> list[str]:
        with self._lock:
            return sorted(self._lanes)

    def close(self) -> None:
        """Drain every lane, then stop its worker."""
        with self._lock:
            self._closed = True
            lanes = list(self._lanes.values())
        for q, worker in lanes:
            q.put((_STOP, datetime.max, next(self._seq), None))
        for _, worker in lanes:
            worker.join()
