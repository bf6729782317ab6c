"""Timeout-bounded calls to external collaborators.

Every externally bound call (event store lookback, push delivery) runs on
a shared worker pool and is abandoned after ``timeout`` seconds.  Timeouts
and ``TransientStoreError`` are retried ``retries`` times with linear
backoff, then surface as ``TransientStoreError``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

from src.shared.errors import TransientStoreError

log = logging.getLogger(__name__)

T = TypeVar("T")

_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="io")


def call_with_timeout(
    fn: Callable[..., T],
    *args,
    timeout: float = 5.0,
    retries: int = 1,
    backoff: float = 0.2,
    label: str = "",
    **kwargs,
) -> T:
    """Run ``fn(*args, **kwargs)`` with a deadline and bounded retries.

    Raises:
        TransientStoreError: after the last attempt timed out or failed
            transiently.  Other exceptions propagate on the first attempt.
    """
    name = label or getattr(fn, "__name__", "call")
    attempts = max(1, retries + 1)
    attempt = 1

    while True:
        future = _POOL.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            failure: Exception = TransientStoreError(f"{name} timed out after {timeout:.1f}s")
        except TransientStoreError as exc:
            failure = exc
        except TimeoutError as exc:
            failure = TransientStoreError(f"{name} timed out: {exc}")

        if attempt >= attempts:
            raise TransientStoreError(str(failure)) from failure
        log.warning("%s failed (attempt %d/%d): %s - retrying", name, attempt, attempts, failure)
        time.sleep(backoff * attempt)
        attempt += 1
