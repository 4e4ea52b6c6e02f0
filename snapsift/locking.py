"""Single-writer critical sections with transparent retry."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager

from .constants import LOCK_MAX_ATTEMPTS, LOCK_TIMEOUT_SEC
from .errors import ConcurrentWriteRetry


def _try_acquire(lock, label: str, attempt: int):
    if not lock.acquire(timeout=LOCK_TIMEOUT_SEC):
        raise ConcurrentWriteRetry(f"{label}: lock busy (attempt {attempt})")


@contextmanager
def exclusive(lock: threading.Lock | threading.RLock, label: str = "state"):
    """Hold lock for the duration of the block.

    Contention is retried a bounded number of times with a short timeout, then
    falls back to a blocking acquire. Callers never see ConcurrentWriteRetry.
    """
    acquired = False
    for attempt in range(1, LOCK_MAX_ATTEMPTS + 1):
        try:
            _try_acquire(lock, label, attempt)
            acquired = True
            break
        except ConcurrentWriteRetry as e:
            logging.debug(f"[locking] {e}")
    if not acquired:
        logging.warning(f"[locking] {label}: still contended after {LOCK_MAX_ATTEMPTS} attempts, waiting")
        lock.acquire()
    try:
        yield
    finally:
        lock.release()
