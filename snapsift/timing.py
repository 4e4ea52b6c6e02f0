"""Per-operation duration stats for extraction, batch ingest and threshold recompute.

Stats are process-wide and shared by the extraction pool, so every update goes
through one lock. SiftEngine.timing_stats() exposes the summary.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from typing import Callable


@dataclass
class _Aggregate:
    count: int = 0
    total: float = 0.0
    fastest: float = float("inf")
    slowest: float = 0.0

    def add(self, seconds: float):
        self.count += 1
        self.total += seconds
        self.fastest = min(self.fastest, seconds)
        self.slowest = max(self.slowest, seconds)

    def summary(self) -> dict[str, float]:
        return {
            "count": self.count,
            "total_ms": self.total * 1000,
            "avg_ms": self.total * 1000 / self.count,
            "min_ms": self.fastest * 1000,
            "max_ms": self.slowest * 1000,
        }


_aggregates: dict[str, _Aggregate] = {}
_stats_lock = threading.Lock()


def reset_stats():
    with _stats_lock:
        _aggregates.clear()


def get_stats() -> dict[str, dict]:
    """Summary per operation: count, total_ms, avg_ms, min_ms, max_ms."""
    with _stats_lock:
        return {name: agg.summary() for name, agg in _aggregates.items() if agg.count}


def record(name: str, seconds: float):
    with _stats_lock:
        _aggregates.setdefault(name, _Aggregate()).add(seconds)


@contextmanager
def time_operation(name: str, log_individual: bool = False):
    """Time the enclosed block under name, also when it raises."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        record(name, elapsed)
        if log_individual:
            logging.debug(f"[timing] {name}: {elapsed * 1000:.2f}ms")


def timed(name: str | None = None, log_individual: bool = False):
    """Decorator form of time_operation; name defaults to the function name."""

    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            with time_operation(name or func.__name__, log_individual=log_individual):
                return func(*args, **kwargs)

        return wrapper

    return decorator
