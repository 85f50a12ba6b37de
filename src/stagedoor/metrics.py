"""In-process metrics for stagedoor.

Collected here:
- Request timings per endpoint (filled by the API middleware)
- Store operation timings, with a warning for slow calls
- Named counters for degraded paths (unread counts that were skipped)

Everything lives in memory and starts from zero on restart. ``GET
/metrics`` serves ``metrics.to_dict()``.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Store operations slower than this are logged
SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Running count, total, min and max of one kind of timing."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        """Add one measurement."""
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        """Mean duration, 0.0 before anything was recorded."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        """JSON-ready summary, rounded to hundredths of a millisecond."""
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class Metrics:
    """Thread-safe collector for timings and counters.

    Store calls run on a worker thread while requests are timed on the
    event loop, so every update takes the lock.
    """

    _lock: Lock = field(default_factory=Lock)
    store_operations: dict[str, TimingStats] = field(
        default_factory=lambda: defaultdict(TimingStats)
    )
    request_stats: dict[str, TimingStats] = field(
        default_factory=lambda: defaultdict(TimingStats)
    )
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_store_operation(self, operation: str, duration_ms: float) -> None:
        """Record how long one store primitive took."""
        with self._lock:
            self.store_operations[operation].record(duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        """Record how long one HTTP request took, keyed by normalized endpoint."""
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def increment(self, name: str, amount: int = 1) -> None:
        """Bump a named counter."""
        with self._lock:
            self.counters[name] += amount

    def count(self, name: str) -> int:
        """Current value of a counter; 0 if it was never bumped."""
        with self._lock:
            return self.counters.get(name, 0)

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "store_operations": {k: v.to_dict() for k, v in self.store_operations.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Drop everything recorded so far and restart the uptime clock."""
        with self._lock:
            self.store_operations.clear()
            self.request_stats.clear()
            self.counters.clear()
            self._start_time = time.time()


# Collector used by the store primitives and the HTTP app
metrics = Metrics()


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Decorator recording a store primitive's duration under ``operation_name``.

    The duration is recorded even when the call raises. Calls slower than
    SLOW_OPERATION_MS are logged at WARNING.

    Usage:
        @timed_operation("get_conversation")
        def get_conversation(conversation_id: str) -> dict | None:
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                metrics.record_store_operation(operation_name, duration_ms)
                if duration_ms > SLOW_OPERATION_MS:
                    logger.warning(
                        f"Slow store operation: {operation_name} took {duration_ms:.1f}ms"
                    )

        return wrapper  # type: ignore

    return decorator
