"""
Metrics counters for llm-resilience.

Counters are monotonically increasing observability counts; they never
drive control decisions, so a plain lock around each increment suffices.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from enum import Enum


class MetricName(str, Enum):
    """Counter names recorded by the error handler."""

    SUCCESS = "success"
    FALLBACK_USED = "fallback_used"
    FALLBACK_FAILED = "fallback_failed"


class MetricsCounter:
    """Thread-safe named counters.

    Example:
        >>> counter = MetricsCounter()
        >>> counter.increment(MetricName.SUCCESS)
        >>> counter.snapshot()
        {'success': 1}
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, int] = defaultdict(int)

    def increment(self, name: str | MetricName, value: int = 1) -> None:
        """Increment a counter.

        Args:
            name: Counter name
            value: Amount to add
        """
        key = name.value if isinstance(name, MetricName) else name
        with self._lock:
            self._counts[key] += value

    def get(self, name: str | MetricName) -> int:
        """Get the current value of a counter (0 if never incremented)."""
        key = name.value if isinstance(name, MetricName) else name
        with self._lock:
            return self._counts.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        """Get a copy of all counters that have been incremented."""
        with self._lock:
            return dict(self._counts)

    def clear(self) -> None:
        """Reset all counters."""
        with self._lock:
            self._counts.clear()
