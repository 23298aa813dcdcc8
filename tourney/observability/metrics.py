"""Simple in-process metrics collection.

Stores counters, gauges, and histograms in memory.
Can be dumped to JSON for reporting.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

_MAX_SAMPLES = 5_000  # per histogram


def _percentile(sorted_data: list[float], pct: float) -> float:
    """Compute percentile from pre-sorted data using linear interpolation."""
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_data[int(k)]
    return sorted_data[int(f)] * (c - k) + sorted_data[int(c)] * (k - f)


def _histogram_stats(values: list[float]) -> dict[str, Any]:
    if not values:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0, "p99": 0}
    s = sorted(values)
    return {
        "count": len(s),
        "min": s[0],
        "max": s[-1],
        "avg": sum(s) / len(s),
        "p50": _percentile(s, 50),
        "p95": _percentile(s, 95),
        "p99": _percentile(s, 99),
    }


def _series_key(name: str, tags: dict[str, str]) -> str:
    if not tags:
        return name
    suffix = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}[{suffix}]"


class MetricsCollector:
    """Thread-safe in-process metrics collector."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, value: float = 1.0, **tags: str) -> None:
        with self._lock:
            self._counters[_series_key(name, tags)] += value

    def gauge(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._gauges[_series_key(name, tags)] = value

    def histogram(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            samples = self._histograms[_series_key(name, tags)]
            samples.append(value)
            if len(samples) > _MAX_SAMPLES:
                del samples[: len(samples) - _MAX_SAMPLES // 2]

    @contextmanager
    def timer(self, name: str, **tags: str) -> Iterator[None]:
        """Record the wrapped block's duration in milliseconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.histogram(name, (time.perf_counter() - start) * 1000.0, **tags)

    def counter(self, name: str, **tags: str) -> float:
        with self._lock:
            return self._counters.get(_series_key(name, tags), 0.0)

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable snapshot of all metrics with percentiles."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {
                    k: _histogram_stats(v)
                    for k, v in self._histograms.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Global singleton
metrics = MetricsCollector()
