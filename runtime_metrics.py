from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock
from typing import Any


class RuntimeMetrics:
    def __init__(self) -> None:
        self._lock = Lock()
        self._started_at = int(time.time())
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._timings: dict[str, dict[str, float]] = defaultdict(
            lambda: {"count": 0, "sum_ms": 0.0, "max_ms": 0.0}
        )

    def record_counter(self, *, name: str, value: int = 1) -> None:
        metric = str(name or "").strip().lower()
        if not metric:
            return
        with self._lock:
            self._counters[metric] += int(value)

    def record_gauge(self, *, name: str, value: int | float) -> None:
        metric = str(name or "").strip().lower()
        if not metric:
            return
        with self._lock:
            self._gauges[metric] = float(value)

    def record_timing(self, *, name: str, duration_ms: int | float) -> None:
        metric = str(name or "").strip().lower()
        if not metric:
            return
        duration = max(0.0, float(duration_ms))
        with self._lock:
            row = self._timings[metric]
            row["count"] = float(row.get("count") or 0.0) + 1.0
            row["sum_ms"] = float(row.get("sum_ms") or 0.0) + duration
            row["max_ms"] = max(float(row.get("max_ms") or 0.0), duration)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            timers: dict[str, Any] = {}
            for key, values in self._timings.items():
                count = int(values.get("count") or 0)
                sum_ms = float(values.get("sum_ms") or 0.0)
                timers[key] = {
                    "count": count,
                    "avg_ms": round(sum_ms / count, 2) if count > 0 else 0.0,
                    "max_ms": round(float(values.get("max_ms") or 0.0), 2),
                    "sum_ms": round(sum_ms, 2),
                }
            return {
                "started_at": self._started_at,
                "uptime_seconds": max(0, int(time.time()) - self._started_at),
                "counters": dict(sorted(self._counters.items())),
                "gauges": dict(sorted(self._gauges.items())),
                "timers": dict(sorted(timers.items())),
            }

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()


_RUNTIME_METRICS = RuntimeMetrics()


def get_runtime_metrics_snapshot() -> dict[str, Any]:
    return _RUNTIME_METRICS.snapshot()


def record_counter_metric(*, name: str, value: int = 1) -> None:
    _RUNTIME_METRICS.record_counter(name=name, value=value)


def record_gauge_metric(*, name: str, value: int | float) -> None:
    _RUNTIME_METRICS.record_gauge(name=name, value=value)


def record_timing_metric(*, name: str, duration_ms: int | float) -> None:
    _RUNTIME_METRICS.record_timing(name=name, duration_ms=duration_ms)


def reset_runtime_metrics() -> None:
    _RUNTIME_METRICS.clear()
