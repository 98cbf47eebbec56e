"""Prometheus metrics for the watchdog timer, reporter and HTTP handlers."""
from __future__ import annotations

import threading
from typing import Dict, Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class WatchdogMetrics:
    """Per-application registry, so several apps (tests) never clash on metric names."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry or CollectorRegistry()
        self._cycles = Counter(
            "watchdog_cycles_armed_total",
            "Arm cycles started (initial arm and every restart)",
            registry=self._registry,
        )
        self._resets = Counter(
            "watchdog_resets_total",
            "Reset requests by result",
            labelnames=("result",),
            registry=self._registry,
        )
        self._fires = Counter(
            "watchdog_fires_total",
            "Alarm expiries that triggered the task",
            registry=self._registry,
        )
        self._outcomes = Counter(
            "watchdog_outcomes_total",
            "Reported task outcomes by status",
            labelnames=("status",),
            registry=self._registry,
        )
        self._command_duration = Histogram(
            "watchdog_command_duration_seconds",
            "Wall time of the triggered command",
            buckets=(0.05, 0.25, 1.0, 5.0, 15.0, 60.0, 300.0, float("inf")),
            registry=self._registry,
        )
        self._armed = Gauge(
            "watchdog_armed",
            "1 while a deadline is armed, 0 otherwise",
            registry=self._registry,
        )
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {
            "cycles": 0,
            "resets_accepted": 0,
            "resets_rejected": 0,
            "fires": 0,
            "outcomes_ok": 0,
            "outcomes_failed": 0,
        }

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_arm(self) -> None:
        with self._lock:
            self._cycles.inc()
            self._armed.set(1)
            self._counts["cycles"] += 1

    def record_reset(self, *, accepted: bool) -> None:
        result = "accepted" if accepted else "rejected"
        with self._lock:
            self._resets.labels(result=result).inc()
            self._counts[f"resets_{result}"] += 1

    def record_fire(self) -> None:
        with self._lock:
            self._fires.inc()
            self._armed.set(0)
            self._counts["fires"] += 1

    def record_stop(self) -> None:
        with self._lock:
            self._armed.set(0)

    def record_outcome(self, *, ok: bool, duration_sec: Optional[float] = None) -> None:
        with self._lock:
            self._outcomes.labels(status="ok" if ok else "failed").inc()
            self._counts["outcomes_ok" if ok else "outcomes_failed"] += 1
            if duration_sec is not None:
                self._command_duration.observe(max(float(duration_sec), 0.0))

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def export_prometheus(self) -> bytes:
        return generate_latest(self._registry)


__all__ = ["WatchdogMetrics"]
