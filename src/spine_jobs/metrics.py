"""Per-kind job metrics, Prometheus style.

Counters, gauges and histograms keyed by label sets, collected into a
:class:`MetricsRegistry` that can render the Prometheus text format.  Every
:class:`~spine_jobs.worker.WorkerLoop` owns a :class:`JobMetrics` and wraps
each handler invocation in :meth:`JobMetrics.running`.

Example:
    >>> metrics = JobMetrics()
    >>> with metrics.running("email_sync"):
    ...     pass
    >>> metrics.record_outcome("email_sync", "succeeded")
    >>> metrics.snapshot()["email_sync"]["succeeded"]
    1
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

LabelSet = tuple[tuple[str, str], ...]

OUTCOMES = ("succeeded", "retried", "dead_lettered", "lease_lost")

DURATION_BUCKETS = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, float("inf"))


def _labels(values: dict[str, str]) -> LabelSet:
    return tuple(sorted(values.items()))


class Metric(ABC):
    """Base class for metrics."""

    metric_type = "untyped"

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    @abstractmethod
    def collect(self) -> list[dict[str, Any]]:
        """Collect metric values for export."""


class _ValueMetric(Metric):
    """Single float per label set."""

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._values: dict[LabelSet, float] = {}

    def _add(self, value: float, labels: dict[str, str]) -> None:
        key = _labels(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(_labels(labels), 0.0)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": self.metric_type, "labels": dict(key), "value": value}
                for key, value in self._values.items()
            ]


class Counter(_ValueMetric):
    """Monotonically increasing value per label set."""

    metric_type = "counter"

    def inc(self, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        self._add(value, labels)


class Gauge(_ValueMetric):
    """Value that goes up and down."""

    metric_type = "gauge"

    def inc(self, value: float = 1.0, **labels: str) -> None:
        self._add(value, labels)

    def dec(self, value: float = 1.0, **labels: str) -> None:
        self._add(-value, labels)

    def set(self, value: float, **labels: str) -> None:
        with self._lock:
            self._values[_labels(labels)] = value


class Histogram(Metric):
    """Distribution of observations (cumulative buckets, sum, count)."""

    metric_type = "histogram"

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: tuple[float, ...] = DURATION_BUCKETS,
    ):
        super().__init__(name, description)
        self._buckets = buckets
        self._data: dict[LabelSet, dict[str, Any]] = {}

    def _empty(self) -> dict[str, Any]:
        return {"buckets": dict.fromkeys(self._buckets, 0), "sum": 0.0, "count": 0}

    def observe(self, value: float, **labels: str) -> None:
        key = _labels(labels)
        with self._lock:
            data = self._data.setdefault(key, self._empty())
            data["sum"] += value
            data["count"] += 1
            for bucket in self._buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def data(self, **labels: str) -> dict[str, Any]:
        with self._lock:
            data = self._data.get(_labels(labels)) or self._empty()
            return {"buckets": dict(data["buckets"]), "sum": data["sum"], "count": data["count"]}

    @contextmanager
    def time(self, **labels: str) -> Iterator[None]:
        """Observe the wall time of the block."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **labels)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": self.name,
                    "type": self.metric_type,
                    "labels": dict(key),
                    "buckets": dict(data["buckets"]),
                    "sum": data["sum"],
                    "count": data["count"],
                }
                for key, data in self._data.items()
            ]


class MetricsRegistry:
    """Get-or-create registry of named metrics."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, factory: Any) -> Any:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = factory()
            return self._metrics[name]

    def counter(self, name: str, description: str = "") -> Counter:
        return self._get_or_create(name, lambda: Counter(name, description))

    def gauge(self, name: str, description: str = "") -> Gauge:
        return self._get_or_create(name, lambda: Gauge(name, description))

    def histogram(
        self, name: str, description: str = "", buckets: tuple[float, ...] = DURATION_BUCKETS
    ) -> Histogram:
        return self._get_or_create(name, lambda: Histogram(name, description, buckets))

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        results: list[dict[str, Any]] = []
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Render every metric in the Prometheus text format."""
        lines = []
        for data in self.collect():
            name = data["name"]
            pairs = [f'{k}="{v}"' for k, v in data["labels"].items()]
            label_str = "{" + ",".join(pairs) + "}" if pairs else ""
            if data["type"] == "histogram":
                for bucket, count in data["buckets"].items():
                    le = "+Inf" if bucket == float("inf") else bucket
                    bucket_labels = ",".join([*pairs, f'le="{le}"'])
                    lines.append(f"{name}_bucket{{{bucket_labels}}} {count}")
                lines.append(f"{name}_sum{label_str} {data['sum']}")
                lines.append(f"{name}_count{label_str} {data['count']}")
            else:
                lines.append(f"{name}{label_str} {data['value']}")
        return "\n".join(lines)


class JobMetrics:
    """Handler metrics per job kind: invocations, outcomes, durations, in-flight."""

    def __init__(self, registry: MetricsRegistry | None = None):
        self.registry = registry or MetricsRegistry()
        reg = self.registry
        self.started = reg.counter("spine_jobs_started_total", "Handler invocations")
        self.completed = reg.counter("spine_jobs_completed_total", "Finalized attempts by outcome")
        self.duration = reg.histogram("spine_jobs_duration_seconds", "Handler wall time")
        self.active = reg.gauge("spine_jobs_active", "Handlers currently running")
        self._kinds: set[str] = set()
        self._lock = threading.Lock()

    @contextmanager
    def running(self, kind: str) -> Iterator[None]:
        """Count the invocation and time the handler running inside the block."""
        with self._lock:
            self._kinds.add(kind)
        self.started.inc(kind=kind)
        self.active.inc(kind=kind)
        try:
            with self.duration.time(kind=kind):
                yield
        finally:
            self.active.dec(kind=kind)

    def record_outcome(self, kind: str, outcome: str) -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"unknown outcome {outcome!r}; expected one of {OUTCOMES}")
        with self._lock:
            self._kinds.add(kind)
        self.completed.inc(kind=kind, outcome=outcome)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Plain per-kind view, used by :meth:`WorkerLoop.get_stats`."""
        with self._lock:
            kinds = sorted(self._kinds)
        result: dict[str, dict[str, Any]] = {}
        for kind in kinds:
            duration = self.duration.data(kind=kind)
            entry: dict[str, Any] = {
                "started": int(self.started.value(kind=kind)),
                "active": int(self.active.value(kind=kind)),
            }
            for outcome in OUTCOMES:
                entry[outcome] = int(self.completed.value(kind=kind, outcome=outcome))
            entry["duration_seconds"] = {
                "count": duration["count"],
                "sum": round(duration["sum"], 6),
            }
            result[kind] = entry
        return result


__all__ = [
    "Counter",
    "Gauge",
    "Histogram",
    "JobMetrics",
    "MetricsRegistry",
    "OUTCOMES",
]
