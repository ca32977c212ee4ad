"""Prometheus-style metrics behind an injected sink.

The operation engine never touches a process-wide registry. Executors and
queues receive a :class:`MetricsSink` at construction and emit through it:

    ┌──────────────┐   inc / set_gauge / observe   ┌──────────────────┐
    │  Executor    │ ────────────────────────────► │   MetricsSink    │
    │  Queue       │                               │ (Noop/InMemory)  │
    └──────────────┘                               └──────────────────┘

:class:`InMemoryMetrics` keeps its own :class:`MetricsRegistry` of
counters, gauges and histograms and can render the Prometheus text format;
:class:`NoopMetrics` drops everything.

Example:
    >>> metrics = InMemoryMetrics()
    >>> metrics.inc("operations_total", {"type": "Provision", "state": "Succeeded"})
    >>> metrics.value("operations_total", {"type": "Provision", "state": "Succeeded"})
    1.0
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class Labels:
    """Immutable label set for metrics."""

    _labels: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, str] | None) -> Labels:
        """Create from dictionary."""
        if not d:
            return cls(())
        return cls(tuple(sorted((k, str(v)) for k, v in d.items())))

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary."""
        return dict(self._labels)


class Metric(ABC):
    """Base class for metrics."""

    metric_type: str = ""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    @abstractmethod
    def collect(self) -> list[dict[str, Any]]:
        """Collect metric values for export."""
        ...


class Counter(Metric):
    """A monotonically increasing counter."""

    metric_type = "counter"

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._values: dict[Labels, float] = {}

    def inc(self, labels: Labels, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value

    def get(self, labels: Labels) -> float:
        with self._lock:
            return self._values.get(labels, 0.0)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": self.metric_type, "labels": labels.to_dict(), "value": value}
                for labels, value in self._values.items()
            ]


class Gauge(Counter):
    """A value that can go up or down (queue depth, active workers)."""

    metric_type = "gauge"

    def set(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = value

    def inc(self, labels: Labels, value: float = 1.0) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value


class Histogram(Metric):
    """A distribution of values (stage run durations)."""

    metric_type = "histogram"

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, float("inf"))

    def __init__(self, name: str, description: str = "", buckets: tuple[float, ...] | None = None):
        super().__init__(name, description)
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._data: dict[Labels, dict[str, Any]] = {}

    def observe(self, labels: Labels, value: float) -> None:
        with self._lock:
            data = self._data.setdefault(
                labels,
                {"buckets": dict.fromkeys(self._buckets, 0), "sum": 0.0, "count": 0},
            )
            data["sum"] += value
            data["count"] += 1
            for bucket in self._buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def get(self, labels: Labels) -> dict[str, Any]:
        with self._lock:
            data = self._data.get(labels)
            if data is None:
                return {"buckets": dict.fromkeys(self._buckets, 0), "sum": 0.0, "count": 0}
            return {"buckets": dict(data["buckets"]), "sum": data["sum"], "count": data["count"]}

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": self.name,
                    "type": self.metric_type,
                    "labels": labels.to_dict(),
                    "buckets": dict(data["buckets"]),
                    "sum": data["sum"],
                    "count": data["count"],
                }
                for labels, data in self._data.items()
            ]


class MetricsRegistry:
    """Registry of metrics for collection and export. One per sink, never global."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, factory: type[Metric]) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = factory(name)
                self._metrics[name] = metric
            elif type(metric) is not factory:
                raise ValueError(f"metric {name!r} already registered as {metric.metric_type}")
            return metric

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, Counter)

    def gauge(self, name: str) -> Gauge:
        return self._get_or_create(name, Gauge)

    def histogram(self, name: str) -> Histogram:
        return self._get_or_create(name, Histogram)

    def get(self, name: str) -> Metric | None:
        with self._lock:
            return self._metrics.get(name)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        results = []
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        for data in self.collect():
            name = data["name"]
            labels = data.get("labels", {})
            label_str = ""
            if labels:
                label_str = "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"

            if data["type"] in ("counter", "gauge"):
                lines.append(f"{name}{label_str} {data['value']}")
            else:
                for bucket, count in data["buckets"].items():
                    bucket_labels = f'{label_str[:-1]},le="{bucket}"}}' if label_str else f'{{le="{bucket}"}}'
                    lines.append(f"{name}_bucket{bucket_labels} {count}")
                lines.append(f"{name}_sum{label_str} {data['sum']}")
                lines.append(f"{name}_count{label_str} {data['count']}")

        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Sink protocol and implementations
# ---------------------------------------------------------------------------


@runtime_checkable
class MetricsSink(Protocol):
    """Where the engine reports counts, gauges and observations."""

    def inc(self, name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None: ...

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None: ...

    def observe(self, name: str, value: float, labels: dict[str, str] | None = None) -> None: ...


class NoopMetrics:
    """Metrics sink that discards everything."""

    def inc(self, name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
        pass

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        pass

    def observe(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        pass


class InMemoryMetrics:
    """Metrics sink backed by its own :class:`MetricsRegistry`."""

    def __init__(self, registry: MetricsRegistry | None = None):
        self.registry = registry or MetricsRegistry()

    def inc(self, name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
        self.registry.counter(name).inc(Labels.from_dict(labels), value)

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        self.registry.gauge(name).set(Labels.from_dict(labels), value)

    def observe(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        self.registry.histogram(name).observe(Labels.from_dict(labels), value)

    def value(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Current value of a counter or gauge; 0.0 if never emitted."""
        metric = self.registry.get(name)
        if metric is None:
            return 0.0
        if not isinstance(metric, Counter):
            raise TypeError(f"metric {name!r} is a {metric.metric_type}")
        return metric.get(Labels.from_dict(labels))

    def export_prometheus(self) -> str:
        return self.registry.export_prometheus()


__all__ = [
    "Labels",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
    "MetricsSink",
    "NoopMetrics",
    "InMemoryMetrics",
]
