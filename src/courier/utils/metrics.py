"""
Prometheus Metrics Collector

In-process metrics for the broker and the idempotency ledger.
Generates Prometheus text exposition format (text/plain; version=0.0.4).
"""
import time
import threading
from typing import Dict, List, Optional
from dataclasses import dataclass, field


@dataclass
class MetricValue:
    """Single metric value with optional labels."""
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


def _label_key(labels: Dict[str, str]) -> tuple:
    return tuple(sorted(labels.items()))


class _ScalarMetric:
    """Shared storage for counters and gauges: one float per label set."""

    kind = "untyped"

    def __init__(self, name: str, description: str, labels: Optional[List[str]] = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._values: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    def _add(self, amount: float, labels: Dict[str, str]) -> None:
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        """Current value for one label combination (0 if never touched)."""
        with self._lock:
            return self._values.get(_label_key(labels), 0.0)

    def collect(self) -> List[MetricValue]:
        with self._lock:
            return [MetricValue(value=v, labels=dict(k)) for k, v in self._values.items()]


class Counter(_ScalarMetric):
    """Monotonic counter: messages published, retries scheduled, cache hits."""

    kind = "counter"

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        self._add(amount, labels)


class Gauge(_ScalarMetric):
    """Point-in-time value: queue depth, dead letter size, ledger size."""

    kind = "gauge"

    def set(self, value: float, **labels: str) -> None:
        with self._lock:
            self._values[_label_key(labels)] = value

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        self._add(amount, labels)

    def dec(self, amount: float = 1.0, **labels: str) -> None:
        self._add(-amount, labels)


class Histogram:
    """
    Prometheus Histogram metric.

    Bucket counts are cumulative: an observation is counted in every
    bucket whose upper bound is >= the observed value.
    """

    kind = "histogram"
    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self.buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        self._values: Dict[tuple, Dict] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **labels: str) -> None:
        key = _label_key(labels)
        with self._lock:
            data = self._values.setdefault(
                key, {"buckets": [0] * len(self.buckets), "sum": 0.0, "count": 0}
            )
            data["sum"] += value
            data["count"] += 1
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    data["buckets"][i] += 1

    def collect(self) -> List[MetricValue]:
        result = []
        with self._lock:
            for key, data in self._values.items():
                base = dict(key)
                for bound, count in zip(self.buckets, data["buckets"]):
                    result.append(MetricValue(value=count, labels={**base, "le": str(bound)}))
                result.append(MetricValue(value=data["count"], labels={**base, "le": "+Inf"}))
                result.append(MetricValue(value=data["sum"], labels={**base, "_metric": "sum"}))
                result.append(MetricValue(value=data["count"], labels={**base, "_metric": "count"}))
        return result


class Timer:
    """Context manager that observes elapsed seconds into a histogram."""

    def __init__(self, histogram: Histogram, **labels: str):
        self.histogram = histogram
        self.labels = labels
        self.start_time: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        if self.start_time is not None:
            self.histogram.observe(time.perf_counter() - self.start_time, **self.labels)


class MetricsRegistry:
    """
    Central registry for all courier metrics.

    Provides singleton access and Prometheus text format export.
    """

    _instance: Optional["MetricsRegistry"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "MetricsRegistry":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}
        self._initialized = True
        self._setup_metrics()

    def _setup_metrics(self) -> None:
        # ============================================
        # BROKER METRICS
        # ============================================
        self.messages_published = self.counter(
            "courier_messages_published_total",
            "Messages accepted by publish, by channel",
            ["channel"]
        )
        self.messages_processed = self.counter(
            "courier_messages_processed_total",
            "Messages handled successfully, by channel",
            ["channel"]
        )
        self.handler_failures = self.counter(
            "courier_handler_failures_total",
            "Handler invocations that raised, by channel",
            ["channel"]
        )
        self.retries_scheduled = self.counter(
            "courier_retries_scheduled_total",
            "Failed messages scheduled for another attempt",
            ["channel"]
        )
        self.dead_lettered = self.counter(
            "courier_dead_lettered_total",
            "Messages moved to the dead letter sink, by reason",
            ["reason"]
        )
        self.dead_letter_evictions = self.counter(
            "courier_dead_letter_evictions_total",
            "Dead letter entries evicted because the sink was full"
        )
        self.handler_duration = self.histogram(
            "courier_handler_duration_seconds",
            "Handler invocation duration in seconds",
            ["channel"]
        )
        self.queue_active = self.gauge(
            "courier_queue_active",
            "Messages waiting in the active queue"
        )
        self.queue_retry_scheduled = self.gauge(
            "courier_queue_retry_scheduled",
            "Messages waiting out a backoff delay"
        )
        self.queue_dead_letter = self.gauge(
            "courier_queue_dead_letter",
            "Messages held in the dead letter sink"
        )

        # ============================================
        # IDEMPOTENCY METRICS
        # ============================================
        self.idempotency_executions = self.counter(
            "courier_idempotency_executions_total",
            "execute_with_idempotency outcomes",
            ["outcome"]
        )
        self.idempotency_swept = self.counter(
            "courier_idempotency_swept_total",
            "Expired idempotency records removed by the sweep"
        )
        self.idempotency_records = self.gauge(
            "courier_idempotency_records",
            "Idempotency records by status",
            ["status"]
        )

    def counter(self, name: str, description: str, labels: Optional[List[str]] = None) -> Counter:
        """Create and register a counter."""
        metric = Counter(name, description, labels)
        self._metrics[name] = metric
        return metric

    def gauge(self, name: str, description: str, labels: Optional[List[str]] = None) -> Gauge:
        """Create and register a gauge."""
        metric = Gauge(name, description, labels)
        self._metrics[name] = metric
        return metric

    def histogram(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ) -> Histogram:
        """Create and register a histogram."""
        metric = Histogram(name, description, labels, buckets)
        self._metrics[name] = metric
        return metric

    def export(self) -> str:
        """
        Export all metrics in Prometheus text exposition format.

        Format specification:
        https://prometheus.io/docs/instrumenting/exposition_formats/
        """
        lines = []

        for name, metric in self._metrics.items():
            lines.append(f"# HELP {name} {metric.description}")
            lines.append(f"# TYPE {name} {metric.kind}")

            for mv in metric.collect():
                labels = dict(mv.labels)
                metric_name = name
                if isinstance(metric, Histogram):
                    if "_metric" in labels:
                        metric_name = f"{name}_{labels.pop('_metric')}"
                    else:
                        metric_name = f"{name}_bucket"
                lines.append(
                    f"{metric_name}{self._format_labels(labels)} {self._format_value(mv.value)}"
                )

            lines.append("")

        return "\n".join(lines)

    @staticmethod
    def _format_value(value: float) -> str:
        return str(int(value)) if float(value).is_integer() else repr(float(value))

    @staticmethod
    def _format_labels(labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        parts = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(parts) + "}"

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        self._metrics.clear()
        self._setup_metrics()


# Global metrics instance
metrics = MetricsRegistry()
