"""
Metrics — in-process counters, gauges and histograms for the ingestion path.

Exported in Prometheus text format by the proxy at ``GET /metrics``.

## Usage

    from media_ingest.observability.metrics import metrics

    metrics.increment("ingest_total", labels={"category": "image", "outcome": "stored"})
    metrics.timing("ingest_duration_seconds", 0.42)
    metrics.observe("fetch_bytes", 183_220)

    output = metrics.export_prometheus()
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]

# Seconds
DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf"))

# Payload sizes: 10 KB … 50 MB
SIZE_BUCKETS = (
    10_000, 100_000, 500_000, 1_000_000, 5_000_000,
    10_000_000, 25_000_000, 50_000_000, float("inf"),
)


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _format_labels(key: LabelKey, extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = list(key) + ([extra] if extra else [])
    if not pairs:
        return ""
    body = ",".join(f'{k}="{_escape(v)}"' for k, v in pairs)
    return "{" + body + "}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_value(value: float) -> str:
    if value == int(value):
        return str(int(value))
    return repr(value)


class Counter:
    """A monotonically increasing counter."""

    kind = "counter"

    def __init__(self, name: str, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self._values: Dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def inc(self, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        if value < 0:
            raise ValueError("Counters only go up")
        with self._lock:
            self._values[_label_key(labels)] += value

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        return self._values.get(_label_key(labels), 0)

    def total(self) -> float:
        """Sum over every label combination."""
        return sum(self._values.values())

    def lines(self) -> List[str]:
        with self._lock:
            items = sorted(self._values.items())
        return [f"{self.name}{_format_labels(k)} {_format_value(v)}" for k, v in items]


class Gauge(Counter):
    """A value that can go up and down."""

    kind = "gauge"

    def inc(self, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._values[_label_key(labels)] += value

    def dec(self, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        self.inc(-value, labels)

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._values[_label_key(labels)] = value


class Histogram:
    """Cumulative-bucket histogram."""

    kind = "histogram"

    def __init__(self, name: str, help_text: str = "", buckets: Tuple[float, ...] = DURATION_BUCKETS):
        self.name = name
        self.help_text = help_text
        self.buckets = buckets
        self._counts: Dict[LabelKey, List[int]] = {}
        self._sums: Dict[LabelKey, float] = defaultdict(float)
        self._totals: Dict[LabelKey, int] = defaultdict(int)
        self._lock = Lock()

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = _label_key(labels)
        with self._lock:
            counts = self._counts.setdefault(key, [0] * len(self.buckets))
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
            self._sums[key] += value
            self._totals[key] += 1

    def count(self, labels: Optional[Dict[str, str]] = None) -> int:
        return self._totals.get(_label_key(labels), 0)

    def sum(self, labels: Optional[Dict[str, str]] = None) -> float:
        return self._sums.get(_label_key(labels), 0.0)

    def lines(self) -> List[str]:
        out: List[str] = []
        with self._lock:
            for key in sorted(self._counts):
                for bound, count in zip(self.buckets, self._counts[key]):
                    le = "+Inf" if bound == float("inf") else _format_value(bound)
                    out.append(f"{self.name}_bucket{_format_labels(key, ('le', le))} {count}")
                out.append(f"{self.name}_sum{_format_labels(key)} {_format_value(self._sums[key])}")
                out.append(f"{self.name}_count{_format_labels(key)} {self._totals[key]}")
        return out


class MetricsRegistry:
    """
    Central registry for all metrics.

    Names are prefixed (``media_ingest_``) on registration; callers use the
    short name.
    """

    def __init__(self, prefix: str = "media_ingest"):
        self.prefix = prefix
        self._metrics: Dict[str, Any] = {}
        self._lock = Lock()

        self._register_ingest_metrics()

    def _register_ingest_metrics(self) -> None:
        self.counter("ingest_total", "Ingestion attempts by category and outcome")
        self.counter("ingest_errors_total", "Failed ingestions by error code")
        self.counter("optimizer_bytes_saved_total", "Bytes removed by the image optimizer")
        self.counter("animated_passthrough_total", "Animated images stored without re-encoding")
        self.gauge("ingest_in_flight", "Ingestions currently running")
        self.histogram("ingest_duration_seconds", "End-to-end ingestion duration")
        self.histogram("fetch_bytes", "Downloaded payload sizes", buckets=SIZE_BUCKETS)

    def _get_or_create(self, name: str, factory):
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = factory(full_name)
            return self._metrics[full_name]

    def counter(self, name: str, help_text: str = "") -> Counter:
        return self._get_or_create(name, lambda n: Counter(n, help_text))

    def gauge(self, name: str, help_text: str = "") -> Gauge:
        return self._get_or_create(name, lambda n: Gauge(n, help_text))

    def histogram(
        self,
        name: str,
        help_text: str = "",
        buckets: Tuple[float, ...] = DURATION_BUCKETS,
    ) -> Histogram:
        return self._get_or_create(name, lambda n: Histogram(n, help_text, buckets))

    # Convenience methods
    def increment(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        self.counter(name).inc(value, labels)

    def timing(self, name: str, seconds: float, labels: Optional[Dict[str, str]] = None) -> None:
        self.histogram(name).observe(seconds, labels)

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        self.histogram(name).observe(value, labels)

    def reset(self) -> None:
        """Drop every recorded value (tests)."""
        with self._lock:
            self._metrics.clear()
        self._register_ingest_metrics()

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines: List[str] = []
        with self._lock:
            registered = sorted(self._metrics.values(), key=lambda m: m.name)
        for metric in registered:
            lines.append(f"# HELP {metric.name} {metric.help_text}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            lines.extend(metric.lines())
        return "\n".join(lines) + "\n"

    def export_json(self) -> Dict[str, Any]:
        """Totals per metric, for the health endpoint."""
        result: Dict[str, Any] = {"timestamp": datetime.now(timezone.utc).isoformat()}
        with self._lock:
            registered = list(self._metrics.values())
        for metric in registered:
            if isinstance(metric, Histogram):
                result[metric.name] = {
                    "count": sum(metric._totals.values()),
                    "sum": sum(metric._sums.values()),
                }
            else:
                result[metric.name] = metric.total()
        return result


# Global metrics instance
metrics = MetricsRegistry()
