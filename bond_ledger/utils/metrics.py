"""
Prometheus Metrics

Provides application metrics in Prometheus format:
- HTTP request metrics (count, duration)
- Ledger metrics (range writes, conflicts)
- Allocator and calendar sync metrics
"""

from typing import Dict, List
import time
from collections import defaultdict
from threading import Lock


class Counter:
    """Simple counter metric."""

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._values: Dict[tuple, float] = defaultdict(float)
        self._lock = Lock()

    def inc(self, value: float = 1, **label_values):
        """Increment counter."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._values[key] += value

    def get_all(self) -> Dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return dict(self._values)


class Histogram:
    """Simple histogram metric (sum and count per label set)."""

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._sums: Dict[tuple, float] = defaultdict(float)
        self._totals: Dict[tuple, int] = defaultdict(int)
        self._lock = Lock()

    def observe(self, value: float, **label_values):
        """Record an observation."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._sums[key] += value
            self._totals[key] += 1

    def time(self, **label_values):
        """Context manager to time a block of code."""
        return _HistogramTimer(self, label_values)

    def get_all(self) -> Dict:
        with self._lock:
            return {
                'sums': dict(self._sums),
                'totals': dict(self._totals)
            }


class _HistogramTimer:
    """Context manager for timing code blocks."""

    def __init__(self, histogram: Histogram, label_values: dict):
        self.histogram = histogram
        self.label_values = label_values
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.perf_counter() - self.start_time
        self.histogram.observe(duration, **self.label_values)


# ================================
# APPLICATION METRICS
# ================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labels=("method", "path", "status_code")
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labels=("method", "path")
)

ledger_writes_total = Counter(
    "ledger_writes_total",
    "Ledger range mutations",
    labels=("operation", "source")
)

ledger_conflicts_total = Counter(
    "ledger_conflicts_total",
    "Ledger write conflicts and failed re-validations",
    labels=("reason",)
)

booking_transitions_total = Counter(
    "booking_transitions_total",
    "Booking lifecycle transitions",
    labels=("to_status",)
)

split_stay_searches_total = Counter(
    "split_stay_searches_total",
    "Split stay allocator runs",
    labels=("outcome",)
)

split_stay_duration_seconds = Histogram(
    "split_stay_duration_seconds",
    "Split stay allocator duration in seconds"
)

feed_sync_total = Counter(
    "feed_sync_total",
    "Calendar feed sync runs",
    labels=("status",)
)

feed_sync_duration_seconds = Histogram(
    "feed_sync_duration_seconds",
    "Calendar feed sync duration in seconds"
)

ALL_METRICS = [
    (http_requests_total, "counter"),
    (http_request_duration_seconds, "histogram"),
    (ledger_writes_total, "counter"),
    (ledger_conflicts_total, "counter"),
    (booking_transitions_total, "counter"),
    (split_stay_searches_total, "counter"),
    (split_stay_duration_seconds, "histogram"),
    (feed_sync_total, "counter"),
    (feed_sync_duration_seconds, "histogram"),
]


def _label_str(labels: tuple, key: tuple) -> str:
    if not labels:
        return ""
    pairs = ",".join(f'{k}="{v}"' for k, v in zip(labels, key))
    return f"{{{pairs}}}"


def format_prometheus_metrics() -> str:
    """Format all metrics in Prometheus text format."""
    lines: List[str] = []

    for metric, metric_type in ALL_METRICS:
        lines.append(f"# HELP {metric.name} {metric.description}")
        lines.append(f"# TYPE {metric.name} {metric_type}")
        if metric_type == "histogram":
            data = metric.get_all()
            for key, total in data['sums'].items():
                label_str = _label_str(metric.labels, key)
                lines.append(f"{metric.name}_sum{label_str} {total}")
                lines.append(f"{metric.name}_count{label_str} {data['totals'][key]}")
        else:
            for key, value in metric.get_all().items():
                lines.append(f"{metric.name}{_label_str(metric.labels, key)} {value}")

    return "\n".join(lines) + "\n"


# ================================
# CONVENIENCE FUNCTIONS
# ================================

def record_http_request(method: str, path: str, status_code: int, duration: float):
    """Record an HTTP request."""
    http_requests_total.inc(method=method, path=path, status_code=str(status_code))
    http_request_duration_seconds.observe(duration, method=method, path=path)


def record_ledger_write(operation: str, source: str):
    ledger_writes_total.inc(operation=operation, source=source)


def record_conflict(reason: str):
    ledger_conflicts_total.inc(reason=reason)


def record_booking_transition(to_status: str):
    booking_transitions_total.inc(to_status=to_status)


def record_feed_sync(success: bool, duration: float, skipped: bool = False):
    """Record a calendar sync run."""
    if skipped:
        status = "skipped"
    else:
        status = "success" if success else "error"
    feed_sync_total.inc(status=status)
    if not skipped:
        feed_sync_duration_seconds.observe(duration)
