from __future__ import annotations
import time
from collections import Counter, defaultdict, deque
from typing import Dict, Any, Deque, Optional, TYPE_CHECKING
from dataclasses import dataclass, field
from threading import RLock

if TYPE_CHECKING:
    from loghound.search.types import SearchSummary, TargetStatus

@dataclass
class MetricPoint:
    """Individual metric measurement."""
    timestamp: float
    value: float
    labels: Dict[str, str] = field(default_factory=dict)

class MetricsRegistry:
    """Thread-safe in-process metrics, served as JSON at /metrics."""

    def __init__(self):
        self._lock = RLock()
        self._started_at = time.time()
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Deque[MetricPoint]] = defaultdict(lambda: deque(maxlen=1000))
        self._gauges: Dict[str, float] = {}

    def increment_counter(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1.0):
        with self._lock:
            key = self._make_key(name, labels)
            self._counters[name][key] += value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            point = MetricPoint(
                timestamp=time.time(),
                value=value,
                labels=labels or {}
            )
            self._histograms[name].append(point)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            key = self._make_key(name, labels)
            self._gauges[key] = value

    def get_metrics(self) -> Dict[str, Any]:
        """Get all collected metrics."""
        with self._lock:
            return {
                "counters": {name: dict(values) for name, values in self._counters.items()},
                "histograms": self._process_histograms(),
                "gauges": dict(self._gauges),
                "uptime_seconds": round(time.time() - self._started_at, 3),
                "timestamp": time.time()
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._gauges.clear()

    def _make_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Create metric key with labels."""
        if not labels:
            return name

        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def _process_histograms(self) -> Dict[str, Any]:
        """Summarise histogram windows."""
        processed = {}
        for name, points in self._histograms.items():
            if not points:
                continue

            values = sorted(p.value for p in points)
            n = len(values)
            processed[name] = {
                "count": n,
                "sum": sum(values),
                "min": values[0],
                "max": values[-1],
                "mean": sum(values) / n,
                "p50": values[int(n * 0.5)],
                "p95": values[min(int(n * 0.95), n - 1)],
                "p99": values[min(int(n * 0.99), n - 1)],
            }

        return processed

# Global metrics registry
metrics_registry = MetricsRegistry()

def inc_counter(name: str, labels: Optional[Dict[str, str]] = None, value: float = 1.0):
    metrics_registry.increment_counter(name, labels, value)

def record_duration(name: str, duration_ms: float, labels: Optional[Dict[str, str]] = None):
    """Record duration in milliseconds."""
    metrics_registry.record_histogram(name, duration_ms, labels)

def record_job_status(status: "TargetStatus"):
    """Count one finished query job and its duration."""
    labels = {"region": status.target.region, "state": status.state.value}
    inc_counter("query_jobs_total", labels)
    if status.attempts > 1:
        inc_counter("query_job_retries_total", {"region": status.target.region}, status.attempts - 1)
    record_duration("query_job_duration_ms", status.elapsed_seconds * 1000, labels)

def record_search_summary(output_mode: str, summary: "SearchSummary", duration_ms: float):
    """Count one finished search and what it emitted or dropped."""
    inc_counter("searches_total", {"output_mode": output_mode})
    inc_counter("entries_emitted_total", value=summary.emitted)
    inc_counter("entries_dropped_total", {"reason": "exclusion"}, summary.dropped_by_exclusion)
    inc_counter("entries_dropped_total", {"reason": "limit"}, summary.dropped_by_limit)
    inc_counter("entries_dropped_total", {"reason": "closed"}, summary.dropped_on_close)
    record_duration("search_duration_ms", duration_ms, {"output_mode": output_mode})
    for status in summary.statuses:
        record_job_status(status)
