from __future__ import annotations
from typing import Dict
from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from loghound import __version__
from loghound.obs.logging_setup import get_logger

logger = get_logger(__name__)

# HTTP metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

# Search metrics
SEARCHES_TOTAL = Counter(
    'searches_total',
    'Total searches run',
    ['output_mode']
)

SEARCH_DURATION = Histogram(
    'search_duration_seconds',
    'Search duration in seconds, from first submission to final summary',
    ['output_mode'],
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300)
)

QUERY_JOBS_TOTAL = Counter(
    'query_jobs_total',
    'Finished query jobs by outcome',
    ['region', 'state']
)

QUERY_JOB_DURATION = Histogram(
    'query_job_duration_seconds',
    'Query job duration from first submission to terminal state',
    ['region'],
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300)
)

QUERY_JOB_RETRIES = Counter(
    'query_job_retries_total',
    'Resubmissions after throttled or transient backend errors',
    ['region']
)

ENTRIES_EMITTED = Counter(
    'entries_emitted_total',
    'Entries delivered to clients'
)

ENTRIES_DROPPED = Counter(
    'entries_dropped_total',
    'Entries dropped before delivery',
    ['reason']
)

# System metrics
MEMORY_USAGE = Gauge(
    'process_memory_bytes',
    'Process memory usage in bytes'
)

CPU_USAGE = Gauge(
    'process_cpu_percent',
    'Process CPU usage percentage'
)

ACTIVE_SEARCHES = Gauge(
    'active_searches',
    'Searches currently in flight'
)

JOBS_IN_FLIGHT = Gauge(
    'query_jobs_in_flight',
    'Submitted or running query jobs per region',
    ['region']
)

# Service info
SERVICE_INFO = Info(
    'service_info',
    'Service information'
)

def init_service_info():
    SERVICE_INFO.info({
        'version': __version__,
        'service': 'loghound',
        'backend': 'cloudwatch-insights'
    })

class PrometheusMetrics:
    """Prometheus metrics collector with convenience methods."""

    def __init__(self):
        init_service_info()
        logger.info("Prometheus metrics initialized")

    def record_request(self, method: str, endpoint: str, status_code: int, duration_seconds: float):
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=str(status_code)).inc()
        REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration_seconds)

    def record_search(self, output_mode: str, duration_seconds: float, summary) -> None:
        """Record a finished search and the outcome of each of its jobs."""
        SEARCHES_TOTAL.labels(output_mode=output_mode).inc()
        SEARCH_DURATION.labels(output_mode=output_mode).observe(duration_seconds)
        ENTRIES_EMITTED.inc(summary.emitted)
        ENTRIES_DROPPED.labels(reason="exclusion").inc(summary.dropped_by_exclusion)
        ENTRIES_DROPPED.labels(reason="limit").inc(summary.dropped_by_limit)
        ENTRIES_DROPPED.labels(reason="closed").inc(summary.dropped_on_close)

        for status in summary.statuses:
            region = status.target.region
            QUERY_JOBS_TOTAL.labels(region=region, state=status.state.value).inc()
            QUERY_JOB_DURATION.labels(region=region).observe(status.elapsed_seconds)
            if status.attempts > 1:
                QUERY_JOB_RETRIES.labels(region=region).inc(status.attempts - 1)

    def update_system_metrics(self, memory_bytes: float, cpu_percent: float):
        MEMORY_USAGE.set(memory_bytes)
        CPU_USAGE.set(cpu_percent)

    def update_active_searches(self, count: int):
        ACTIVE_SEARCHES.set(count)

    def update_jobs_in_flight(self, in_flight: Dict[str, int]):
        """Sample the rate governor's per-region slot usage."""
        for region, count in in_flight.items():
            JOBS_IN_FLIGHT.labels(region=region).set(count)

    def get_prometheus_metrics(self) -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest()

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

# Global Prometheus metrics instance
prometheus_metrics = PrometheusMetrics()
