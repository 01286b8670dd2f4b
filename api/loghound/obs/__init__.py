"""
Observability module - Tracing, metrics, and logging.

Provides:
- OpenTelemetry distributed tracing
- In-process and Prometheus metrics
- Structured logging with trace correlation
- Tracing and timing decorators
"""

from .otel import setup_tracing, get_tracer
from .metrics import metrics_registry, inc_counter, record_duration
from .logging_setup import setup_logging, get_logger
from .decorators import traced, timed, monitor_errors

__all__ = [
    "setup_tracing",
    "get_tracer",
    "metrics_registry",
    "inc_counter",
    "record_duration",
    "setup_logging",
    "get_logger",
    "traced",
    "timed",
    "monitor_errors"
]
