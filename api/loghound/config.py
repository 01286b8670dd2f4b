from __future__ import annotations
import os

# AWS Configuration
AWS_PROFILE: str | None = os.getenv("AWS_PROFILE")
AWS_REGION: str = os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1"))

# Rate Governor Configuration
REGION_CONCURRENCY_CAP: int = int(os.getenv("REGION_CONCURRENCY_CAP", "5"))
SUBMIT_INTERVAL_SECONDS: float = float(os.getenv("SUBMIT_INTERVAL_SECONDS", "0.2"))

# Query Job Configuration
PER_JOB_TIMEOUT_SECONDS: float = float(os.getenv("PER_JOB_TIMEOUT_SECONDS", "120"))
POLL_INITIAL_INTERVAL: float = float(os.getenv("POLL_INITIAL_INTERVAL", "0.5"))
POLL_MAX_INTERVAL: float = float(os.getenv("POLL_MAX_INTERVAL", "5.0"))
POLL_BACKOFF_MULTIPLIER: float = float(os.getenv("POLL_BACKOFF_MULTIPLIER", "1.5"))
CANCEL_REQUEST_TIMEOUT: float = float(os.getenv("CANCEL_REQUEST_TIMEOUT", "5.0"))

# Retry Configuration
MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
RETRY_MAX_DELAY: float = float(os.getenv("RETRY_MAX_DELAY", "30.0"))

# Search Defaults
DEFAULT_LIMIT: int = int(os.getenv("DEFAULT_LIMIT", "100"))
MAX_LIMIT: int = int(os.getenv("MAX_LIMIT", "10000"))
DEFAULT_TIME_RANGE: str = os.getenv("DEFAULT_TIME_RANGE", "1h")

# Logging Configuration
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_STRUCTURED: bool = os.getenv("LOG_STRUCTURED", "true").lower() == "true"

# OpenTelemetry Configuration
OTEL_EXPORTER_OTLP_ENDPOINT: str | None = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
OTEL_SERVICE_NAME: str = os.getenv("OTEL_SERVICE_NAME", "loghound")
OTEL_SAMPLE_RATE: float = float(os.getenv("OTEL_SAMPLE_RATE", "1.0"))
