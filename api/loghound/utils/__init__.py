"""
Utility functions and helpers.

Provides:
- Server-sent events framing
- Retry logic with exponential backoff
"""

from .sse import create_sse_message, create_sse_error, create_sse_close
from .retry_backoff import (
    retry_with_backoff,
    RetryConfig,
    DEFAULT_BACKEND_RETRY,
    LISTING_RETRY,
    retry_async_operation,
)

__all__ = [
    "create_sse_message",
    "create_sse_error",
    "create_sse_close",
    "retry_with_backoff",
    "RetryConfig",
    "DEFAULT_BACKEND_RETRY",
    "LISTING_RETRY",
    "retry_async_operation",
]
