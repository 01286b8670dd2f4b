from __future__ import annotations
from typing import Optional


class SearchError(Exception):
    """Base class for all search errors."""


class InvalidTargetSpec(SearchError):
    """A target specification is empty or malformed."""

    def __init__(self, spec: str, reason: str):
        self.spec = spec
        self.reason = reason
        super().__init__(f"Invalid target '{spec}': {reason}")


class InvalidTimeRange(SearchError):
    """A time range could not be parsed or is inverted."""


class InvalidSearchRequest(SearchError):
    """A search was requested with options that cannot be honoured."""


class BackendError(SearchError):
    """Error reported by the external query engine."""

    def __init__(self, reason: str, code: Optional[str] = None):
        self.reason = reason
        self.code = code
        super().__init__(reason)


class BackendRejected(BackendError):
    """Non-retryable: bad query syntax, permission denied, target not found."""


class BackendThrottled(BackendError):
    """The backend refused the request because of rate or concurrency limits."""


class BackendTransient(BackendError):
    """Temporary backend or network failure."""
