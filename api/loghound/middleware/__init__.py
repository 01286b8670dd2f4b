"""
Middleware module - HTTP middleware components.

Provides:
- Request ID correlation (request ids double as search ids)
"""

from .request_id import RequestIDMiddleware, new_request_id

__all__ = [
    "RequestIDMiddleware",
    "new_request_id",
]
