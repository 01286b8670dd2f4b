"""
API routers module.

Provides:
- /search: run, cancel and list searches
- /log-groups: log group discovery
- /health and /metrics
"""

from . import health, log_groups, metrics, search

__all__ = [
    "health",
    "log_groups",
    "metrics",
    "search",
]
