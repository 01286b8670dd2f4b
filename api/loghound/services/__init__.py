"""
Business logic services.

Provides:
- Search execution and rendering for the HTTP layer
- In-flight search registry for external cancellation
"""

from .search_registry import search_registry, SearchRegistry, DuplicateSearchId
from .search_service import search_service, SearchService

__all__ = [
    "search_registry",
    "SearchRegistry",
    "DuplicateSearchId",
    "search_service",
    "SearchService",
]
