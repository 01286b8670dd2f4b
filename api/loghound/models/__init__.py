"""
Data models and schemas.

Provides:
- Pydantic models for search requests and responses
- Status, summary and log group listing models
"""

from .schemas import (
    SearchRequest,
    SearchResponse,
    SearchDocument,
    BatchModel,
    EntryModel,
    SummaryModel,
    TargetStatusModel,
    CancelResponse,
    ActiveSearch,
    LogGroupsResponse,
)

__all__ = [
    "SearchRequest",
    "SearchResponse",
    "SearchDocument",
    "BatchModel",
    "EntryModel",
    "SummaryModel",
    "TargetStatusModel",
    "CancelResponse",
    "ActiveSearch",
    "LogGroupsResponse",
]
