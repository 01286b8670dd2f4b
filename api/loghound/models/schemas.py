from __future__ import annotations
from datetime import datetime
from typing import List, Literal, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from loghound.config import DEFAULT_LIMIT, MAX_LIMIT
from loghound.search.types import (
    Entry,
    EntryBatch,
    OutputMode,
    SearchSummary,
    Target,
    TargetStatus,
    TimeRange,
)

class SearchRequest(BaseModel):
    targets: List[str] = Field(..., min_length=1, description="Log groups, optionally prefixed with 'region:'")
    must_match: List[str] = Field(default_factory=list, description="Patterns that must all match")
    must_not_match: List[str] = Field(default_factory=list, description="Case-insensitive substrings to exclude")
    last: Optional[str] = Field(None, description="Relative range such as '15m' or '1h30m'")
    start: Optional[str] = Field(None, description="Absolute start; wins over 'last'")
    end: Optional[str] = Field(None, description="Absolute end, defaults to now")
    limit: int = Field(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT)
    output_mode: OutputMode = OutputMode.INTERLEAVED
    region: Optional[str] = Field(None, description="Default region for targets without a prefix")
    region_concurrency_cap: Optional[int] = Field(None, ge=1, le=50)
    per_job_timeout: Optional[float] = Field(None, gt=0, le=3600)

    @field_validator("output_mode", mode="before")
    @classmethod
    def _normalise_mode(cls, value):
        if isinstance(value, str):
            return OutputMode(value)
        return value

class TargetModel(BaseModel):
    region: str
    source_name: str

    @classmethod
    def from_target(cls, target: Target) -> "TargetModel":
        return cls(region=target.region, source_name=target.source_name)

class EntryModel(BaseModel):
    timestamp: datetime
    region: str
    log_group: str
    message: str
    fields: Dict[str, str] = {}

    @classmethod
    def from_entry(cls, entry: Entry) -> "EntryModel":
        return cls(
            timestamp=entry.timestamp,
            region=entry.target.region,
            log_group=entry.target.source_name,
            message=entry.raw,
            fields=entry.fields,
        )

class BatchModel(BaseModel):
    target: Optional[TargetModel] = None
    entries: List[EntryModel]

    @classmethod
    def from_batch(cls, batch: EntryBatch) -> "BatchModel":
        return cls(
            target=TargetModel.from_target(batch.target) if batch.target else None,
            entries=[EntryModel.from_entry(e) for e in batch.entries],
        )

class TargetStatusModel(BaseModel):
    region: str
    log_group: str
    state: Literal["pending", "submitted", "running", "succeeded", "failed", "timed_out", "cancelled"]
    count: int
    reason: Optional[str] = None
    attempts: int
    elapsed_seconds: float

    @classmethod
    def from_status(cls, status: TargetStatus) -> "TargetStatusModel":
        return cls(
            region=status.target.region,
            log_group=status.target.source_name,
            state=status.state.value,
            count=status.count,
            reason=status.reason,
            attempts=status.attempts,
            elapsed_seconds=status.elapsed_seconds,
        )

class SummaryModel(BaseModel):
    emitted: int
    dropped_by_exclusion: int
    dropped_by_limit: int
    dropped_on_close: int = 0
    targets: List[TargetStatusModel]

    @classmethod
    def from_summary(cls, summary: SearchSummary) -> "SummaryModel":
        return cls(
            emitted=summary.emitted,
            dropped_by_exclusion=summary.dropped_by_exclusion,
            dropped_by_limit=summary.dropped_by_limit,
            dropped_on_close=summary.dropped_on_close,
            targets=[TargetStatusModel.from_status(s) for s in summary.statuses],
        )

class TimeRangeModel(BaseModel):
    start: datetime
    end: datetime

    @classmethod
    def from_range(cls, time_range: TimeRange) -> "TimeRangeModel":
        return cls(start=time_range.start, end=time_range.end)

class SearchResponse(BaseModel):
    search_id: str
    output_mode: OutputMode
    time_range: TimeRangeModel
    batches: List[BatchModel]
    summary: SummaryModel

class QueryDescription(BaseModel):
    targets: List[TargetModel]
    must_match: List[str]
    must_not_match: List[str]
    limit: int

class SearchDocument(BaseModel):
    """Single structured document returned for serialized output."""
    search_id: str
    query: QueryDescription
    time_range: TimeRangeModel
    entries: List[EntryModel]
    summary: SummaryModel

class CancelResponse(BaseModel):
    search_id: str
    cancelled: bool
    message: str

class ActiveSearch(BaseModel):
    search_id: str
    output_mode: OutputMode
    targets: int
    started_at: float
    cancelled: bool

class LogGroupModel(BaseModel):
    region: str
    name: str
    arn: Optional[str] = None
    stored_bytes: int = 0
    retention_days: Optional[int] = None
    creation_time: Optional[int] = None

class LogGroupsResponse(BaseModel):
    log_groups: List[LogGroupModel]
    errors: Dict[str, str] = {}
    metadata: Optional[Dict[str, Any]] = None
