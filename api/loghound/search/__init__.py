"""
Multi-target log search core.

- targets: target specification resolution
- job: per-target query lifecycle
- governor: per-region concurrency and submission spacing
- orchestrator: concurrent job driving and cancellation
- aggregator: exclusion, global limit and output ordering
- cloudwatch: CloudWatch Logs Insights backend

Only the leaf modules are re-exported here; import the orchestrator and
backends from their own modules.
"""

from .errors import (
    SearchError,
    InvalidTargetSpec,
    InvalidTimeRange,
    InvalidSearchRequest,
    BackendError,
    BackendRejected,
    BackendThrottled,
    BackendTransient,
)
from .types import (
    Target,
    PatternSet,
    TimeRange,
    Entry,
    EntryBatch,
    JobState,
    OutputMode,
    TargetStatus,
    SearchSummary,
    SearchOptions,
)

__all__ = [
    "SearchError",
    "InvalidTargetSpec",
    "InvalidTimeRange",
    "InvalidSearchRequest",
    "BackendError",
    "BackendRejected",
    "BackendThrottled",
    "BackendTransient",
    "Target",
    "PatternSet",
    "TimeRange",
    "Entry",
    "EntryBatch",
    "JobState",
    "OutputMode",
    "TargetStatus",
    "SearchSummary",
    "SearchOptions",
]
