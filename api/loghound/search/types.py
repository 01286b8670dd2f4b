from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Sequence, Tuple, TYPE_CHECKING

from .errors import InvalidTimeRange

if TYPE_CHECKING:
    from .cancellation import CancelToken


@dataclass(frozen=True)
class Target:
    """One (region, log group) pair queried independently."""
    region: str
    source_name: str

    def __str__(self) -> str:
        return f"{self.region}:{self.source_name}"


@dataclass(frozen=True)
class PatternSet:
    must_match: Tuple[str, ...] = ()
    must_not_match: FrozenSet[str] = frozenset()

    @classmethod
    def build(cls, must_match: Iterable[str] = (), must_not_match: Iterable[str] = ()) -> "PatternSet":
        """Build a pattern set, dropping blank patterns."""
        return cls(
            must_match=tuple(p for p in must_match if p and p.strip()),
            must_not_match=frozenset(p for p in must_not_match if p and p.strip()),
        )


@dataclass(frozen=True)
class TimeRange:
    """Absolute, inclusive time range."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise InvalidTimeRange("time range bounds must be timezone-aware")
        if self.start > self.end:
            raise InvalidTimeRange(
                f"start {self.start.isoformat()} is after end {self.end.isoformat()}"
            )


@dataclass(frozen=True)
class Entry:
    """One parsed, timestamped result record."""
    timestamp: datetime
    target: Target
    raw: str
    fields: Dict[str, str] = field(default_factory=dict, hash=False)


class JobState(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.TIMED_OUT,
    JobState.CANCELLED,
})


class OutputMode(str, Enum):
    INTERLEAVED = "interleaved"
    GROUPED = "grouped"
    STREAMING = "streaming"
    SERIALIZED = "serialized"

    @classmethod
    def _missing_(cls, value):
        # "json" is the name the command-line tool used for the serialized form
        if isinstance(value, str):
            lowered = value.lower()
            if lowered == "json":
                return cls.SERIALIZED
            for member in cls:
                if member.value == lowered:
                    return member
        return None


@dataclass(frozen=True)
class TargetStatus:
    """Final outcome of one target's query job."""
    target: Target
    state: JobState
    count: int = 0
    reason: Optional[str] = None
    attempts: int = 0
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class EntryBatch:
    """A group of entries handed to a sink.

    ``target`` is set when every entry in the batch comes from the same
    target (grouped and streaming modes) and ``None`` for merged output.
    """
    entries: Tuple[Entry, ...]
    target: Optional[Target] = None

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class SearchSummary:
    emitted: int
    dropped_by_exclusion: int
    dropped_by_limit: int
    statuses: Tuple[TargetStatus, ...]
    # entries produced after the consumer stopped reading, or left in a buffer
    dropped_on_close: int = 0

    def status_for(self, target: Target) -> Optional[TargetStatus]:
        for status in self.statuses:
            if status.target == target:
                return status
        return None


@dataclass
class SearchOptions:
    """Options recognised by ``start_search``."""
    targets: Sequence[str]
    time_range: TimeRange
    must_match: Sequence[str] = ()
    must_not_match: Iterable[str] = ()
    global_limit: int = 100
    output_mode: OutputMode = OutputMode.INTERLEAVED
    default_region: Optional[str] = None
    region_concurrency_cap: Optional[int] = None
    per_job_timeout: Optional[float] = None
    cancel_signal: Optional["CancelToken"] = None

    @property
    def patterns(self) -> PatternSet:
        return PatternSet.build(self.must_match, self.must_not_match)


__all__ = [
    "Target",
    "PatternSet",
    "TimeRange",
    "Entry",
    "JobState",
    "TERMINAL_STATES",
    "OutputMode",
    "TargetStatus",
    "EntryBatch",
    "SearchSummary",
    "SearchOptions",
]
