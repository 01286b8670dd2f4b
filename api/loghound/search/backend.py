from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .errors import BackendError
from .types import Target, TimeRange

RawRecord = Dict[str, str]


class PollStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class QueryHandle:
    """Opaque handle for a submitted query."""
    target: Target
    query_id: str


@dataclass
class PollResult:
    """Outcome of one poll.

    Records delivered with a RUNNING result are treated as incremental and
    are not repeated by later polls.
    """
    status: PollStatus
    records: List[RawRecord] = field(default_factory=list)
    error: Optional[BackendError] = None

    @classmethod
    def running(cls, records: Optional[List[RawRecord]] = None) -> "PollResult":
        return cls(PollStatus.RUNNING, records or [])

    @classmethod
    def done(cls, records: Optional[List[RawRecord]] = None) -> "PollResult":
        return cls(PollStatus.DONE, records or [])

    @classmethod
    def failed(cls, error: BackendError) -> "PollResult":
        return cls(PollStatus.ERROR, error=error)


class QueryBackend(ABC):
    """Contract of the external log-insights query engine."""

    @abstractmethod
    async def submit(
        self,
        target: Target,
        time_range: TimeRange,
        patterns: Sequence[str],
        limit: int,
    ) -> QueryHandle:
        """Start a query; raises BackendError subclasses on failure."""
        pass

    @abstractmethod
    async def poll(self, handle: QueryHandle) -> PollResult:
        """Fetch the current status, and records once complete."""
        pass

    @abstractmethod
    async def cancel(self, handle: QueryHandle) -> bool:
        """Best-effort cancellation; returns whether the backend acknowledged it."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Return backend name."""
        pass
