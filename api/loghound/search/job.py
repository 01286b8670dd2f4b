"""
Query job state machine.

Pending -> Submitted -> Running -> {Succeeded | Failed | TimedOut | Cancelled}

The machine is pure: every transition takes the current time as an
argument and returns what the driver should do next, so the scheduler in
``orchestrator`` owns all suspension points (slot wait, backoff sleep,
network await) and tests can step a job without a loop or a clock.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from loghound import config
from loghound.obs.logging_setup import get_logger
from loghound.utils.retry_backoff import DEFAULT_BACKEND_RETRY, RetryConfig
from .backend import PollResult, PollStatus, QueryHandle, RawRecord
from .errors import BackendError
from .timerange import parse_timestamp
from .types import Entry, JobState, Target, TargetStatus, TERMINAL_STATES

logger = get_logger(__name__)

TIMESTAMP_FIELD = "@timestamp"
MESSAGE_FIELD = "@message"

_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.SUBMITTED, JobState.FAILED, JobState.CANCELLED}),
    # Submitted -> Submitted is a resubmission after a retryable error
    JobState.SUBMITTED: frozenset({
        JobState.SUBMITTED, JobState.RUNNING, JobState.FAILED,
        JobState.TIMED_OUT, JobState.CANCELLED,
    }),
    JobState.RUNNING: frozenset({
        JobState.SUBMITTED, JobState.SUCCEEDED, JobState.FAILED,
        JobState.TIMED_OUT, JobState.CANCELLED,
    }),
}


class InvalidTransition(RuntimeError):
    """A job was asked to move along an edge the state machine does not have."""


class StepAction(str, Enum):
    POLL = "poll"
    RETRY = "retry"
    DONE = "done"


@dataclass(frozen=True)
class JobStep:
    """What the driver should do after a transition."""
    action: StepAction
    delay: float = 0.0
    entries: Tuple[Entry, ...] = ()


@dataclass(frozen=True)
class JobPolicy:
    timeout: float = config.PER_JOB_TIMEOUT_SECONDS
    poll_initial: float = config.POLL_INITIAL_INTERVAL
    poll_max: float = config.POLL_MAX_INTERVAL
    poll_multiplier: float = config.POLL_BACKOFF_MULTIPLIER
    cancel_timeout: float = config.CANCEL_REQUEST_TIMEOUT
    retry: RetryConfig = DEFAULT_BACKEND_RETRY


def parse_entry(record: RawRecord, target: Target) -> Optional[Entry]:
    """Convert a raw backend record into an Entry, or None if unusable."""
    timestamp = parse_timestamp(record.get(TIMESTAMP_FIELD, ""))
    message = record.get(MESSAGE_FIELD)
    if timestamp is None or message is None:
        return None
    return Entry(timestamp=timestamp, target=target, raw=message, fields=dict(record))


class QueryJob:
    """One submission of a pattern query against one target."""

    def __init__(self, target: Target, policy: Optional[JobPolicy] = None):
        self.target = target
        self.policy = policy or JobPolicy()
        self.handle: Optional[QueryHandle] = None
        self.state = JobState.PENDING
        self.attempts = 0
        self.submitted_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.records: List[Entry] = []
        self.reason: Optional[str] = None
        self.skipped_records = 0
        self._poll_delay = self.policy.poll_initial

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def deadline(self) -> Optional[float]:
        if self.submitted_at is None:
            return None
        return self.submitted_at + self.policy.timeout

    def is_expired(self, now: float) -> bool:
        deadline = self.deadline
        return deadline is not None and now >= deadline

    def remaining(self, now: float) -> Optional[float]:
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - now)

    def _move(self, new_state: JobState, now: Optional[float] = None) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransition(f"{self.target}: {self.state.value} -> {new_state.value}")
        logger.debug("Job transition", target=str(self.target),
                     from_state=self.state.value, to_state=new_state.value)
        if new_state != self.state:
            self._poll_delay = self.policy.poll_initial
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = now

    def submit(self, now: float) -> None:
        """Slot granted: Pending -> Submitted, or a resubmission after a retryable error."""
        self._move(JobState.SUBMITTED, now)
        if self.submitted_at is None:
            self.submitted_at = now
        self.handle = None
        self.attempts += 1

    def accepted(self, handle: QueryHandle) -> None:
        """Backend acknowledged the query: Submitted -> Running."""
        self._move(JobState.RUNNING)
        self.handle = handle

    def _parse(self, records: Sequence[RawRecord]) -> Tuple[Entry, ...]:
        entries = []
        for record in records:
            entry = parse_entry(record, self.target)
            if entry is None:
                self.skipped_records += 1
                continue
            entries.append(entry)
        self.records.extend(entries)
        return tuple(entries)

    def on_poll(self, result: PollResult, now: float) -> JobStep:
        """Apply a poll result to a Running job."""
        if self.state != JobState.RUNNING:
            raise InvalidTransition(f"{self.target}: poll result while {self.state.value}")

        if result.status == PollStatus.RUNNING:
            entries = self._parse(result.records)
            delay = self._poll_delay
            self._poll_delay = min(self._poll_delay * self.policy.poll_multiplier, self.policy.poll_max)
            return JobStep(StepAction.POLL, delay=delay, entries=entries)

        if result.status == PollStatus.DONE:
            entries = self._parse(result.records)
            self._move(JobState.SUCCEEDED, now)
            return JobStep(StepAction.DONE, entries=entries)

        error = result.error or BackendError("backend reported an error without a reason")
        return self.on_error(error, now)

    def on_error(self, error: BackendError, now: float) -> JobStep:
        """Handle a backend error raised by submit or poll."""
        retry = self.policy.retry
        # attempts counts submissions; the first submission is attempt zero for backoff
        if retry.should_retry(error, self.attempts - 1):
            delay = retry.calculate_delay(self.attempts - 1)
            logger.warning("Retryable backend error", target=str(self.target),
                           error=str(error), attempt=self.attempts, delay_seconds=round(delay, 3))
            return JobStep(StepAction.RETRY, delay=delay)

        self.reason = error.reason
        self._move(JobState.FAILED, now)
        return JobStep(StepAction.DONE)

    def time_out(self, now: float) -> bool:
        if self.is_terminal:
            return False
        self.reason = f"no result within {self.policy.timeout:g}s"
        self._move(JobState.TIMED_OUT, now)
        return True

    def cancel(self, reason: Optional[str], now: float) -> bool:
        """Cancel a live job; a no-op on terminal jobs."""
        if self.is_terminal:
            return False
        self.reason = reason
        self._move(JobState.CANCELLED, now)
        return True

    def fail(self, reason: str, now: float) -> bool:
        """Record an unexpected failure that is not part of the backend taxonomy."""
        if self.is_terminal:
            return False
        self.reason = reason
        self._move(JobState.FAILED, now)
        return True

    def status(self) -> TargetStatus:
        elapsed = 0.0
        if self.submitted_at is not None and self.finished_at is not None:
            elapsed = self.finished_at - self.submitted_at
        return TargetStatus(
            target=self.target,
            state=self.state,
            count=len(self.records),
            reason=self.reason,
            attempts=self.attempts,
            elapsed_seconds=round(max(elapsed, 0.0), 3),
        )

    def __repr__(self) -> str:
        return f"QueryJob(target={self.target}, state={self.state.value}, attempts={self.attempts})"
