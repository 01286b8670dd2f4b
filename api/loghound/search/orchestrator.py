"""
Query orchestration: one task per target, one consumer feeding the aggregator.

Job tasks never touch the aggregator. They post ``JobEvent``s on a queue
and the consuming coroutine (the iterator returned by ``run``) applies
them in arrival order, so aggregation state has a single writer.
"""
from __future__ import annotations
import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

from loghound import config
from loghound.obs.logging_setup import get_logger
from .aggregator import ResultAggregator
from .backend import QueryBackend, QueryHandle
from .cancellation import CONSUMER_CLOSED, LIMIT_REACHED, CancelToken
from .errors import BackendError, InvalidSearchRequest, InvalidTargetSpec, InvalidTimeRange
from .governor import RateGovernor
from .job import JobPolicy, QueryJob, StepAction
from .targets import resolve_targets
from .types import (
    Entry,
    EntryBatch,
    JobState,
    OutputMode,
    PatternSet,
    SearchOptions,
    SearchSummary,
    Target,
    TargetStatus,
    TimeRange,
)

logger = get_logger(__name__)
T = TypeVar("T")


class _Interrupted(Exception):
    """A suspension point was cut short by the token or the job deadline."""


@dataclass(frozen=True)
class JobEvent:
    """Message from a job task to the consumer.

    ``status`` is set only on the final event of a job.
    """
    index: int
    entries: Tuple[Entry, ...] = ()
    status: Optional[TargetStatus] = None


class SearchRun:
    """Lazy, non-restartable sequence of batches for one search.

    Iterate with ``async for``; after iteration ends ``summary`` holds the
    totals and per-target statuses.
    """

    def __init__(
        self,
        orchestrator: "QueryOrchestrator",
        targets: Tuple[Target, ...],
        patterns: PatternSet,
        time_range: TimeRange,
        global_limit: int,
        output_mode: OutputMode,
        token: CancelToken,
    ):
        self.orchestrator = orchestrator
        self.targets = targets
        self.patterns = patterns
        self.time_range = time_range
        self.global_limit = global_limit
        self.output_mode = output_mode
        self.token = token
        self.aggregator = ResultAggregator(
            targets, patterns.must_not_match, global_limit, output_mode
        )
        self.jobs = [QueryJob(target, orchestrator.policy) for target in targets]
        # stop_query calls for submissions that returned after their job ended
        self.cleanups: List[asyncio.Task] = []
        self._started = False
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def summary(self) -> SearchSummary:
        return self.aggregator.summary()

    def cancel(self, reason: Optional[str] = None) -> bool:
        """Fire this run's cancellation signal; idempotent."""
        if reason is None:
            return self.token.cancel()
        return self.token.cancel(reason)

    def __aiter__(self) -> AsyncIterator[EntryBatch]:
        if self._started:
            raise RuntimeError("a search run can only be iterated once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[EntryBatch]:
        events: asyncio.Queue = asyncio.Queue()
        tasks = [
            asyncio.create_task(
                self.orchestrator._drive(index, job, self, events),
                name=f"query-job:{job.target}",
            )
            for index, job in enumerate(self.jobs)
        ]
        pending = len(tasks)
        logger.info("Search started", targets=len(self.targets),
                    output_mode=self.output_mode.value, limit=self.global_limit)

        try:
            while pending:
                event: JobEvent = await events.get()
                ready = self.aggregator.admit(event.entries)
                if self.aggregator.limit_reached and self.token.cancel(LIMIT_REACHED):
                    logger.info("Global limit reached, cancelling remaining jobs",
                                limit=self.global_limit)
                if event.status is not None:
                    self.aggregator.record_status(event.status)
                    pending -= 1
                for batch in ready:
                    yield batch

            for batch in self.aggregator.flush():
                yield batch
        finally:
            if pending:
                self.token.cancel(CONSUMER_CLOSED)
            # a job task only ends after its best-effort backend cancel
            await asyncio.gather(*tasks, return_exceptions=True)
            if self.cleanups:
                await asyncio.gather(*self.cleanups, return_exceptions=True)
            self._drain(events)
            self._finished = True
            summary = self.aggregator.summary()
            logger.info("Search finished", emitted=summary.emitted,
                        dropped_by_exclusion=summary.dropped_by_exclusion,
                        dropped_by_limit=summary.dropped_by_limit,
                        dropped_on_close=summary.dropped_on_close)

    def _drain(self, events: asyncio.Queue) -> None:
        """Apply events left behind when the consumer stopped early."""
        while not events.empty():
            event: JobEvent = events.get_nowait()
            self.aggregator.discard(event.entries)
            if event.status is not None:
                self.aggregator.record_status(event.status)
        self.aggregator.close()

    async def collect(self) -> List[EntryBatch]:
        """Drain the run into a list."""
        async with aclosing(self.__aiter__()) as batches:
            return [batch async for batch in batches]


class QueryOrchestrator:
    """Drives query jobs against a backend under a shared rate governor."""

    def __init__(
        self,
        backend: QueryBackend,
        governor: Optional[RateGovernor] = None,
        policy: Optional[JobPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.governor = governor or RateGovernor()
        self.policy = policy or JobPolicy()
        self._clock = clock

    def run(
        self,
        targets: Sequence[Target],
        patterns: PatternSet,
        time_range: TimeRange,
        global_limit: int,
        output_mode: OutputMode = OutputMode.INTERLEAVED,
        cancel_signal: Optional[CancelToken] = None,
    ) -> SearchRun:
        """Validate inputs and return a lazy run.

        Raises input errors immediately; nothing is submitted until the
        returned run is iterated.
        """
        if not targets:
            raise InvalidTargetSpec("", "no targets given")
        if len(set(targets)) != len(targets):
            raise InvalidTargetSpec(", ".join(map(str, targets)), "targets must be unique")
        if not isinstance(time_range, TimeRange):
            raise InvalidTimeRange("time range must be resolved before searching")
        if isinstance(global_limit, bool) or not isinstance(global_limit, int) or global_limit < 1:
            raise InvalidSearchRequest(f"global limit must be a positive integer, got {global_limit!r}")

        token = cancel_signal.child() if cancel_signal is not None else CancelToken()
        return SearchRun(
            self, tuple(targets), patterns, time_range,
            global_limit, OutputMode(output_mode), token,
        )

    async def _race(self, operation: Awaitable[T], token: CancelToken,
                    timeout: Optional[float]) -> T:
        """Await ``operation`` unless the token fires or ``timeout`` elapses first.

        An operation that completes despite the interruption still returns
        its result, so a granted slot or an issued query is never lost.
        """
        task = asyncio.ensure_future(operation)
        if token.cancelled:
            task.cancel()
        else:
            watcher = asyncio.ensure_future(token.wait())
            try:
                done, _ = await asyncio.wait(
                    {task, watcher}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                watcher.cancel()
            if task in done:
                return task.result()
            task.cancel()

        await asyncio.wait({task})
        if task.cancelled():
            raise _Interrupted()
        if task.exception() is not None:
            logger.debug("Interrupted call failed", error=str(task.exception()))
            raise _Interrupted()
        return task.result()

    async def _cancel_remote(self, job: QueryJob) -> None:
        if job.handle is not None:
            await self._cancel_handle(job.target, job.handle)

    async def _cancel_handle(self, target: Target, handle: QueryHandle) -> None:
        try:
            acknowledged = await asyncio.wait_for(
                self.backend.cancel(handle), timeout=self.policy.cancel_timeout
            )
            logger.debug("Backend cancel requested", target=str(target),
                         query_id=handle.query_id, acknowledged=acknowledged)
        except asyncio.TimeoutError:
            logger.warning("Backend cancel timed out", target=str(target),
                           query_id=handle.query_id)
        except Exception as e:
            logger.warning("Backend cancel failed", target=str(target),
                           query_id=handle.query_id, error=str(e))

    async def _submit(self, job: QueryJob, run: SearchRun) -> QueryHandle:
        """Submit a job's query unless the token or the deadline wins first.

        A submission already on the wire is never abandoned: when the race is
        lost the call is left to finish, so the query it started can be stopped.
        """
        token = run.token
        if token.cancelled:
            raise _Interrupted()
        submission = asyncio.ensure_future(self.backend.submit(
            job.target, run.time_range, run.patterns.must_match, run.global_limit
        ))
        try:
            return await self._race(asyncio.shield(submission), token,
                                    job.remaining(self._clock()))
        except _Interrupted:
            await self._settle(job, run, submission)
            raise

    async def _settle(self, job: QueryJob, run: SearchRun, submission: asyncio.Future) -> None:
        """Recover the handle of an interrupted submission, or stop its query once it lands."""
        done, _ = await asyncio.wait({submission}, timeout=self.policy.cancel_timeout)
        if submission in done:
            if not submission.cancelled() and submission.exception() is None:
                job.handle = submission.result()
            return
        logger.debug("Submission still in flight after interruption", target=str(job.target))
        run.cleanups.append(asyncio.create_task(self._stop_late(job.target, submission)))

    async def _stop_late(self, target: Target, submission: asyncio.Future) -> None:
        try:
            handle = await submission
        except Exception as e:
            logger.debug("Interrupted submission failed", target=str(target), error=str(e))
            return
        await self._cancel_handle(target, handle)

    async def _stop(self, job: QueryJob, token: CancelToken) -> None:
        """Terminate a live job as cancelled or timed out, then clean up remotely."""
        now = self._clock()
        if token.cancelled:
            job.cancel(token.reason, now)
        else:
            job.time_out(now)
        await self._cancel_remote(job)

    async def _backoff(self, job: QueryJob, token: CancelToken, delay: float) -> bool:
        """Sleep between polls or retries; returns False when the job must stop."""
        remaining = job.remaining(self._clock())
        if remaining is not None:
            delay = min(delay, remaining)
        if await token.sleep(delay):
            return False
        return not job.is_expired(self._clock())

    async def _drive(self, index: int, job: QueryJob, run: SearchRun,
                     events: asyncio.Queue) -> None:
        token = run.token
        region = job.target.region
        holding = False
        try:
            try:
                await self._race(self.governor.acquire(region), token, None)
                holding = True
            except _Interrupted:
                job.cancel(token.reason, self._clock())
                return

            resubmit = False
            while not job.is_terminal:
                if token.cancelled or job.is_expired(self._clock()):
                    await self._stop(job, token)
                    break

                if resubmit:
                    try:
                        await self._race(self.governor.pace(region), token,
                                         job.remaining(self._clock()))
                    except _Interrupted:
                        await self._stop(job, token)
                        break

                job.submit(self._clock())
                try:
                    handle = await self._submit(job, run)
                except _Interrupted:
                    await self._stop(job, token)
                    break
                except BackendError as e:
                    step = job.on_error(e, self._clock())
                    if step.action == StepAction.RETRY and await self._backoff(job, token, step.delay):
                        resubmit = True
                    continue

                job.accepted(handle)
                logger.debug("Job submitted", target=str(job.target),
                             query_id=handle.query_id, attempt=job.attempts)
                resubmit = await self._poll_until_done(index, job, token, events)
        except Exception as e:
            logger.exception("Unexpected error in query job", target=str(job.target),
                             error=str(e))
            job.fail(f"unexpected error: {e}", self._clock())
            await self._cancel_remote(job)
        finally:
            if holding:
                self.governor.release(region)
            status = job.status()
            self._log_outcome(status)
            events.put_nowait(JobEvent(index, status=status))

    async def _poll_until_done(self, index: int, job: QueryJob, token: CancelToken,
                               events: asyncio.Queue) -> bool:
        """Poll a running job until it finishes; returns True when it should resubmit."""
        while job.state == JobState.RUNNING:
            try:
                result = await self._race(self.backend.poll(job.handle), token,
                                          job.remaining(self._clock()))
            except _Interrupted:
                await self._stop(job, token)
                return False
            except BackendError as e:
                step = job.on_error(e, self._clock())
            else:
                step = job.on_poll(result, self._clock())

            if step.entries:
                events.put_nowait(JobEvent(index, entries=step.entries))

            if step.action == StepAction.DONE:
                return False
            if step.action == StepAction.RETRY:
                # abandon the failed query before resubmitting
                await self._cancel_remote(job)
                job.handle = None
            if not await self._backoff(job, token, step.delay):
                await self._stop(job, token)
                return False
            if step.action == StepAction.RETRY:
                return True
        return False

    def _log_outcome(self, status: TargetStatus) -> None:
        fields = dict(target=str(status.target), state=status.state.value, count=status.count,
                      attempts=status.attempts, elapsed_seconds=status.elapsed_seconds)
        if status.state == JobState.SUCCEEDED:
            logger.info("Query job succeeded", **fields)
        elif status.state == JobState.CANCELLED:
            logger.info("Query job cancelled", reason=status.reason, **fields)
        else:
            logger.warning("Query job did not succeed", reason=status.reason, **fields)


def start_search(
    backend: QueryBackend,
    options: SearchOptions,
    governor: Optional[RateGovernor] = None,
    policy: Optional[JobPolicy] = None,
) -> SearchRun:
    """Resolve options into targets and patterns and start a lazy run."""
    default_region = options.default_region or config.AWS_REGION
    targets = resolve_targets(options.targets, default_region)

    policy = policy or JobPolicy()
    if options.per_job_timeout is not None:
        if options.per_job_timeout <= 0:
            raise InvalidSearchRequest("per-job timeout must be positive")
        policy = replace(policy, timeout=float(options.per_job_timeout))

    if options.region_concurrency_cap is not None:
        if options.region_concurrency_cap < 1:
            raise InvalidSearchRequest("region concurrency cap must be at least 1")
        base = governor or RateGovernor()
        governor = RateGovernor(capacity=options.region_concurrency_cap,
                                min_interval=base.min_interval)

    orchestrator = QueryOrchestrator(backend, governor=governor, policy=policy)
    return orchestrator.run(
        targets,
        options.patterns,
        options.time_range,
        options.global_limit,
        options.output_mode,
        options.cancel_signal,
    )
