from __future__ import annotations
import asyncio
from contextlib import aclosing
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import List
import pytest
from loghound.search.backend import PollResult
from loghound.search.cancellation import CONSUMER_CLOSED, LIMIT_REACHED, USER_INTERRUPT, CancelToken
from loghound.search.errors import (
    BackendRejected,
    BackendThrottled,
    BackendTransient,
    InvalidSearchRequest,
    InvalidTargetSpec,
)
from loghound.search.governor import RateGovernor
from loghound.search.orchestrator import QueryOrchestrator, start_search
from loghound.search.types import (
    EntryBatch,
    JobState,
    OutputMode,
    PatternSet,
    SearchOptions,
    Target,
    TimeRange,
)
from tests.fakes import TargetScript, record

NOW = datetime(2026, 1, 23, 12, 0, tzinfo=timezone.utc)
TIME_RANGE = TimeRange(NOW - timedelta(hours=1), NOW)
A = Target("us-east-1", "a")
B = Target("us-east-1", "b")
ERRORS = PatternSet.build(["ERROR"])

def ts(second: int) -> str:
    return f"2026-01-23 11:30:{second:02d}.000"

def flatten(batches: List[EntryBatch]):
    return [(e.target.source_name, e.timestamp.second) for b in batches for e in b.entries]

def make(backend, governor, policy) -> QueryOrchestrator:
    return QueryOrchestrator(backend, governor=governor, policy=policy)

@pytest.mark.asyncio
async def test_interleaved_merge_across_targets(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(records=[record(ts(20), "ERROR a2"), record(ts(10), "ERROR a1")])
    backend.scripts["b"] = TargetScript(records=[record(ts(15), "ERROR b1")])

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100)
    batches = await run.collect()

    assert flatten(batches) == [("a", 10), ("b", 15), ("a", 20)]
    summary = run.summary
    assert summary.emitted == 3
    assert [s.state for s in summary.statuses] == [JobState.SUCCEEDED, JobState.SUCCEEDED]
    assert [s.count for s in summary.statuses] == [2, 1]

@pytest.mark.asyncio
async def test_patterns_and_limit_are_passed_to_the_backend(backend, governor, fast_policy):
    patterns = PatternSet.build(["ERROR", "payment"], ["health-check"])
    run = make(backend, governor, fast_policy).run([A], patterns, TIME_RANGE, 25)
    await run.collect()

    assert backend.submitted == [(A, ("ERROR", "payment"), 25)]

@pytest.mark.asyncio
async def test_exclusion_drops_only_matching_entries(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(records=[
        record(ts(1), "ERROR GET /health-check timed out"),
        record(ts(2), "ERROR payment declined"),
    ])
    patterns = PatternSet.build(["ERROR"], ["health-check"])

    run = make(backend, governor, fast_policy).run([A], patterns, TIME_RANGE, 100)
    batches = await run.collect()

    assert [e.raw for b in batches for e in b.entries] == ["ERROR payment declined"]
    assert run.summary.dropped_by_exclusion == 1

@pytest.mark.asyncio
async def test_global_limit_cancels_jobs_still_running(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(
        polls=[PollResult.running()],
        records=[record(ts(i), f"ERROR a{i}") for i in range(5)],
    )
    backend.scripts["b"] = TargetScript(hang=True)

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 1)
    batches = await run.collect()

    assert len(flatten(batches)) == 1
    summary = run.summary
    assert summary.emitted == 1
    assert summary.dropped_by_limit == 4

    a_status, b_status = summary.statuses
    assert a_status.state == JobState.SUCCEEDED
    assert b_status.state == JobState.CANCELLED
    assert b_status.reason == LIMIT_REACHED
    assert "b" in backend.cancelled_sources()
    assert governor.in_flight("us-east-1") == {"us-east-1": 0}

@pytest.mark.asyncio
async def test_rejected_target_does_not_affect_siblings(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(submit_errors=[BackendRejected("AccessDeniedException")])
    backend.scripts["b"] = TargetScript(records=[record(ts(3), "ERROR b")])

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100)
    batches = await run.collect()

    assert flatten(batches) == [("b", 3)]
    a_status, b_status = run.summary.statuses
    assert a_status.state == JobState.FAILED
    assert a_status.reason == "AccessDeniedException"
    assert a_status.attempts == 1
    assert b_status.state == JobState.SUCCEEDED

@pytest.mark.asyncio
async def test_throttled_submission_is_retried(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(
        submit_errors=[BackendThrottled("LimitExceededException")],
        records=[record(ts(1), "ERROR")],
    )

    run = make(backend, governor, fast_policy).run([A], ERRORS, TIME_RANGE, 100)
    batches = await run.collect()

    assert len(flatten(batches)) == 1
    status = run.summary.statuses[0]
    assert status.state == JobState.SUCCEEDED
    assert status.attempts == 2

@pytest.mark.asyncio
async def test_retries_are_bounded(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(
        submit_errors=[BackendThrottled("slow down") for _ in range(5)],
    )

    run = make(backend, governor, fast_policy).run([A], ERRORS, TIME_RANGE, 100)
    await run.collect()

    status = run.summary.statuses[0]
    assert status.state == JobState.FAILED
    # one submission plus max_retries resubmissions
    assert status.attempts == 3
    assert len(backend.submitted) == 3

@pytest.mark.asyncio
async def test_transient_poll_failure_resubmits_and_stops_the_old_query(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(
        polls=[BackendTransient("connection reset")],
        records=[record(ts(4), "ERROR")],
    )

    run = make(backend, governor, fast_policy).run([A], ERRORS, TIME_RANGE, 100)
    batches = await run.collect()

    assert flatten(batches) == [("a", 4)]
    assert run.summary.statuses[0].attempts == 2
    assert [h.query_id for h in backend.cancelled] == ["q-1"]

@pytest.mark.asyncio
async def test_job_times_out_and_is_cancelled_remotely(backend, governor, fast_policy):
    policy = replace(fast_policy, timeout=0.05)
    backend.scripts["a"] = TargetScript(hang=True)
    backend.scripts["b"] = TargetScript(records=[record(ts(1), "ERROR")])

    run = make(backend, governor, policy).run([A, B], ERRORS, TIME_RANGE, 100)
    batches = await run.collect()

    assert flatten(batches) == [("b", 1)]
    a_status, b_status = run.summary.statuses
    assert a_status.state == JobState.TIMED_OUT
    assert b_status.state == JobState.SUCCEEDED
    assert backend.cancelled_sources() == ["a"]

@pytest.mark.asyncio
async def test_external_cancellation_reaches_every_job(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(hang=True)
    backend.scripts["b"] = TargetScript(hang=True)
    signal = CancelToken()
    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100,
                                                   cancel_signal=signal)

    async def cancel_soon():
        await asyncio.sleep(0.02)
        signal.cancel()
        signal.cancel()

    canceller = asyncio.create_task(cancel_soon())
    await run.collect()
    await canceller

    states = [s.state for s in run.summary.statuses]
    assert states == [JobState.CANCELLED, JobState.CANCELLED]
    assert {s.reason for s in run.summary.statuses} == {USER_INTERRUPT}
    assert sorted(backend.cancelled_sources()) == ["a", "b"]
    assert backend.live == set()

@pytest.mark.asyncio
async def test_cancellation_is_idempotent(backend, governor, fast_policy):
    async def run_cancelled(times: int):
        signal = CancelToken()
        for _ in range(times):
            signal.cancel()
        run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100,
                                                       cancel_signal=signal)
        await run.collect()
        return run.summary

    once = await run_cancelled(1)
    twice = await run_cancelled(2)
    assert once == twice
    assert [s.state for s in once.statuses] == [JobState.CANCELLED, JobState.CANCELLED]
    assert backend.submitted == []

@pytest.mark.asyncio
async def test_cancelling_after_completion_changes_nothing(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(records=[record(ts(1), "ERROR")])
    run = make(backend, governor, fast_policy).run([A], ERRORS, TIME_RANGE, 100)
    await run.collect()
    before = run.summary

    run.cancel()
    run.cancel()
    assert run.summary == before
    assert backend.cancelled == []

@pytest.mark.asyncio
async def test_grouped_output_follows_resolution_order(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(poll_delay=0.02, records=[record(ts(9), "ERROR a")])
    backend.scripts["b"] = TargetScript(records=[record(ts(1), "ERROR b")])

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100,
                                                   output_mode=OutputMode.GROUPED)
    batches = await run.collect()

    assert [b.target for b in batches] == [A, B]

@pytest.mark.asyncio
async def test_streaming_yields_as_jobs_complete(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(poll_delay=0.05, records=[record(ts(9), "ERROR a")])
    backend.scripts["b"] = TargetScript(records=[record(ts(1), "ERROR b")])

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100,
                                                   output_mode="streaming")
    seen = []
    async for batch in run:
        seen.append(batch.target)
        if batch.target == B:
            # a is still polling when b's batch arrives
            assert run.summary.status_for(A).state == JobState.PENDING
    assert seen == [B, A]

@pytest.mark.asyncio
async def test_region_concurrency_cap_is_respected(backend, fast_policy):
    targets = [Target("us-east-1", f"g{i}") for i in range(4)]
    for target in targets:
        backend.scripts[target.source_name] = TargetScript(
            polls=[PollResult.running()], records=[record(ts(1), "ERROR")]
        )
    governor = RateGovernor(capacity=1, min_interval=0.0)

    run = make(backend, governor, fast_policy).run(targets, ERRORS, TIME_RANGE, 100)
    await run.collect()

    assert backend.max_live["us-east-1"] == 1
    assert all(s.state == JobState.SUCCEEDED for s in run.summary.statuses)

@pytest.mark.asyncio
async def test_unexpected_backend_exception_fails_only_that_target(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(submit_errors=[RuntimeError("socket exploded")])
    backend.scripts["b"] = TargetScript(records=[record(ts(1), "ERROR")])

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100)
    batches = await run.collect()

    assert flatten(batches) == [("b", 1)]
    status = run.summary.status_for(A)
    assert status.state == JobState.FAILED
    assert "socket exploded" in status.reason

@pytest.mark.asyncio
async def test_run_can_only_be_iterated_once(backend, governor, fast_policy):
    run = make(backend, governor, fast_policy).run([A], ERRORS, TIME_RANGE, 100)
    await run.collect()
    with pytest.raises(RuntimeError):
        await run.collect()

def test_input_errors_are_raised_before_any_call(backend, governor, fast_policy):
    orchestrator = make(backend, governor, fast_policy)
    with pytest.raises(InvalidTargetSpec):
        orchestrator.run([], ERRORS, TIME_RANGE, 10)
    with pytest.raises(InvalidSearchRequest):
        orchestrator.run([A], ERRORS, TIME_RANGE, 0)
    assert backend.submitted == []

@pytest.mark.asyncio
async def test_start_search_resolves_and_deduplicates_targets(backend, governor, fast_policy):
    options = SearchOptions(
        targets=["a", "us-east-1:a", "eu-west-1:c", "b"],
        time_range=TIME_RANGE,
        must_match=["ERROR"],
        default_region="us-east-1",
        global_limit=10,
    )
    run = start_search(backend, options, governor=governor, policy=fast_policy)
    await run.collect()

    assert [str(s.target) for s in run.summary.statuses] == [
        "us-east-1:a", "eu-west-1:c", "us-east-1:b",
    ]

def test_start_search_rejects_bad_overrides(backend, governor):
    options = SearchOptions(targets=["a"], time_range=TIME_RANGE, default_region="us-east-1",
                            per_job_timeout=0)
    with pytest.raises(InvalidSearchRequest):
        start_search(backend, options, governor=governor)

    options = SearchOptions(targets=[""], time_range=TIME_RANGE, default_region="us-east-1")
    with pytest.raises(InvalidTargetSpec):
        start_search(backend, options, governor=governor)

@pytest.mark.asyncio
async def test_timeout_during_submit_stops_the_query_it_started(backend, governor, fast_policy):
    policy = replace(fast_policy, timeout=0.05)
    backend.scripts["a"] = TargetScript(submit_delay=0.15, records=[record(ts(1), "ERROR")])

    run = make(backend, governor, policy).run([A], ERRORS, TIME_RANGE, 100)
    await run.collect()

    assert run.summary.status_for(A).state == JobState.TIMED_OUT
    assert [h.query_id for h in backend.cancelled] == ["q-1"]
    assert backend.live == set()

@pytest.mark.asyncio
async def test_limit_reached_during_submit_stops_the_query_it_started(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(records=[record(ts(1), "ERROR a")])
    backend.scripts["b"] = TargetScript(submit_delay=0.1, records=[record(ts(2), "ERROR b")])

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 1)
    await run.collect()

    b_status = run.summary.status_for(B)
    assert b_status.state == JobState.CANCELLED
    assert b_status.reason == LIMIT_REACHED
    assert backend.cancelled_sources() == ["b"]
    assert backend.live == set()

@pytest.mark.asyncio
async def test_slow_submission_is_stopped_once_it_returns(backend, governor, fast_policy):
    policy = replace(fast_policy, timeout=0.02, cancel_timeout=0.05)
    backend.scripts["a"] = TargetScript(submit_delay=0.2)

    run = make(backend, governor, policy).run([A], ERRORS, TIME_RANGE, 100)
    await run.collect()

    # the job gave up waiting, but the run only ends once the late query is stopped
    assert run.summary.status_for(A).state == JobState.TIMED_OUT
    assert backend.cancelled_sources() == ["a"]
    assert backend.live == set()

@pytest.mark.asyncio
async def test_closing_a_stream_early_still_reports_final_states(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(records=[record(ts(1), "ERROR a")])
    backend.scripts["b"] = TargetScript(hang=True)

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100,
                                                   output_mode=OutputMode.STREAMING)
    async with aclosing(run.__aiter__()) as batches:
        async for batch in batches:
            assert batch.target == A
            break

    assert run.finished
    summary = run.summary
    assert summary.status_for(A).state == JobState.SUCCEEDED
    b_status = summary.status_for(B)
    assert b_status.state == JobState.CANCELLED
    assert b_status.reason == CONSUMER_CLOSED
    assert backend.cancelled_sources() == ["b"]

@pytest.mark.asyncio
async def test_closing_a_buffered_run_counts_what_was_never_delivered(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(records=[record(ts(1), "ERROR a"), record(ts(2), "ERROR a")])
    backend.scripts["b"] = TargetScript(hang=True)

    run = make(backend, governor, fast_policy).run([A, B], ERRORS, TIME_RANGE, 100)
    iterator = run.__aiter__()
    pending_batch = asyncio.ensure_future(iterator.__anext__())
    await asyncio.sleep(0.05)
    # nothing is delivered while b is still running
    assert not pending_batch.done()
    pending_batch.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending_batch
    await iterator.aclose()

    summary = run.summary
    assert summary.emitted == 0
    assert summary.dropped_on_close == 2
    assert summary.status_for(A).state == JobState.SUCCEEDED
    assert summary.status_for(B).state == JobState.CANCELLED

@pytest.mark.asyncio
async def test_cancel_during_submit_stops_the_query_it_started(backend, governor, fast_policy):
    backend.scripts["a"] = TargetScript(submit_delay=0.1, records=[record(ts(1), "ERROR a")])
    signal = CancelToken()

    run = make(backend, governor, fast_policy).run([A], ERRORS, TIME_RANGE, 100, cancel_signal=signal)
    collecting = asyncio.ensure_future(run.collect())
    await asyncio.sleep(0.02)
    signal.cancel()
    assert await collecting == []

    status = run.summary.status_for(A)
    assert status.state == JobState.CANCELLED
    assert status.reason == USER_INTERRUPT
    assert [h.query_id for h in backend.cancelled] == ["q-1"]
    assert backend.live == set()
