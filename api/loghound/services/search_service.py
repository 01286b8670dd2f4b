from __future__ import annotations
import time
from contextlib import aclosing
from typing import AsyncIterator, Dict, List, Optional, Union

from loghound.config import AWS_REGION, DEFAULT_TIME_RANGE
from loghound.models.schemas import (
    BatchModel,
    EntryModel,
    LogGroupModel,
    LogGroupsResponse,
    QueryDescription,
    SearchDocument,
    SearchRequest,
    SearchResponse,
    SummaryModel,
    TargetModel,
    TimeRangeModel,
)
from loghound.obs.decorators import traced, timed, monitor_errors
from loghound.obs.logging_setup import get_logger
from loghound.obs.metrics import metrics_registry, record_search_summary
from loghound.obs.prometheus_metrics import prometheus_metrics
from loghound.search.aggregator import ordered_entries
from loghound.search.backend import QueryBackend
from loghound.search.cancellation import CancelToken
from loghound.search.cloudwatch import CloudWatchInsightsBackend
from loghound.search.errors import BackendError, InvalidSearchRequest
from loghound.search.governor import RateGovernor
from loghound.search.orchestrator import SearchRun, start_search
from loghound.search.targets import is_region
from loghound.search.timerange import resolve_time_range
from loghound.search.types import OutputMode, SearchOptions
from loghound.services.search_registry import DuplicateSearchId, SearchRegistry, search_registry
from loghound.utils.retry_backoff import LISTING_RETRY, retry_async_operation
from loghound.utils.sse import create_sse_close, create_sse_error, create_sse_message

logger = get_logger(__name__)

class SearchService:
    """Runs searches for the HTTP layer and renders them for each output mode."""

    def __init__(
        self,
        backend: Optional[QueryBackend] = None,
        governor: Optional[RateGovernor] = None,
        registry: Optional[SearchRegistry] = None,
    ):
        self._backend = backend
        # shared so the per-region cap holds across concurrent searches
        self.governor = governor or RateGovernor()
        self.registry = registry or search_registry

    @property
    def backend(self) -> QueryBackend:
        if self._backend is None:
            self._backend = CloudWatchInsightsBackend()
            logger.info("Search backend initialized", backend=self._backend.name)
        return self._backend

    @backend.setter
    def backend(self, backend: QueryBackend) -> None:
        self._backend = backend

    def build_options(self, request: SearchRequest, cancel_signal: CancelToken) -> SearchOptions:
        time_range = resolve_time_range(
            last=request.last,
            start=request.start,
            end=request.end,
            default_last=DEFAULT_TIME_RANGE,
        )
        return SearchOptions(
            targets=request.targets,
            time_range=time_range,
            must_match=request.must_match,
            must_not_match=request.must_not_match,
            global_limit=request.limit,
            output_mode=request.output_mode,
            default_region=request.region or AWS_REGION,
            region_concurrency_cap=request.region_concurrency_cap,
            per_job_timeout=request.per_job_timeout,
            cancel_signal=cancel_signal,
        )

    def prepare(self, search_id: str, request: SearchRequest) -> SearchRun:
        """Validate a request and build its run; nothing is submitted yet.

        Raises SearchError subclasses for bad input and DuplicateSearchId
        when the id is already in flight. Streamed runs are registered by
        ``stream`` once the response body starts, so a client that never
        reads the body leaves nothing behind.
        """
        token = CancelToken()
        options = self.build_options(request, token)
        run = start_search(self.backend, options, governor=self.governor)
        if run.output_mode == OutputMode.STREAMING:
            if self.registry.get(search_id) is not None:
                raise DuplicateSearchId(search_id)
        else:
            self._register(search_id, run)
        logger.info("Search prepared", search_id=search_id, targets=len(run.targets),
                    output_mode=run.output_mode.value, limit=run.global_limit)
        return run

    def _register(self, search_id: str, run: SearchRun) -> None:
        self.registry.register(search_id, run.token, run.output_mode, len(run.targets))
        self._publish_active()

    def _publish_active(self) -> None:
        active = len(self.registry)
        metrics_registry.set_gauge("active_searches", active)
        prometheus_metrics.update_active_searches(active)

    def _finish(self, search_id: str, run: SearchRun, started: float) -> None:
        self.registry.unregister(search_id)
        self._publish_active()

        duration = time.time() - started
        summary = run.summary
        record_search_summary(run.output_mode.value, summary, duration * 1000)
        prometheus_metrics.record_search(run.output_mode.value, duration, summary)
        logger.info("Search completed", search_id=search_id, emitted=summary.emitted,
                    dropped_by_exclusion=summary.dropped_by_exclusion,
                    dropped_by_limit=summary.dropped_by_limit,
                    dropped_on_close=summary.dropped_on_close,
                    duration_ms=round(duration * 1000, 2))

    def _describe(self, run: SearchRun) -> QueryDescription:
        return QueryDescription(
            targets=[TargetModel.from_target(t) for t in run.targets],
            must_match=list(run.patterns.must_match),
            must_not_match=sorted(run.patterns.must_not_match),
            limit=run.global_limit,
        )

    @traced("search_execute")
    @timed("search_execute_duration_ms")
    async def execute(self, search_id: str, run: SearchRun) -> Union[SearchResponse, SearchDocument]:
        """Drain a prepared run and render it as one response."""
        started = time.time()
        try:
            batches = await run.collect()
        finally:
            self._finish(search_id, run, started)

        summary = SummaryModel.from_summary(run.summary)
        time_range = TimeRangeModel.from_range(run.time_range)

        if run.output_mode == OutputMode.SERIALIZED:
            return SearchDocument(
                search_id=search_id,
                query=self._describe(run),
                time_range=time_range,
                entries=[EntryModel.from_entry(e) for e in ordered_entries(batches)],
                summary=summary,
            )

        return SearchResponse(
            search_id=search_id,
            output_mode=run.output_mode,
            time_range=time_range,
            batches=[BatchModel.from_batch(b) for b in batches],
            summary=summary,
        )

    async def stream(self, search_id: str, run: SearchRun) -> AsyncIterator[str]:
        """Render a prepared run as Server-Sent Events.

        Closing the generator (client disconnect) cancels the remaining jobs.
        """
        try:
            self._register(search_id, run)
        except DuplicateSearchId:
            yield create_sse_error(f"Search {search_id} is already running")
            yield create_sse_close()
            return

        started = time.time()
        try:
            yield create_sse_message({
                "type": "search_start",
                "search_id": search_id,
                "query": self._describe(run).model_dump(mode="json"),
                "time_range": TimeRangeModel.from_range(run.time_range).model_dump(mode="json"),
                "timestamp": started
            }, "search_start")

            async with aclosing(run.__aiter__()) as batches:
                async for batch in batches:
                    yield create_sse_message(
                        BatchModel.from_batch(batch).model_dump(mode="json"), "batch"
                    )

            yield create_sse_message({
                "type": "summary",
                "search_id": search_id,
                **SummaryModel.from_summary(run.summary).model_dump(mode="json"),
                "duration_ms": round((time.time() - started) * 1000, 2)
            }, "summary")
        except Exception as e:
            logger.error("Search stream failed", exc_info=True, search_id=search_id, error=str(e))
            yield create_sse_error(str(e))
        finally:
            self._finish(search_id, run, started)
        yield create_sse_close()

    def cancel(self, search_id: str) -> Optional[bool]:
        return self.registry.cancel(search_id)

    def active(self):
        return self.registry.list_active()

    @traced("list_log_groups")
    @monitor_errors("log_group_listing_errors_total")
    async def list_log_groups(
        self,
        regions: List[str],
        prefix: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> LogGroupsResponse:
        """List log groups per region; one failing region does not hide the others."""
        lister = getattr(self.backend, "list_log_groups", None)
        if lister is None:
            raise InvalidSearchRequest(f"backend {self.backend.name} cannot list log groups")

        regions = regions or [AWS_REGION]
        for region in regions:
            if not is_region(region):
                raise InvalidSearchRequest(f"'{region}' is not a valid region")

        groups: List[LogGroupModel] = []
        errors: Dict[str, str] = {}
        for region in dict.fromkeys(regions):
            try:
                found = await retry_async_operation(
                    lambda: lister(region, prefix, limit),
                    LISTING_RETRY,
                    f"list_log_groups[{region}]",
                )
            except BackendError as e:
                logger.warning("Listing log groups failed", region=region, error=str(e))
                errors[region] = str(e)
                continue
            groups.extend(
                LogGroupModel(
                    region=g.region,
                    name=g.name,
                    arn=g.arn,
                    stored_bytes=g.stored_bytes,
                    retention_days=g.retention_days,
                    creation_time=g.creation_time,
                )
                for g in found
            )

        return LogGroupsResponse(
            log_groups=groups,
            errors=errors,
            metadata={"regions": list(dict.fromkeys(regions)), "prefix": prefix, "count": len(groups)},
        )

# Global search service instance
search_service = SearchService()
