"""
CloudWatch Logs Insights implementation of the query backend.

boto3 clients are blocking, so every call runs in a worker thread. botocore's
own retry handler is disabled: throttling and transient failures surface as
``BackendThrottled``/``BackendTransient`` and the job state machine decides
whether to try again.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from loghound.config import AWS_PROFILE, AWS_REGION
from loghound.obs.logging_setup import get_logger
from .backend import PollResult, QueryBackend, QueryHandle, RawRecord
from .errors import BackendError, BackendRejected, BackendThrottled, BackendTransient
from .types import Target, TimeRange

logger = get_logger(__name__)

INSIGHTS_MAX_LIMIT = 10000
QUERY_FIELDS = ("@timestamp", "@message", "@logStream", "@log")
POINTER_FIELD = "@ptr"

RUNNING_STATUSES = {"Scheduled", "Running", "Unknown"}

THROTTLING_CODES = {
    "ThrottlingException",
    "Throttling",
    "LimitExceededException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
}
TRANSIENT_CODES = {
    "ServiceUnavailableException",
    "ServiceUnavailable",
    "InternalFailure",
    "InternalError",
    "InternalServiceError",
}
CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ReadTimeoutError,
    ConnectTimeoutError,
)


def escape_pattern(pattern: str) -> str:
    return pattern.replace("/", "\\/")


def build_insights_query(patterns: Sequence[str], limit: int) -> str:
    """Build an Insights query; multiple patterns are ANDed."""
    lines = [f"fields {', '.join(QUERY_FIELDS)}"]
    conditions = [f"@message like /{escape_pattern(p)}/" for p in patterns if p]
    if conditions:
        lines.append(f"| filter {' and '.join(conditions)}")
    lines.append("| sort @timestamp desc")
    lines.append(f"| limit {max(1, min(limit, INSIGHTS_MAX_LIMIT))}")
    return "\n".join(lines)


def flatten_result_row(row: List[Dict[str, str]]) -> RawRecord:
    """Turn ``[{"field": .., "value": ..}, ...]`` into a plain mapping."""
    record: RawRecord = {}
    for cell in row:
        name = cell.get("field")
        if not name or name == POINTER_FIELD:
            continue
        record[name] = cell.get("value", "")
    return record


def classify_error(error: Exception) -> BackendError:
    """Map a botocore exception onto the backend error taxonomy."""
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code", "")
        message = details.get("Message") or str(error)
        if code in THROTTLING_CODES:
            return BackendThrottled(message, code=code)
        if code in TRANSIENT_CODES:
            return BackendTransient(message, code=code)
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if status is not None and status >= 500:
            return BackendTransient(message, code=code)
        return BackendRejected(message, code=code)
    if isinstance(error, CONNECTION_ERRORS):
        return BackendTransient(str(error), code=type(error).__name__)
    return BackendRejected(str(error), code=type(error).__name__)


@dataclass(frozen=True)
class LogGroupInfo:
    region: str
    name: str
    arn: Optional[str] = None
    stored_bytes: int = 0
    retention_days: Optional[int] = None
    creation_time: Optional[int] = None


class CloudWatchClientPool:
    """Lazily created ``logs`` clients, one per region, from a shared session."""

    def __init__(
        self,
        profile: Optional[str] = AWS_PROFILE,
        default_region: str = AWS_REGION,
        client_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.profile = profile
        self.default_region = default_region
        self._client_factory = client_factory or self._create_client
        self._session: Optional[boto3.session.Session] = None
        self._clients: Dict[str, Any] = {}

    def _create_client(self, region: str):
        if self._session is None:
            self._session = boto3.session.Session(profile_name=self.profile)
        return self._session.client(
            "logs",
            region_name=region,
            config=Config(retries={"total_max_attempts": 1, "mode": "standard"}),
        )

    def get(self, region: Optional[str] = None):
        region = region or self.default_region
        client = self._clients.get(region)
        if client is None:
            logger.debug("Creating CloudWatch Logs client", region=region, profile=self.profile)
            client = self._client_factory(region)
            self._clients[region] = client
        return client

    @property
    def regions(self) -> List[str]:
        return list(self._clients)


class CloudWatchInsightsBackend(QueryBackend):
    """Runs pattern queries through CloudWatch Logs Insights."""

    def __init__(self, clients: Optional[CloudWatchClientPool] = None):
        self.clients = clients or CloudWatchClientPool()

    @property
    def name(self) -> str:
        return "cloudwatch-insights"

    async def _call(self, method: Callable[..., Dict[str, Any]], **kwargs) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(method, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e) from e

    async def submit(
        self,
        target: Target,
        time_range: TimeRange,
        patterns: Sequence[str],
        limit: int,
    ) -> QueryHandle:
        client = self.clients.get(target.region)
        query = build_insights_query(patterns, limit)
        logger.debug("Starting Insights query", target=str(target), query=query)

        response = await self._call(
            client.start_query,
            logGroupName=target.source_name,
            startTime=int(time_range.start.timestamp()),
            endTime=int(time_range.end.timestamp()),
            queryString=query,
        )
        query_id = response.get("queryId")
        if not query_id:
            raise BackendTransient(f"no query id returned for {target}")
        return QueryHandle(target=target, query_id=query_id)

    async def poll(self, handle: QueryHandle) -> PollResult:
        client = self.clients.get(handle.target.region)
        response = await self._call(client.get_query_results, queryId=handle.query_id)
        status = response.get("status", "Unknown")

        if status in RUNNING_STATUSES:
            return PollResult.running()
        if status == "Complete":
            records = [flatten_result_row(row) for row in response.get("results", [])]
            return PollResult.done(records)
        if status == "Failed":
            return PollResult.failed(
                BackendTransient(f"query {handle.query_id} failed", code=status)
            )
        return PollResult.failed(
            BackendRejected(f"query {handle.query_id} ended with status {status}", code=status)
        )

    async def cancel(self, handle: QueryHandle) -> bool:
        client = self.clients.get(handle.target.region)
        try:
            response = await self._call(client.stop_query, queryId=handle.query_id)
        except BackendError as e:
            # stop_query rejects queries that already finished
            logger.debug("stop_query refused", query_id=handle.query_id,
                         code=e.code, error=e.reason)
            return False
        return bool(response.get("success", False))

    async def list_log_groups(
        self,
        region: Optional[str] = None,
        prefix: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LogGroupInfo]:
        """List log groups in one region, following pagination."""
        region = region or self.clients.default_region
        client = self.clients.get(region)

        def _collect() -> List[LogGroupInfo]:
            kwargs: Dict[str, Any] = {}
            if prefix:
                kwargs["logGroupNamePrefix"] = prefix
            groups: List[LogGroupInfo] = []
            for page in client.get_paginator("describe_log_groups").paginate(**kwargs):
                for group in page.get("logGroups", []):
                    groups.append(LogGroupInfo(
                        region=region,
                        name=group["logGroupName"],
                        arn=group.get("arn"),
                        stored_bytes=group.get("storedBytes", 0),
                        retention_days=group.get("retentionInDays"),
                        creation_time=group.get("creationTime"),
                    ))
                    if limit is not None and len(groups) >= limit:
                        return groups
            return groups

        try:
            return await asyncio.to_thread(_collect)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e) from e
