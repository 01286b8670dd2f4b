from __future__ import annotations
import json
import pytest
from fastapi.testclient import TestClient
from loghound.main import app
from loghound.models.schemas import SearchRequest
from loghound.obs.metrics import metrics_registry
from loghound.search.cancellation import CancelToken
from loghound.search.cloudwatch import LogGroupInfo
from loghound.search.errors import BackendRejected
from loghound.search.governor import RateGovernor
from loghound.search.types import OutputMode
from loghound.services.search_registry import DuplicateSearchId, SearchRegistry
from loghound.services.search_service import search_service
from tests.fakes import ScriptedBackend, TargetScript, record

client = TestClient(app)

@pytest.fixture(autouse=True)
def scripted_backend(monkeypatch):
    """Point the global search service at an in-memory backend."""
    backend = ScriptedBackend()
    backend.scripts["api"] = TargetScript(records=[
        record("2026-01-23 11:00:20.000", "ERROR api second"),
        record("2026-01-23 11:00:10.000", "ERROR api first"),
    ])
    backend.scripts["worker"] = TargetScript(records=[
        record("2026-01-23 11:00:15.000", "ERROR worker"),
        record("2026-01-23 11:00:16.000", "ERROR GET /health-check"),
    ])
    monkeypatch.setattr(search_service, "backend", backend)
    monkeypatch.setattr(search_service, "governor", RateGovernor(capacity=5, min_interval=0.0))
    return backend

def parse_sse(text: str):
    """Split an SSE body into (event, data) pairs."""
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        events.append((lines.get("event"), json.loads(lines.get("data", "{}"))))
    return events

def test_health():
    """Test health endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["active_searches"] == 0

def test_root():
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "loghound"
    assert "version" in data
    assert "endpoints" in data

def test_interleaved_search(scripted_backend):
    """Entries from all targets come back as one time-ordered batch."""
    response = client.post("/search", json={
        "targets": ["api", "eu-west-1:worker"],
        "must_match": ["ERROR"],
        "must_not_match": ["health-check"],
        "last": "1h",
        "region": "us-east-1",
    })
    assert response.status_code == 200
    data = response.json()

    assert data["output_mode"] == "interleaved"
    assert data["search_id"] == response.headers["X-Request-ID"]
    assert len(data["batches"]) == 1
    messages = [e["message"] for e in data["batches"][0]["entries"]]
    assert messages == ["ERROR api first", "ERROR worker", "ERROR api second"]

    summary = data["summary"]
    assert summary["emitted"] == 3
    assert summary["dropped_by_exclusion"] == 1
    assert [(t["region"], t["log_group"], t["state"]) for t in summary["targets"]] == [
        ("us-east-1", "api", "succeeded"),
        ("eu-west-1", "worker", "succeeded"),
    ]
    assert scripted_backend.submitted[0][1] == ("ERROR",)

def test_grouped_search():
    response = client.post("/search", json={
        "targets": ["worker", "api"],
        "output_mode": "grouped",
    })
    assert response.status_code == 200
    batches = response.json()["batches"]
    assert [b["target"]["source_name"] for b in batches] == ["worker", "api"]
    assert [e["message"] for e in batches[1]["entries"]] == ["ERROR api second", "ERROR api first"]

def test_limit_caps_emitted_entries():
    response = client.post("/search", json={"targets": ["api", "worker"], "limit": 2})
    assert response.status_code == 200
    summary = response.json()["summary"]
    assert summary["emitted"] == 2
    assert sum(len(b["entries"]) for b in response.json()["batches"]) == 2

@pytest.mark.parametrize("mode", ["serialized", "json"])
def test_serialized_search_returns_one_document(mode):
    response = client.post("/search", json={
        "targets": ["api", "worker"],
        "must_match": ["ERROR"],
        "must_not_match": ["health-check"],
        "output_mode": mode,
    })
    assert response.status_code == 200
    document = response.json()

    assert document["query"]["must_match"] == ["ERROR"]
    assert document["query"]["must_not_match"] == ["health-check"]
    assert [t["source_name"] for t in document["query"]["targets"]] == ["api", "worker"]
    assert [e["message"] for e in document["entries"]] == [
        "ERROR api first", "ERROR worker", "ERROR api second",
    ]
    assert document["summary"]["emitted"] == 3

def test_streaming_search_emits_sse_events():
    response = client.post("/search", json={
        "targets": ["api", "worker"],
        "output_mode": "streaming",
    })
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["X-Search-ID"] == response.headers["X-Request-ID"]

    events = parse_sse(response.text)
    names = [name for name, _ in events]
    assert names[0] == "search_start"
    assert names[-2:] == ["summary", "close"]
    batches = [data for name, data in events if name == "batch"]
    assert sorted(b["target"]["source_name"] for b in batches) == ["api", "worker"]
    assert events[-2][1]["emitted"] == 4

def test_request_id_is_reused_as_search_id():
    response = client.post("/search", json={"targets": ["api"]},
                           headers={"X-Request-ID": "search-42"})
    assert response.status_code == 200
    assert response.json()["search_id"] == "search-42"

def test_rejected_target_is_reported_not_raised(scripted_backend):
    scripted_backend.scripts["private"] = TargetScript(
        submit_errors=[BackendRejected("AccessDeniedException")]
    )
    response = client.post("/search", json={"targets": ["api", "private"]})
    assert response.status_code == 200
    statuses = {t["log_group"]: t for t in response.json()["summary"]["targets"]}
    assert statuses["private"]["state"] == "failed"
    assert statuses["private"]["reason"] == "AccessDeniedException"
    assert statuses["api"]["state"] == "succeeded"

@pytest.mark.parametrize("body", [
    {"targets": []},
    {"targets": ["api"], "limit": 0},
    {"targets": ["api"], "output_mode": "sideways"},
    {"targets": ["api"], "last": "soon"},
    {"targets": ["api"], "start": "2026-01-02", "end": "2026-01-01"},
    {"targets": ["has space"]},
    {"targets": ["api"], "region": "moon-base"},
])
def test_invalid_requests_are_rejected(body, scripted_backend):
    response = client.post("/search", json=body)
    assert response.status_code == 400
    assert scripted_backend.submitted == []

def test_no_search_left_active_after_completion():
    client.post("/search", json={"targets": ["api"]})
    response = client.get("/search/active")
    assert response.status_code == 200
    assert response.json() == []

def test_cancel_unknown_search():
    response = client.delete("/search/does-not-exist")
    assert response.status_code == 404

def test_list_log_groups(scripted_backend):
    scripted_backend.log_groups = {
        "us-east-1": [
            LogGroupInfo(region="us-east-1", name="/aws/lambda/api", stored_bytes=42),
            LogGroupInfo(region="us-east-1", name="/ecs/worker"),
        ],
        "eu-west-1": BackendRejected("AccessDeniedException"),
    }
    response = client.get("/log-groups", params={
        "region": ["us-east-1", "eu-west-1"], "prefix": "/aws",
    })
    assert response.status_code == 200
    data = response.json()
    assert [g["name"] for g in data["log_groups"]] == ["/aws/lambda/api"]
    assert data["log_groups"][0]["stored_bytes"] == 42
    assert data["errors"] == {"eu-west-1": "AccessDeniedException"}
    assert data["metadata"]["count"] == 1

def test_list_log_groups_rejects_bad_region():
    response = client.get("/log-groups", params={"region": "not a region"})
    assert response.status_code == 400

def test_metrics_endpoints():
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "search" in response.json()

    response = client.get("/metrics/prometheus")
    assert response.status_code == 200
    assert "searches_total" in response.text

def test_active_searches_gauge_returns_to_zero():
    client.post("/search", json={"targets": ["api"]})
    assert metrics_registry.get_metrics()["gauges"]["active_searches"] == 0

@pytest.mark.asyncio
async def test_streamed_search_is_registered_only_while_streaming():
    run = search_service.prepare("stream-1", SearchRequest(targets=["api"], output_mode="streaming"))
    # a client that never reads the body leaves nothing registered
    assert search_service.registry.get("stream-1") is None

    stream = search_service.stream("stream-1", run)
    first = await stream.__anext__()
    assert "search_start" in first
    assert search_service.registry.get("stream-1") is not None

    rest = [chunk async for chunk in stream]
    assert "event: close" in rest[-1]
    assert search_service.registry.get("stream-1") is None

def test_registry_cancel_is_idempotent():
    registry = SearchRegistry()
    token = CancelToken()
    registry.register("s-1", token, OutputMode.INTERLEAVED, 2)

    with pytest.raises(DuplicateSearchId):
        registry.register("s-1", CancelToken(), OutputMode.INTERLEAVED, 1)

    assert registry.cancel("s-1") is True
    assert registry.cancel("s-1") is False
    assert token.cancelled
    assert registry.cancel("unknown") is None

    registry.unregister("s-1")
    assert len(registry) == 0
