from __future__ import annotations
from typing import List, Union
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from loghound.middleware.request_id import new_request_id
from loghound.models.schemas import (
    ActiveSearch,
    CancelResponse,
    SearchDocument,
    SearchRequest,
    SearchResponse,
)
from loghound.obs.logging_setup import get_logger
from loghound.search.errors import SearchError
from loghound.search.types import OutputMode
from loghound.services.search_registry import DuplicateSearchId
from loghound.services.search_service import search_service

logger = get_logger(__name__)

router = APIRouter(prefix="/search", tags=["search"])

@router.post("", response_model=Union[SearchResponse, SearchDocument])
async def search_endpoint(request: Request, body: SearchRequest):
    """Search log groups across regions.

    The response shape depends on ``output_mode``: batches for interleaved
    and grouped output, a single document for serialized output and a
    Server-Sent Events stream for streaming output.
    """
    search_id = getattr(request.state, "request_id", None) or new_request_id()

    try:
        run = search_service.prepare(search_id, body)
    except SearchError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicateSearchId:
        raise HTTPException(status_code=409, detail=f"Search {search_id} is already running")

    if run.output_mode == OutputMode.STREAMING:
        return StreamingResponse(
            search_service.stream(search_id, run),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                "X-Search-ID": search_id,
            }
        )

    try:
        return await search_service.execute(search_id, run)
    except Exception as e:
        logger.error("Search failed", exc_info=True, search_id=search_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

@router.delete("/{search_id}", response_model=CancelResponse)
async def cancel_search(search_id: str) -> CancelResponse:
    """Cancel an in-flight search. Cancelling twice is harmless."""
    fired = search_service.cancel(search_id)
    if fired is None:
        raise HTTPException(status_code=404, detail=f"Search {search_id} not found")

    return CancelResponse(
        search_id=search_id,
        cancelled=True,
        message="Cancellation requested" if fired else "Search was already cancelled"
    )

@router.get("/active", response_model=List[ActiveSearch])
async def list_active_searches() -> List[ActiveSearch]:
    """List searches that are still running."""
    return [
        ActiveSearch(
            search_id=state.search_id,
            output_mode=state.output_mode,
            targets=state.targets,
            started_at=state.started_at,
            cancelled=state.token.cancelled,
        )
        for state in search_service.active()
    ]
