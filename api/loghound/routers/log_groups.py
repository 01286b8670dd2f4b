from __future__ import annotations
from typing import List, Optional
from fastapi import APIRouter, HTTPException, Query as QueryParam
from loghound.models.schemas import LogGroupsResponse
from loghound.obs.logging_setup import get_logger
from loghound.search.errors import SearchError
from loghound.services.search_service import search_service

logger = get_logger(__name__)

router = APIRouter(prefix="/log-groups", tags=["log-groups"])

@router.get("", response_model=LogGroupsResponse)
async def list_log_groups(
    region: Optional[List[str]] = QueryParam(default=None, description="Region(s) to list; repeat for several"),
    prefix: Optional[str] = QueryParam(default=None, description="Log group name prefix"),
    limit: Optional[int] = QueryParam(default=None, ge=1, le=10000, description="Maximum groups per region")
) -> LogGroupsResponse:
    """List CloudWatch log groups that can be used as search targets."""
    try:
        return await search_service.list_log_groups(region or [], prefix, limit)
    except SearchError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Listing log groups failed", exc_info=True, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
