from __future__ import annotations
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from loghound import __version__
from loghound.services.search_service import search_service

router = APIRouter(tags=["health"])

@router.get("/health")
async def health() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "active_searches": len(search_service.registry),
    })
