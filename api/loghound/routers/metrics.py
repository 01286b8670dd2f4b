from __future__ import annotations
import os
import psutil
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse, Response
from loghound.obs.metrics import metrics_registry
from loghound.obs.prometheus_metrics import prometheus_metrics
from loghound.obs.logging_setup import get_logger
from loghound.services.search_service import search_service

logger = get_logger(__name__)

router = APIRouter(tags=["metrics"])

@router.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Get application metrics in JSON format."""
    try:
        metrics_data = metrics_registry.get_metrics()

        system_metrics = {
            "system": {
                "cpu_percent": psutil.cpu_percent(),
                "memory_percent": psutil.virtual_memory().percent,
                "process_memory_mb": psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
            },
            "search": {
                "active_searches": len(search_service.registry),
                "jobs_in_flight": search_service.governor.in_flight(),
            }
        }

        logger.debug("Metrics endpoint accessed")
        return JSONResponse({**metrics_data, **system_metrics})

    except Exception as e:
        logger.error(f"Failed to collect metrics: {e}")
        return JSONResponse(
            {"error": "Failed to collect metrics", "detail": str(e)},
            status_code=500
        )

@router.get("/metrics/prometheus")
async def prometheus_metrics_endpoint():
    """Prometheus metrics endpoint."""
    try:
        process = psutil.Process(os.getpid())
        prometheus_metrics.update_system_metrics(process.memory_info().rss, process.cpu_percent())
        prometheus_metrics.update_active_searches(len(search_service.registry))
        prometheus_metrics.update_jobs_in_flight(search_service.governor.in_flight())

        return Response(
            content=prometheus_metrics.get_prometheus_metrics(),
            media_type=prometheus_metrics.get_content_type()
        )

    except Exception as e:
        logger.error(f"Prometheus metrics error: {e}")
        raise HTTPException(status_code=500, detail="Metrics collection failed")
