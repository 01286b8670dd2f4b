from __future__ import annotations
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from . import __version__
from .config import AWS_REGION, LOG_LEVEL, LOG_STRUCTURED, REGION_CONCURRENCY_CAP

# Import observability setup
from .obs.otel import setup_tracing
from .obs.logging_setup import setup_logging, get_logger
from .obs.middleware import MetricsMiddleware

# Import middleware
from .middleware.request_id import RequestIDMiddleware

# Import services
from .services.search_service import search_service

# Import routers
from .routers import health, log_groups, metrics, search

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan with startup and shutdown logic."""

    print(f"🚀 loghound v{__version__} starting up...")

    setup_tracing()
    setup_logging(level=LOG_LEVEL, structured=LOG_STRUCTURED)

    print(f"🎯 loghound ready (default region {AWS_REGION}, {REGION_CONCURRENCY_CAP} queries per region)")

    yield

    print("🛑 loghound shutting down...")

    # Stop anything still in flight so no Insights query is left running
    for state in search_service.active():
        search_service.cancel(state.search_id)

    try:
        from opentelemetry import trace
        tracer_provider = trace.get_tracer_provider()
        if hasattr(tracer_provider, 'shutdown'):
            tracer_provider.shutdown()
    except Exception as e:
        print(f"Error during telemetry shutdown: {e}")

    print("👋 Shutdown complete")

app = FastAPI(
    title="loghound",
    version=__version__,
    description="Multi-region CloudWatch Logs Insights search with merged, grouped, streaming and serialized output",
    lifespan=lifespan
)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed requests as 400, like other input errors."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse({"detail": errors}, status_code=400)

# Request ID middleware
app.add_middleware(RequestIDMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Search-ID"],
)

# Metrics middleware (before FastAPI instrumentation)
app.add_middleware(MetricsMiddleware)

# Auto-instrument FastAPI with OpenTelemetry
FastAPIInstrumentor.instrument_app(
    app,
    excluded_urls="/health,/metrics,/metrics/prometheus"
)

# Include routers
app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(search.router)
app.include_router(log_groups.router)

@app.get("/")
async def root():
    """Service information."""
    return {
        "service": "loghound",
        "version": __version__,
        "default_region": AWS_REGION,
        "output_modes": ["interleaved", "grouped", "streaming", "serialized"],
        "endpoints": {
            "search": "POST /search - Search log groups across regions",
            "cancel": "DELETE /search/{search_id} - Cancel an in-flight search",
            "active": "GET /search/active - List in-flight searches",
            "log_groups": "GET /log-groups - List log groups per region",
            "health": "/health - Basic health check",
            "metrics": "/metrics - JSON metrics",
            "prometheus": "/metrics/prometheus - Prometheus metrics"
        }
    }
