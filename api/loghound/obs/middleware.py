from __future__ import annotations
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from loghound.obs.metrics import inc_counter, record_duration
from loghound.obs.otel import get_tracer
from loghound.obs.prometheus_metrics import prometheus_metrics

def route_template(request: Request) -> str:
    """Matched route path, so /search/{search_id} is one label value."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path

class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP metrics.

    For streaming responses the duration covers time to first byte only.
    """

    def __init__(self, app):
        super().__init__(app)
        self.tracer = get_tracer("middleware")

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        method = request.method

        with self.tracer.start_as_current_span(
            f"{method} {request.url.path}",
            attributes={
                "http.method": method,
                "http.url": str(request.url),
                "http.scheme": request.url.scheme,
                "http.host": request.url.hostname or "",
            }
        ) as span:

            try:
                response: Response = await call_next(request)
            except Exception as e:
                inc_counter("http_requests_errors_total", {
                    "method": method,
                    "path": route_template(request),
                    "status": "500"
                })
                span.record_exception(e)
                span.set_attribute("error", True)
                raise

            duration = time.time() - start_time
            path = route_template(request)
            status_code = response.status_code
            labels = {
                "method": method,
                "path": path,
                "status": str(status_code)
            }

            inc_counter("http_requests_total", labels)
            record_duration("http_request_duration_ms", duration * 1000, labels)
            prometheus_metrics.record_request(method, path, status_code, duration)

            span.set_attribute("http.route", path)
            span.set_attribute("http.status_code", status_code)
            if status_code >= 400:
                span.set_attribute("error", True)
                inc_counter("http_requests_errors_total", labels)

            return response
