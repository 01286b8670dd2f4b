from __future__ import annotations
import re
import uuid
from typing import Callable
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from loghound.obs.logging_setup import get_logger

logger = get_logger(__name__)

# request ids double as search ids in URLs, so keep them path-safe
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"

class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request id to every request; searches reuse it as their search id."""

    def __init__(
        self,
        app,
        header_name: str = "X-Request-ID",
        generate_if_missing: bool = True
    ):
        super().__init__(app)
        self.header_name = header_name
        self.generate_if_missing = generate_if_missing

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name.lower())
        if request_id and not _VALID_REQUEST_ID.match(request_id):
            logger.warning("Ignoring malformed request id", header=self.header_name)
            request_id = None

        if not request_id and self.generate_if_missing:
            request_id = new_request_id()

        if request_id:
            request.state.request_id = request_id
            logger.info(
                "Request started",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                client_ip=request.client.host if request.client else None
            )

        response = await call_next(request)

        if request_id:
            response.headers[self.header_name] = request_id
            logger.info(
                "Request completed",
                request_id=request_id,
                status_code=response.status_code
            )

        return response
