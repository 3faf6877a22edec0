"""Request logging middleware.

Assigns each request an id (the caller's ``X-Request-ID`` when present) and
writes one access line per request. Requests that target a settlement are
tagged with its id and the lifecycle action, so an invoice run can be traced
from the access log into the service logs. Server errors and slow requests
are logged at WARNING.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

logger = logging.getLogger("revenue_settlement.access")

REQUEST_ID_HEADER = "X-Request-ID"

_SETTLEMENT_PATH = re.compile(
    r"/settlements/(?P<settlement_id>[0-9a-fA-F-]{36})(?:/(?P<action>[a-z-]+))?/?$"
)


def _target(path: str) -> str:
    match = _SETTLEMENT_PATH.search(path)
    if match is None:
        return "-"
    if match["action"]:
        return f"settlement={match['settlement_id']} action={match['action']}"
    return f"settlement={match['settlement_id']}"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, slow_request_ms: float = 2000.0):
        super().__init__(app)
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id

        start = time.monotonic()
        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000

        response.headers[REQUEST_ID_HEADER] = request_id

        level = logging.INFO
        if response.status_code >= 500 or duration_ms > self.slow_request_ms:
            level = logging.WARNING
        logger.log(
            level,
            "%s %s %d %.1fms %s req=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            _target(request.url.path),
            request_id,
        )
        return response
