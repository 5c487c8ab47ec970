"""Request context middleware: request ids and the access log.

Each HTTP request gets an id (the caller's X-Request-ID if sent) that is echoed
back and attached to error bodies. Once the response is ready one access line
is logged. It names the route template rather than the concrete path, so
record ids stay out of the log, and identifies the caller only by a hash of
the principal the auth dependency placed on request.state.
"""

import hashlib
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import HTTPConnection, Request
from starlette.responses import Response

from consenthub.core.policy import Principal

logger = logging.getLogger("consenthub.access")

REQUEST_ID_HEADER = "X-Request-ID"


def principal_tag(principal: Principal | None) -> str:
    """Stable, non-reversible tag for a principal in logs: 12 hex chars of SHA-256."""
    if principal is None:
        return "-"
    return hashlib.sha256(str(principal.user_id).encode()).hexdigest()[:12]


def client_ip(connection: HTTPConnection) -> str | None:
    return connection.client.host if connection.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id

        route = request.scope.get("route")
        logger.info(
            "request_id=%s principal=%s method=%s route=%s status=%d elapsed_ms=%.1f",
            request_id,
            principal_tag(getattr(request.state, "principal", None)),
            request.method,
            getattr(route, "path", request.url.path),
            response.status_code,
            elapsed_ms,
        )
        return response
