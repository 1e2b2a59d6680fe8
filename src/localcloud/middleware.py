"""Request logging middleware.

One structured log line per request. The endpoint stores what it resolved
(service, operation, namespace, request id) on ``request.state``; requests
that never reach the endpoint are logged without them.
"""

from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Request state attributes copied into the log line
_STATE_FIELDS = ("service", "operation", "namespace", "request_id", "error_code")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of every request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        extra: dict[str, object] = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
        }
        for name in _STATE_FIELDS:
            value = getattr(request.state, name, None)
            if value is not None:
                extra[name] = value

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "Request served", extra=extra)
        return response
