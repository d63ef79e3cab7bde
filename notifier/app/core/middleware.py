"""
Request middleware — correlation IDs, acting user, access log.

Every API call runs inside a log context carrying ``request_id`` and
``actor_id`` so that lines emitted by the service, the subscription
manager and the dispatcher for that call can be tied together.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from notifier.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"
REQUEST_ID_HEADER = "X-Request-ID"

# Not worth an access-log line
_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/health")


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tag the request with a correlation id and the acting user, then log
    method, path, status and duration once the response is ready.

    The correlation id is taken from ``X-Request-ID`` when the caller sends
    one and echoed back in the response either way.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        actor_id = request.headers.get(ACTOR_HEADER, "anonymous")
        path = request.url.path
        start = time.perf_counter()

        with log_context(request_id=request_id, actor_id=actor_id, method=request.method):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s raised after %.1fms [actor=%s]",
                    request.method, path, (time.perf_counter() - start) * 1000, actor_id,
                    extra={"status_code": 500, "endpoint": path},
                )
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

            if not path.startswith(_QUIET_PREFIXES):
                logger.log(
                    _level_for(response.status_code),
                    "%s %s → %d (%.1fms) [actor=%s]",
                    request.method, path, response.status_code, duration_ms, actor_id,
                    extra={
                        "duration_ms": duration_ms,
                        "status_code": response.status_code,
                        "endpoint": path,
                    },
                )
        return response
