"""
HTTP request tracing for the dispatch API.

Every response carries ``X-Request-ID`` (echoed from the caller when
present) and ``X-Process-Time``. The id is also placed in the log
context, so a send triggered by ``POST /send`` logs under the same id
as the request line that closes it.

Liveness polls and the docs pages are served silently.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        set_request_context(
            request_id=request_id,
            method=request.method,
            endpoint=path,
            client_ip=request.client.host if request.client else "unknown",
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = _elapsed_ms(start)
            logger.error(
                "%s %s crashed after %.1fms",
                request.method, path, elapsed,
                extra={"duration_ms": elapsed, "status_code": 500, "endpoint": path},
            )
            set_request_context()
            raise

        elapsed = _elapsed_ms(start)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            # failed sends are still 200; only HTTP-level errors raise the level
            level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                level,
                "%s %s %d in %.1fms",
                request.method, path, response.status_code, elapsed,
                extra={"duration_ms": elapsed, "status_code": response.status_code, "endpoint": path},
            )

        set_request_context()
        return response
