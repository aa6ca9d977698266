"""
Request middleware: correlation IDs and timing for the HTTP boundary.

Every assessment request gets an ``X-Request-ID`` (reused when the caller
sends one) that is placed in the logging context, so the provider-level log
lines of one fan-out can be grouped together.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from hazard_engine.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

# Docs and liveness probes are not access-logged
_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line per request; stamps X-Request-ID and X-Process-Time."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = _elapsed_ms(start)
            logger.error(
                "%s %s -> 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500},
            )
            set_request_context()
            raise

        duration_ms = _elapsed_ms(start)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                log_level,
                "%s %s -> %d (%.1fms) [%s]",
                request.method, path, response.status_code,
                duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_request_context()
        return response
