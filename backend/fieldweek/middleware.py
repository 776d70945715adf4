from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

_SKIP_LOG = frozenset({"/healthz"})
SLOW_THRESHOLD_MS = 1000


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log each request with its duration and expose it as ``X-Request-Duration-Ms``."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = request_id

        if request.url.path in _SKIP_LOG:
            return response
        extra = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "request_id": request_id,
        }
        if duration_ms > SLOW_THRESHOLD_MS:
            logger.warning(
                "Slow request: %s %s %d (%.0fms)",
                request.method, request.url.path, response.status_code, duration_ms, extra=extra,
            )
        elif response.status_code >= 500:
            logger.error(
                "Server error: %s %s %d (%.0fms)",
                request.method, request.url.path, response.status_code, duration_ms, extra=extra,
            )
        else:
            logger.debug(
                "Request: %s %s %d",
                request.method, request.url.path, response.status_code, extra=extra,
            )
        return response
