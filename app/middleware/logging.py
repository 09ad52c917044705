"""
Request Logging Middleware
One log line per HTTP request, tagged with a request id

Sync triggers can hold a request open for minutes, so the line is written on
completion with the elapsed time; /health probes are logged at DEBUG only.
"""
import logging
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Reuses an incoming X-Request-ID (or generates one) and echoes it back."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id

        level = logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO
        logger.log(
            level,
            f"[{request_id}] {request.method} {request.url.path} - {response.status_code} ({elapsed_ms}ms)",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
            }
        )
        return response
