"""
Global Error Handler Middleware
Catches unhandled exceptions and returns structured error responses

MAPPING:
- AuthorizationError -> 401 with a re-authorization hint
- other SyncError    -> 502 (upstream provider or store failed)
- anything else      -> 500
"""
import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.errors import AuthorizationError, SyncError

logger = logging.getLogger(__name__)

REAUTHORIZE_HINT = "Visit /oauth/practicepanther/auth-url to re-authorize PracticePanther"


def error_response(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, AuthorizationError):
        logger.warning(f"🔒 {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=401,
            content={
                "detail": str(exc),
                "error_type": type(exc).__name__,
                "hint": REAUTHORIZE_HINT,
                "path": request.url.path
            }
        )

    if isinstance(exc, SyncError):
        logger.error(f"❌ {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=502,
            content={
                "detail": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path
            }
        )

    logger.error(
        "Unhandled exception during request",
        exc_info=exc,
        extra={
            "path": request.url.path,
            "method": request.method,
            "client_host": request.client.host if request.client else None
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_type": type(exc).__name__,
            "path": request.url.path
        }
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Global error handler middleware.
    Catches all unhandled exceptions and returns JSON error responses.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            return error_response(request, exc)
