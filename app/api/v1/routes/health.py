"""
Health Check Routes
System status and diagnostics
"""
import logging
from fastapi import APIRouter, Request

from app.core.config import settings
from app.core.dependencies import get_redis
from app.models.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Liveness plus a cheap view of the PracticePanther connection.

    "degraded" means the service is up but syncs would stop on the token check.
    """
    context = getattr(request.app.state, "sync_context", None)
    token_status = None
    if context is not None:
        token_status = (await context.token_manager.get_token_status()).status

    status = "healthy"
    if token_status in ("no_token", "error"):
        status = "degraded"

    return HealthResponse(
        status=status,
        version=VERSION,
        record_store=settings.record_store_backend,
        token_status=token_status,
        queue="redis" if get_redis() is not None else "unavailable",
    )


@router.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "PracticePanther Sync API",
        "version": VERSION,
        "description": "OAuth token lifecycle and PracticePanther -> platform data sync",
        "endpoints": {
            "health": "/health",
            "oauth": {
                "status": "/oauth/practicepanther/status",
                "auth_url": "/oauth/practicepanther/auth-url",
                "refresh": "/oauth/practicepanther/refresh"
            },
            "sync": {
                "entity": "/sync/{entity_type}",
                "full": "/sync/full",
                "status": "/sync/status"
            }
        }
    }
