"""
PracticePanther Sync Service
============================
Version: 1.0.0

HTTP entry point: admin routes to trigger syncs, inspect the OAuth token and
complete the authorization-code flow.

Layout:
- app/core/: settings, error taxonomy, retries, dependency wiring, API key
- app/middleware/: error handling, request logging, inbound rate limits
- app/models/schemas/: pydantic models
- app/services/sync/: token lifecycle, extraction, reconciliation, upsert
- app/services/jobs/: Dramatiq actors for long runs
- app/api/v1/routes/: health, oauth, sync
"""
import sys
import logging
import traceback
from contextlib import asynccontextmanager
from fastapi import FastAPI

# Fail loudly if settings or imports are broken (missing PP_CLIENT_ID etc.)
try:
    from app.core.config import settings
    from app.core.dependencies import initialize_clients, shutdown_clients
    from app.core.observability import configure_logging, init_sentry

    from app.middleware.error_handler import ErrorHandlerMiddleware
    from app.middleware.logging import RequestLoggingMiddleware
    from app.middleware.rate_limit import limiter

    from app.api.v1.routes.health import router as health_router
    from app.api.v1.routes.oauth import router as oauth_router
    from app.api.v1.routes.sync import router as sync_router

except Exception as e:
    print(f"🚨 FATAL STARTUP ERROR: {e}", file=sys.stderr)
    print(f"Traceback:\n{traceback.format_exc()}", file=sys.stderr)
    sys.exit(1)

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

configure_logging(settings)
logger = logging.getLogger(__name__)

init_sentry(settings, component="api", with_fastapi=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared sync context on startup; close clients on shutdown."""
    logger.info("=" * 80)
    logger.info(f"Starting PracticePanther Sync Service ({settings.environment})")
    logger.info("=" * 80)

    app.state.sync_context = await initialize_clients()
    logger.info(f"✅ Ready: record store={settings.record_store_backend}, port={settings.port}")

    yield

    logger.info("Shutting down PracticePanther Sync Service...")
    app.state.sync_context = None
    await shutdown_clients()
    logger.info("✅ Shutdown complete")


app = FastAPI(
    title="PracticePanther Sync API",
    description="OAuth token lifecycle and PracticePanther data sync",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# Inbound rate limits (slowapi); per-route limits live on the sync/oauth routers
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Outermost last: errors raised by the logging middleware are still caught
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(ErrorHandlerMiddleware)

for router in (health_router, oauth_router, sync_router):
    app.include_router(router)

logger.info(f"✅ Routes registered: {', '.join(r.prefix or '/' for r in (health_router, oauth_router, sync_router))}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )
