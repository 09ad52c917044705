"""
Dependency Injection
Provides reusable dependencies for FastAPI routes

DEPENDENCIES:
- Supabase client (tokens, sync logs, platform tables)
- Redis client (job queue health)
- HTTP client (PracticePanther API)
- SyncContext (token manager + record store, stored on app.state)
"""
import logging
from typing import Optional

import httpx
import redis
from fastapi import Request
from supabase import create_client, Client

from app.core.config import settings
from app.services.sync.orchestration.pp_sync import SyncContext, build_sync_context

logger = logging.getLogger(__name__)

# ============================================================================
# GLOBAL CLIENTS (initialized once, reused across requests)
# ============================================================================

_supabase_client: Optional[Client] = None
_redis_client: Optional[redis.Redis] = None
_http_client: Optional[httpx.AsyncClient] = None


# ============================================================================
# INITIALIZATION (called on app startup)
# ============================================================================

def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.request_timeout_seconds),
        limits=httpx.Limits(max_keepalive_connections=5, max_connections=10)
    )


async def initialize_clients() -> SyncContext:
    """
    Initialize global clients on app startup and build the sync context.

    Called from main.py lifespan event; the returned context goes on app.state.
    """
    global _supabase_client, _redis_client, _http_client

    logger.info("Initializing global clients...")

    try:
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_service_key  # Backend uses service role
        )
        logger.info("✅ Supabase client initialized")
    except Exception as e:
        logger.error(f"❌ Failed to initialize Supabase: {e}")
        raise

    # Redis (optional for local dev)
    if not settings.redis_url:
        logger.warning("⚠️  REDIS_URL not set - background jobs will not work (OK for local dev)")
        _redis_client = None
    else:
        try:
            _redis_client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5
            )
            _redis_client.ping()
            logger.info("✅ Redis client initialized")
        except redis.RedisError as e:
            logger.warning(f"⚠️  Redis not available: {e}")
            logger.warning("⚠️  Background jobs will not work (OK for local dev)")
            _redis_client = None

    _http_client = create_http_client()
    context = build_sync_context(settings, _http_client, _supabase_client)

    logger.info("✅ All clients initialized successfully")
    return context


async def shutdown_clients():
    """
    Shutdown all global clients on app shutdown.

    Called from main.py lifespan event.
    """
    global _supabase_client, _redis_client, _http_client

    logger.info("Shutting down global clients...")

    if _http_client:
        await _http_client.aclose()
        logger.info("✅ HTTP client closed")

    if _redis_client:
        try:
            _redis_client.close()
            logger.info("✅ Redis client closed")
        except redis.RedisError as e:
            logger.error(f"Error closing Redis: {e}")

    # Supabase doesn't need explicit cleanup
    _supabase_client = None
    _redis_client = None
    _http_client = None

    logger.info("✅ All clients shutdown complete")


# ============================================================================
# DEPENDENCY FUNCTIONS (injected into routes)
# ============================================================================

def get_supabase() -> Client:
    """
    Get Supabase client for dependency injection.

    Raises:
        RuntimeError: called before initialize_clients()
    """
    if _supabase_client is None:
        logger.error("Supabase client not initialized")
        raise RuntimeError("Supabase client not initialized. Call initialize_clients() first.")

    return _supabase_client


def get_redis() -> Optional[redis.Redis]:
    """Redis client, or None when Redis was unavailable at startup."""
    return _redis_client


def get_sync_context(request: Request) -> SyncContext:
    """
    SyncContext built at startup.

    Usage:
        @router.post("/sync/contacts")
        async def sync(context: SyncContext = Depends(get_sync_context)):
            return await run_sync(context, "contacts")
    """
    context = getattr(request.app.state, "sync_context", None)
    if context is None:
        raise RuntimeError("Sync context not initialized. Call initialize_clients() first.")
    return context
