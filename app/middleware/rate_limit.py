"""
Rate Limiting Middleware
Inbound request limits using slowapi

RATE LIMITS:
- Global: 100 requests/minute per caller (default)
- Sync triggers: 10/minute (each one fans out to hundreds of provider calls)
- OAuth endpoints: 20/hour per caller

Callers presenting an X-API-Key are keyed by a key prefix, others by IP.
"""
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

logger = logging.getLogger(__name__)

SYNC_TRIGGER_LIMIT = "10/minute"
OAUTH_LIMIT = "20/hour"


def rate_limit_key_func(request: Request) -> str:
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"key:{api_key[:8]}"

    ip = get_remote_address(request)
    logger.debug(f"Rate limit key: ip={ip}")
    return f"ip:{ip}"


limiter = Limiter(
    key_func=rate_limit_key_func,
    default_limits=["100/minute"],
    storage_uri="memory://",  # single instance; use a redis:// URI when scaled out
)
