"""
Security and Authentication
API key authentication for the sync and OAuth admin endpoints

SECURITY FEATURES:
- X-API-Key header checked against ADMIN_API_KEY
- Timing-safe comparison
- Open access when ADMIN_API_KEY is unset (local development only)
"""
import logging
import hmac
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from app.core.config import settings

logger = logging.getLogger(__name__)

api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Depends(api_key_scheme)) -> bool:
    """
    Verify the admin API key.

    Returns:
        True if the key matches (or no key is configured)

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    if not settings.admin_api_key:
        if settings.environment == "production":
            logger.warning("⚠️  ADMIN_API_KEY not configured - admin endpoints are open")
        return True

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required (X-API-Key header)"
        )

    # Timing-safe comparison (prevents timing attacks)
    if not hmac.compare_digest(api_key, settings.admin_api_key):
        logger.warning(f"Invalid API key attempt: {api_key[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )

    return True
