"""
OAuth Routes
PracticePanther authorization-code flow, token status and manual refresh

SECURITY:
- Status, auth-url and refresh require the admin API key
- The callback is hit by the provider redirect, so it is protected by the
  one-time `state` issued with the auth URL instead
- Rate limited to prevent OAuth abuse
"""
import logging
import secrets
import time
from typing import Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.core.dependencies import get_sync_context
from app.core.errors import AuthorizationError, TransientNetworkError
from app.core.security import verify_api_key
from app.middleware.rate_limit import OAUTH_LIMIT, limiter
from app.models.schemas import TokenStatus
from app.services.sync.orchestration.pp_sync import SyncContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth/practicepanther", tags=["oauth"])

STATE_TTL_SECONDS = 600

# state -> issued-at (monotonic); single process only
_pending_states: Dict[str, float] = {}


def issue_state() -> str:
    now = time.monotonic()
    for state, issued in list(_pending_states.items()):
        if now - issued > STATE_TTL_SECONDS:
            del _pending_states[state]
    state = secrets.token_urlsafe(24)
    _pending_states[state] = now
    return state


def consume_state(state: Optional[str]) -> bool:
    if not state:
        return False
    issued = _pending_states.pop(state, None)
    return issued is not None and time.monotonic() - issued <= STATE_TTL_SECONDS


@router.get("/status", response_model=TokenStatus, dependencies=[Depends(verify_api_key)])
async def token_status(context: SyncContext = Depends(get_sync_context)):
    """no_token / expired / expiring_soon / valid, with expiry diagnostics. Never refreshes."""
    return await context.token_manager.get_token_status()


@router.get("/auth-url", dependencies=[Depends(verify_api_key)])
@limiter.limit(OAUTH_LIMIT)
async def authorization_url(
    request: Request,
    redirect_uri: Optional[str] = Query(None, description="Override the configured redirect URI"),
    context: SyncContext = Depends(get_sync_context)
):
    """Consent URL to start (or redo after REVOKED) the authorization-code flow."""
    state = issue_state()
    url = context.token_manager.build_authorization_url(redirect_uri=redirect_uri, state=state)
    logger.info("🔗 PP authorization URL issued")
    return {"auth_url": url, "state": state}


@router.get("/callback")
@limiter.limit(OAUTH_LIMIT)
async def oauth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    context: SyncContext = Depends(get_sync_context)
):
    """
    Provider redirect target. Exchanges the code and stores the token as the
    single active one.
    """
    if error:
        logger.error(f"❌ PP authorization denied: {error}")
        raise HTTPException(status_code=400, detail=f"Authorization failed: {error}")

    if not consume_state(state):
        logger.warning("⚠️ PP callback with unknown or expired state")
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")

    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    try:
        token = await context.token_manager.exchange_code_for_token(code)
    except AuthorizationError as e:
        raise HTTPException(status_code=400, detail=f"Authorization code rejected: {e}")
    except TransientNetworkError as e:
        raise HTTPException(status_code=502, detail=f"PracticePanther token endpoint unavailable: {e}")

    return {
        "success": True,
        "message": "PracticePanther connected",
        "expires_at": token.expires_at.isoformat(),
    }


@router.post("/refresh", dependencies=[Depends(verify_api_key)])
@limiter.limit(OAUTH_LIMIT)
async def manual_refresh(request: Request, context: SyncContext = Depends(get_sync_context)):
    """Force a refresh-token grant regardless of the current token's expiry."""
    refreshed = await context.token_manager.manual_refresh()
    if not refreshed:
        status = await context.token_manager.get_token_status()
        return {"success": False, "message": "Token refresh failed", "token_status": status.model_dump(mode="json")}
    return {"success": True, "message": "Token refreshed"}
