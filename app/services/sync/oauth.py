"""
PracticePanther OAuth token lifecycle
Supplies a bearer token valid for at least the refresh buffer, rotating it
through the refresh-token grant when it gets close to expiry.

Provider facts:
- Access tokens expire in 24 hours (expires_in=86400 when not sent)
- Refresh tokens are valid for 60 days or until used
- Token endpoint takes form-encoded grant_type/refresh_token|code/client_id/client_secret
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from app.core.config import Settings
from app.core.errors import AuthorizationError, AuthorizationRequired, PersistenceError, TransientNetworkError
from app.models.schemas import OAuthToken, TokenState, TokenStatus
from app.services.sync.database import SupabaseTokenStore

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 86400
EXPIRING_SOON_WINDOW = timedelta(minutes=60)

# invalid_grant / invalid_client come back as 400 or 401
CREDENTIAL_REJECTED_STATUSES = {400, 401, 403}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _token_preview(token: Optional[str]) -> str:
    return f"{token[:6]}..." if token else "MISSING"


class TokenManager:
    """
    Owns the provider credential for every sync flow in the process.

    Resolution order for get_valid_access_token():
        in-memory cache -> stored active token -> refresh grant

    All cache writes and token rotations happen under one asyncio.Lock, so
    concurrent flows that find an expiring token trigger a single refresh and
    the rest reuse its result.
    """

    def __init__(
        self,
        token_store: SupabaseTokenStore,
        http_client: httpx.AsyncClient,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = token_store
        self.http_client = http_client
        self.settings = settings
        self.provider = settings.pp_provider_name
        self.refresh_buffer = timedelta(seconds=settings.token_refresh_buffer_seconds)
        self._clock = clock or _utcnow
        self._lock = asyncio.Lock()
        self._cached: Optional[OAuthToken] = None
        self.state = TokenState.NO_TOKEN

    # ========================================================================
    # ACCESS TOKEN
    # ========================================================================

    def _cached_access_token(self) -> Optional[str]:
        if self._cached and self._cached.is_valid_for(self.refresh_buffer, self._clock()):
            return self._cached.access_token
        return None

    async def get_valid_access_token(self) -> str:
        """
        Return an access token valid for at least the refresh buffer (5 minutes).

        Raises:
            AuthorizationRequired: no token stored, or the refresh credential
                was rejected (all tokens for the provider are deactivated)
            TransientNetworkError: refresh failed on timeout/5xx; stored token
                is left untouched so the caller may retry
            PersistenceError: the refreshed token could not be activated
        """
        token = self._cached_access_token()
        if token:
            logger.debug("🟢 PP: Using cached valid token")
            return token

        async with self._lock:
            # Another flow may have refreshed while we waited
            token = self._cached_access_token()
            if token:
                return token

            stored = await self.store.get_active(self.provider)
            if stored is None:
                self._cached = None
                if self.state != TokenState.REVOKED:
                    self.state = TokenState.NO_TOKEN
                raise AuthorizationRequired("No PracticePanther token found. OAuth authorization required.")

            now = self._clock()
            if stored.is_valid_for(self.refresh_buffer, now):
                logger.info("🟢 PP: Using stored valid token")
                self._cached = stored
                self.state = TokenState.VALID
                await self.update_last_used()
                return stored.access_token

            self.state = TokenState.EXPIRING_SOON
            if not stored.refresh_token:
                await self._revoke("stored token has no refresh token")
                raise AuthorizationRequired("PracticePanther token expired and cannot be refreshed. Re-authorization required.")

            logger.info("🔄 PP: Token expiring soon/expired, refreshing...")
            refreshed = await self._rotate(stored.refresh_token)
            return refreshed.access_token

    def invalidate_cache(self) -> None:
        """Drop the cached token so the next call re-reads storage."""
        self._cached = None

    # ========================================================================
    # REFRESH GRANT
    # ========================================================================

    async def refresh_token(self, refresh_token: str) -> Optional[OAuthToken]:
        """
        Exchange a refresh token for a new access token and persist it.

        Returns the new token record, or None when the refresh failed. A
        rejected credential also deactivates every token for the provider;
        a network failure leaves storage untouched.
        """
        async with self._lock:
            try:
                return await self._rotate(refresh_token)
            except AuthorizationError as e:
                logger.error(f"❌ PP: Token refresh rejected: {e}")
                return None
            except TransientNetworkError as e:
                logger.error(f"❌ PP: Token refresh failed (transient): {e}")
                return None
            except PersistenceError as e:
                logger.error(f"❌ PP: Token refresh could not be stored: {e}")
                return None

    async def manual_refresh(self) -> bool:
        """Refresh from the stored active token regardless of its expiry."""
        stored = await self.store.get_active(self.provider)
        if stored is None or not stored.refresh_token:
            logger.warning("⚠️ PP: Manual refresh requested but no refreshable token is stored")
            return False
        return await self.refresh_token(stored.refresh_token) is not None

    async def _rotate(self, refresh_token: str) -> OAuthToken:
        # Caller holds self._lock
        self.state = TokenState.REFRESHING
        try:
            payload = await self._post_token_endpoint({
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.settings.pp_client_id,
                "client_secret": self.settings.pp_client_secret,
            })
        except AuthorizationError as e:
            await self._revoke(str(e))
            raise AuthorizationRequired(f"PracticePanther refresh token rejected. Re-authorization required. ({e})")
        except TransientNetworkError:
            self.state = TokenState.EXPIRING_SOON
            raise

        # Provider may not rotate the refresh token; keep the old one then
        token = self._token_from_payload(payload, fallback_refresh_token=refresh_token)
        try:
            stored = await self.store.rotate(token)
        except PersistenceError as e:
            logger.error(f"❌ PP: Refreshed token could not be stored: {e}")
            self._cached = None
            self.state = TokenState.EXPIRING_SOON
            raise
        self._cached = stored
        self.state = TokenState.VALID

        if not stored.is_valid_for(self.refresh_buffer, self._clock()):
            logger.warning(f"⚠️ PP: Refreshed token already inside the refresh buffer (expires {stored.expires_at.isoformat()})")

        logger.info(f"✅ PP: Token refreshed, expires at {stored.expires_at.isoformat()}")
        return stored

    async def _revoke(self, reason: str) -> None:
        logger.error(f"🔒 PP: Deactivating stored tokens ({reason})")
        self._cached = None
        self.state = TokenState.REVOKED
        await self.store.deactivate_all(self.provider)

    # ========================================================================
    # AUTHORIZATION CODE FLOW
    # ========================================================================

    def build_authorization_url(self, redirect_uri: Optional[str] = None, state: Optional[str] = None) -> str:
        """Provider consent URL for the initial authorization."""
        params = {
            "response_type": "code",
            "client_id": self.settings.pp_client_id,
            "redirect_uri": redirect_uri or self.settings.pp_redirect_uri or "",
            "scope": self.settings.pp_scope,
        }
        if state:
            params["state"] = state
        return f"{self.settings.pp_authorize_url}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str, redirect_uri: Optional[str] = None) -> OAuthToken:
        """
        Initial authorization-code exchange. Leaves REVOKED/NO_TOKEN.

        Raises:
            AuthorizationError: code rejected
            TransientNetworkError: provider unreachable
        """
        payload = await self._post_token_endpoint({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.settings.pp_client_id,
            "client_secret": self.settings.pp_client_secret,
            "redirect_uri": redirect_uri or self.settings.pp_redirect_uri or "",
        })
        token = self._token_from_payload(payload)

        async with self._lock:
            stored = await self.store.rotate(token)
            self._cached = stored
            self.state = TokenState.AUTHORIZED

        logger.info("✅ PP: Initial OAuth token obtained and stored")
        return stored

    # ========================================================================
    # HTTP
    # ========================================================================

    async def _post_token_endpoint(self, form: Dict[str, str]) -> Dict[str, Any]:
        grant = form.get("grant_type")
        logger.info(f"🔄 PP: POST token endpoint ({grant})")

        try:
            response = await self.http_client.post(
                self.settings.pp_token_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.settings.request_timeout_seconds
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Token endpoint timed out: {e}")
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Token endpoint unreachable: {e}")

        if response.status_code in CREDENTIAL_REJECTED_STATUSES:
            logger.error(f"PP token error details: {response.status_code} - {response.text[:500]}")
            raise AuthorizationError(f"Token endpoint returned {response.status_code}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(
                f"Token endpoint returned {response.status_code}",
                status_code=response.status_code
            )

        if response.status_code != 200:
            raise AuthorizationError(f"Unexpected token endpoint status {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            raise TransientNetworkError("Token endpoint returned a non-JSON body")

        if not payload.get("access_token"):
            raise AuthorizationError(f"No access token in {grant} response")

        return payload

    def _token_from_payload(self, payload: Dict[str, Any], fallback_refresh_token: Optional[str] = None) -> OAuthToken:
        now = self._clock()
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        return OAuthToken(
            provider=self.provider,
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or fallback_refresh_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_at=now + timedelta(seconds=expires_in),
            scope=payload.get("scope"),
            is_active=True,
            last_used_at=now,
            created_at=now,
            provider_data={"expires_in": expires_in, "refreshed_at": now.isoformat()},
        )

    # ========================================================================
    # MONITORING
    # ========================================================================

    async def update_last_used(self) -> None:
        try:
            await self.store.touch_last_used(self.provider, self._clock())
        except Exception as e:
            logger.error(f"❌ PP: Error updating last used: {e}")

    async def get_token_status(self) -> TokenStatus:
        """Classify the stored token without refreshing or writing anything."""
        try:
            stored = await self.store.get_active(self.provider)
        except Exception as e:
            return TokenStatus(status="error", message=str(e), state=self.state)

        if stored is None:
            state = TokenState.REVOKED if self.state == TokenState.REVOKED else TokenState.NO_TOKEN
            return TokenStatus(status="no_token", message="No token found", state=state)

        now = self._clock()
        minutes = int((stored.expires_at - now).total_seconds() // 60)
        common = {
            "expires_at": stored.expires_at,
            "minutes_until_expiry": minutes,
            "has_refresh_token": bool(stored.refresh_token),
            "last_used_at": stored.last_used_at,
        }

        if stored.expires_at <= now:
            return TokenStatus(
                status="expired",
                message=f"Token expired {abs(minutes)} minutes ago",
                state=TokenState.EXPIRING_SOON,
                **common
            )
        if stored.expires_at - now < EXPIRING_SOON_WINDOW:
            return TokenStatus(
                status="expiring_soon",
                message=f"Token expires in {minutes} minutes",
                state=TokenState.EXPIRING_SOON,
                **common
            )
        return TokenStatus(
            status="valid",
            message=f"Token valid for {minutes // 60} hours",
            state=TokenState.VALID,
            **common
        )
