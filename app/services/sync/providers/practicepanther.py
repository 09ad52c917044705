"""
PracticePanther REST API client
Listing calls for matters, contacts, tasks, invoices, expenses and users

Every request asks the TokenManager for a token first, so a token rotated
mid-run is picked up on the next page.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import Settings
from app.core.errors import AuthorizationError, DataShapeError, RateLimitError, TransientNetworkError
from app.services.sync.oauth import TokenManager

logger = logging.getLogger(__name__)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        # HTTP-date form; fall back to configured cooldown
        return None


class PracticePantherClient:
    """Thin async client over the PracticePanther v2 API."""

    def __init__(self, http_client: httpx.AsyncClient, token_manager: TokenManager, settings: Settings):
        self.http_client = http_client
        self.token_manager = token_manager
        self.settings = settings
        self.base_url = settings.pp_api_base_url.rstrip("/")

    async def _get(self, path: str, params: Dict[str, Any]) -> httpx.Response:
        token = await self.token_manager.get_valid_access_token()
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

        try:
            response = await self.http_client.get(
                url,
                headers=headers,
                params=params,
                timeout=self.settings.request_timeout_seconds
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"GET {path} timed out: {e}")
        except httpx.TransportError as e:
            raise TransientNetworkError(f"GET {path} failed: {e}")

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
            raise RateLimitError(f"GET {path} throttled", retry_after=retry_after)

        if response.status_code == 401:
            # Bearer rejected although not expired by our clock
            self.token_manager.invalidate_cache()
            raise AuthorizationError(f"GET {path} rejected the bearer token (401)")

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"GET {path} returned {response.status_code}",
                status_code=response.status_code
            )

        if response.status_code >= 400:
            logger.error(f"❌ PP API error: {response.status_code} - {response.text[:500]}")
            raise DataShapeError(f"GET {path} returned {response.status_code}: {response.text[:200]}")

        return response

    async def list_page(
        self,
        endpoint: str,
        page: int,
        page_size: int,
        params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch one page of a listing endpoint.

        Returns:
            List of raw records (may be shorter than page_size on the last page)

        Raises:
            RateLimitError, TransientNetworkError, AuthorizationError, DataShapeError
        """
        query = {"page": page, "limit": page_size}
        if params:
            query.update(params)

        response = await self._get(endpoint, query)

        try:
            data = response.json()
        except ValueError:
            raise DataShapeError(f"{endpoint} page {page} is not JSON")

        # v2 returns a bare list; some endpoints wrap it as {"data": [...]}
        if isinstance(data, dict):
            data = data.get("data", data.get("items"))
        if not isinstance(data, list):
            raise DataShapeError(f"{endpoint} page {page} is not a list")

        logger.info(f"📄 PP {endpoint} page {page}: {len(data)} records")
        return data

    async def test_connection(self) -> Dict[str, Any]:
        """One-record listing call; reports the provider's rate-limit headers."""
        try:
            response = await self._get("contacts", {"limit": 1})
        except (AuthorizationError, TransientNetworkError, DataShapeError) as e:
            return {"success": False, "message": str(e)}

        return {
            "success": True,
            "message": "Connection successful",
            "api_limit": response.headers.get("x-ratelimit-limit"),
            "api_remaining": response.headers.get("x-ratelimit-remaining"),
            "api_reset": response.headers.get("x-ratelimit-reset"),
        }
