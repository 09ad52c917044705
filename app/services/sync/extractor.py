"""
Paginated extraction
Walks a PracticePanther listing endpoint page by page until a short page or
the safety page limit.

Duplicates across pages are kept here; reconciliation collapses them.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.core.errors import DataShapeError, TransientNetworkError
from app.models.schemas import ExternalEntity, ExtractionResult
from app.services.sync.entities import EntityConfig
from app.services.sync.providers.practicepanther import PracticePantherClient
from app.services.sync.rate_limiter import RateLimiter
from app.services.sync.reconciliation import normalize_external_id

logger = logging.getLogger(__name__)


def to_external_entity(config: EntityConfig, raw: Any, fetched_at: datetime) -> ExternalEntity:
    """Wrap a raw record; raises DataShapeError when it has no usable id."""
    if not isinstance(raw, dict):
        raise DataShapeError(f"{config.name} item is not an object: {type(raw).__name__}")

    external_id = normalize_external_id(raw.get(config.id_field))
    if external_id is None:
        raise DataShapeError(f"{config.name} item without {config.id_field}")

    display = raw.get(config.display_field)
    return ExternalEntity(
        external_id=external_id,
        entity_type=config.name,
        display_name=str(display) if display is not None else None,
        updated_at=raw.get(config.updated_field),
        payload=raw,
        fetched_at=fetched_at,
    )


class PaginatedExtractor:
    """
    fetch_all() issues page requests in increasing order, one at a time.

    Stops when:
    - a page has fewer than page_size items (exhausted, including an empty first page)
    - safety_page_limit pages have been fetched (hit_safety_limit=True)
    - a page fails after retries/cooldowns (incomplete=True; entities so far are kept)

    AuthorizationError and SyncCancelled propagate to the caller.
    """

    def __init__(self, client: PracticePantherClient, rate_limiter: RateLimiter):
        self.client = client
        self.rate_limiter = rate_limiter

    async def fetch_all(
        self,
        config: EntityConfig,
        page_size: int,
        safety_page_limit: int,
        params: Optional[Dict[str, Any]] = None
    ) -> ExtractionResult:
        result = ExtractionResult(entity_type=config.name)
        query = {**config.params, **(params or {})}
        throttles_before = self.rate_limiter.throttle_count
        page = 1

        logger.info(f"🔍 Extracting {config.name} (page_size={page_size}, safety_page_limit={safety_page_limit})")

        while True:
            if result.pages_requested >= safety_page_limit:
                result.hit_safety_limit = True
                logger.warning(f"⚠️ {config.name}: safety page limit {safety_page_limit} reached, stopping extraction")
                break

            if page > 1:
                await self.rate_limiter.pace()

            try:
                records = await self.rate_limiter.call(
                    lambda page=page: self.client.list_page(config.endpoint, page, page_size, query),
                    description=f"{config.name} page {page}"
                )
            except (TransientNetworkError, DataShapeError) as e:
                result.incomplete = True
                result.errors.append(f"{config.name} page {page}: {e}")
                logger.error(f"❌ {config.name} page {page} failed, stopping extraction: {e}")
                break

            result.pages_requested += 1
            fetched_at = datetime.now(timezone.utc)

            for raw in records:
                try:
                    result.entities.append(to_external_entity(config, raw, fetched_at))
                except DataShapeError as e:
                    result.malformed += 1
                    result.errors.append(str(e))

            if len(records) < page_size:
                break
            page += 1

        result.throttled = self.rate_limiter.throttle_count - throttles_before
        logger.info(
            f"✅ Extracted {len(result.entities)} {config.name} in {result.pages_requested} page(s)"
            f" (malformed={result.malformed}, throttled={result.throttled})"
        )
        return result
