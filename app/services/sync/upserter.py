"""
Batch upserter
Writes transformed rows in bounded batches keyed on the entity's unique key.

Granularity: each batch is tried as one atomic write. When the store rejects
it, the batch is replayed one record at a time so a single bad row costs
exactly one failure and the rest of the batch still lands.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from app.core.errors import PersistenceError, RateLimitError, TransientNetworkError
from app.models.schemas import UpsertResult
from app.services.sync.entities import EntityConfig
from app.services.sync.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

SYNCED_AT_COLUMN = "pp_synced_at"


class BatchUpserter:
    """
    Idempotent: the same rows upserted twice leave one row per key, with the
    second pass counted as updates.
    """

    def __init__(
        self,
        record_store,
        rate_limiter: RateLimiter,
        error_sample_size: int = 20,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.record_store = record_store
        self.rate_limiter = rate_limiter
        self.error_sample_size = error_sample_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _note_error(self, result: UpsertResult, message: str) -> None:
        if len(result.errors) < self.error_sample_size:
            result.errors.append(message)

    async def _write(self, config: EntityConfig, rows: List[Dict[str, Any]]) -> Optional[int]:
        return await self.rate_limiter.call(
            lambda: self.record_store.upsert(config.table, rows, config.unique_key),
            description=f"upsert {config.table} ({len(rows)} rows)"
        )

    @staticmethod
    def _count_created(config: EntityConfig, rows: List[Dict[str, Any]], inserted: Optional[int], new_keys: Set[str]) -> int:
        if inserted is not None:
            return inserted
        return sum(1 for row in rows if str(row.get(config.unique_key)) in new_keys)

    async def upsert_all(
        self,
        config: EntityConfig,
        rows: List[Dict[str, Any]],
        new_keys: Set[str],
        batch_size: int,
        result: Optional[UpsertResult] = None
    ) -> UpsertResult:
        """
        Upsert `rows` into config.table.

        Args:
            config: entity config (table and conflict key)
            rows: transformed rows, one per unique external id
            new_keys: external ids known to be absent locally before the run;
                used to split created/updated when the store cannot tell
            batch_size: rows per write
            result: accumulator to fill; counts survive a SyncCancelled

        SyncCancelled propagates between batches and between per-record retries.
        """
        if result is None:
            result = UpsertResult()
        if not rows:
            return result

        total_batches = (len(rows) + batch_size - 1) // batch_size
        logger.info(f"💾 Upserting {len(rows)} {config.name} into {config.table} ({total_batches} batch(es) of {batch_size})")

        for index in range(0, len(rows), batch_size):
            self.rate_limiter.check_cancelled()
            if index > 0:
                await self.rate_limiter.pace()

            synced_at = self._clock().isoformat()
            batch = [{**row, SYNCED_AT_COLUMN: synced_at} for row in rows[index:index + batch_size]]
            batch_number = index // batch_size + 1
            result.batches += 1

            try:
                inserted = await self._write(config, batch)
            except RateLimitError as e:
                # Throttled batches are not replayed row by row
                result.failed_batches += 1
                result.failed += len(batch)
                self._note_error(result, f"{config.name} batch {batch_number}: {e}")
                logger.error(f"❌ {config.name} batch {batch_number}/{total_batches} still throttled, {len(batch)} rows not written")
                continue
            except (PersistenceError, TransientNetworkError) as e:
                result.failed_batches += 1
                logger.warning(
                    f"⚠️ {config.name} batch {batch_number}/{total_batches} rejected ({e}), "
                    f"retrying {len(batch)} rows one at a time"
                )
                await self._upsert_one_by_one(config, batch, new_keys, result)
                continue

            created = self._count_created(config, batch, inserted, new_keys)
            result.created += created
            result.updated += len(batch) - created
            logger.info(f"   ✅ Batch {batch_number}/{total_batches}: {len(batch)} rows")

        logger.info(
            f"✅ {config.name}: {result.created} created, {result.updated} updated, {result.failed} failed"
        )
        return result

    async def _upsert_one_by_one(
        self,
        config: EntityConfig,
        batch: List[Dict[str, Any]],
        new_keys: Set[str],
        result: UpsertResult
    ) -> None:
        for position, row in enumerate(batch):
            if position > 0:
                await self.rate_limiter.pace()
            key = row.get(config.unique_key)
            try:
                inserted = await self._write(config, [row])
            except (PersistenceError, TransientNetworkError) as e:
                result.failed += 1
                self._note_error(result, f"{config.name} {key}: {e}")
                logger.error(f"❌ {config.name} {key} failed: {e}")
                continue

            created = self._count_created(config, [row], inserted, new_keys)
            result.created += created
            result.updated += 1 - created
