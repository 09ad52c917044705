"""
PracticePanther sync engine
Runs one entity type end to end:

1. TOKEN_CHECK   - a bearer token valid for at least the refresh buffer
2. EXTRACTING    - every page of the listing endpoint
3. RECONCILING   - dedupe, diff against local external ids, pick by mode
4. UPSERTING     - transform, resolve references, batch upsert
5. REPORTING     - summary + sync_logs row

An AuthorizationError at any point stops the run as stopped_token_invalid.
Rows committed before the stop stay committed, so a rerun picks up where
this one left off.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from supabase import Client

from app.core.config import Settings
from app.core.errors import AuthorizationError, DataShapeError, SyncCancelled, SyncError
from app.models.schemas import DiffResult, ExternalEntity, RunState, SyncMode, SyncReport, UpsertResult
from app.services.sync.database import SupabaseTokenStore, SyncLogStore
from app.services.sync.entities import SYNC_ORDER, EntityConfig, get_entity_config
from app.services.sync.extractor import PaginatedExtractor
from app.services.sync.oauth import TokenManager
from app.services.sync.persistence import build_record_store
from app.services.sync.providers.practicepanther import PracticePantherClient
from app.services.sync.rate_limiter import RateLimiter
from app.services.sync.reconciliation import diff
from app.services.sync.upserter import BatchUpserter

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class SyncContext:
    """Everything a sync flow needs. Flows share only the token manager's state."""
    settings: Settings
    http_client: httpx.AsyncClient
    token_manager: TokenManager
    client: PracticePantherClient
    record_store: Any
    log_store: Optional[SyncLogStore] = None


def build_sync_context(
    settings: Settings,
    http_client: httpx.AsyncClient,
    supabase: Client,
    record_store: Any = None
) -> SyncContext:
    token_manager = TokenManager(SupabaseTokenStore(supabase), http_client, settings)
    return SyncContext(
        settings=settings,
        http_client=http_client,
        token_manager=token_manager,
        client=PracticePantherClient(http_client, token_manager, settings),
        record_store=record_store or build_record_store(settings, supabase),
        log_store=SyncLogStore(supabase, source=settings.pp_provider_name),
    )


# ============================================================================
# HELPERS
# ============================================================================

def select_for_mode(result: DiffResult, mode: SyncMode) -> List[ExternalEntity]:
    if mode == SyncMode.MISSING_ONLY:
        return list(result.missing)
    if mode == SyncMode.FULL:
        return list(result.missing) + list(result.matched)
    return list(result.missing) + list(result.changed)


async def resolve_references(record_store, config: EntityConfig, rows: List[Dict[str, Any]]) -> None:
    """Fill reference columns in place with local ids; unresolved -> None."""
    for ref in config.references:
        values = {row.get(ref.source_column) for row in rows if row.get(ref.source_column)}
        lookup = await record_store.lookup_ids(ref.table, ref.key, values) if values else {}
        resolved = 0
        for row in rows:
            source = row.get(ref.source_column)
            row[ref.column] = lookup.get(str(source)) if source else None
            if row[ref.column] is not None:
                resolved += 1
        logger.info(f"🔗 {config.name}.{ref.column}: resolved {resolved}/{len(rows)} against {ref.table}.{ref.key}")


def overall_status(reports: List[SyncReport]) -> str:
    statuses = {r.status for r in reports}
    if not statuses:
        return "success"
    if "stopped_token_invalid" in statuses:
        return "stopped_token_invalid"
    if "cancelled" in statuses:
        return "cancelled"
    if statuses == {"success"}:
        return "success"
    if statuses == {"failed"}:
        return "failed"
    return "partial"


def _final_status(report: SyncReport, incomplete: bool) -> str:
    """failed only when nothing was synced or confirmed unchanged."""
    if report.failed == 0 and not incomplete and not report.hit_safety_limit:
        return "success"
    handled = report.synced + report.skipped
    if handled == 0 and (report.failed > 0 or report.fetched == 0):
        return "failed"
    return "partial"


async def _finish(context: SyncContext, report: SyncReport) -> SyncReport:
    report.completed_at = datetime.now(timezone.utc)
    if context.log_store is not None:
        await context.log_store.record_run(report)

    logger.info("=" * 80)
    logger.info(f"📊 PP {report.entity_type} sync {report.status} ({report.mode.value}) in {report.duration_seconds}s")
    logger.info(f"   Fetched: {report.fetched}  Synced: {report.synced} (created {report.created}, updated {report.updated})")
    logger.info(f"   Skipped: {report.skipped}  Failed: {report.failed}  Pages: {report.pages}")
    logger.info("=" * 80)
    return report


# ============================================================================
# SINGLE ENTITY TYPE
# ============================================================================

async def run_sync(
    context: SyncContext,
    entity_type: str,
    mode: SyncMode = SyncMode.INCREMENTAL,
    since: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Optional[Sleep] = None
) -> SyncReport:
    """
    Sync one entity type.

    Args:
        context: shared sync context
        entity_type: one of SYNC_ORDER
        mode: incremental (missing + changed), missing_only or full
        since: optional ISO timestamp sent to the provider as updated_since
        cancel_event: set it to stop at the next page/batch/wait boundary
        sleep: replacement for waits (tests)

    Returns:
        SyncReport; status is never "success" when anything failed or the
        extraction was cut short

    Raises:
        ValueError: unknown entity type
    """
    config = get_entity_config(entity_type)
    settings = context.settings
    limiter = RateLimiter.from_settings(settings, cancel_event=cancel_event, sleep=sleep)
    report = SyncReport(entity_type=entity_type, mode=mode)
    upsert_result = UpsertResult()
    incomplete = False

    logger.info(f"🚀 Starting PP {entity_type} sync (mode={mode.value}, since={since or 'beginning'})")

    try:
        report.state = RunState.TOKEN_CHECK
        await context.token_manager.get_valid_access_token()

        report.state = RunState.EXTRACTING
        extraction = await PaginatedExtractor(context.client, limiter).fetch_all(
            config,
            page_size=config.page_size or settings.sync_page_size,
            safety_page_limit=settings.sync_safety_page_limit,
            params={"updated_since": since} if since else None,
        )
        report.fetched = len(extraction.entities)
        report.pages = extraction.pages_requested
        report.hit_safety_limit = extraction.hit_safety_limit
        report.failed += extraction.malformed
        report.errors.extend(extraction.errors[:settings.sync_error_sample_size])
        incomplete = extraction.incomplete

        report.state = RunState.RECONCILING
        limiter.check_cancelled()
        existing_ids = await context.record_store.fetch_existing_ids(config.table, config.unique_key)
        versions = None
        if mode == SyncMode.INCREMENTAL and config.version_column:
            versions = await context.record_store.fetch_existing_versions(
                config.table, config.unique_key, config.version_column
            )
        result = diff(extraction.entities, existing_ids, versions)
        selected = select_for_mode(result, mode)
        report.skipped = result.existing_count + result.missing_count - len(selected)
        logger.info(
            f"🔎 {entity_type}: {result.missing_count} missing, {result.existing_count} present "
            f"({len(result.changed)} changed), {result.duplicates_dropped} duplicate(s) dropped, "
            f"{len(selected)} selected"
        )

        rows: List[Dict[str, Any]] = []
        for entity in selected:
            try:
                rows.append(config.transform(entity.payload))
            except DataShapeError as e:
                report.failed += 1
                if len(report.errors) < settings.sync_error_sample_size:
                    report.errors.append(f"{entity_type} {entity.external_id}: {e}")
                logger.warning(f"⚠️ Skipping {entity_type} {entity.external_id}: {e}")
        await resolve_references(context.record_store, config, rows)

        report.state = RunState.UPSERTING
        await BatchUpserter(
            context.record_store,
            limiter,
            error_sample_size=settings.sync_error_sample_size,
        ).upsert_all(
            config,
            rows,
            new_keys={e.external_id for e in result.missing},
            batch_size=config.batch_size or settings.sync_batch_size,
            result=upsert_result,
        )

        report.state = RunState.REPORTING
        status = None

    except AuthorizationError as e:
        logger.error(f"🔒 PP {entity_type} sync stopped: {e}")
        report.state = RunState.STOPPED_TOKEN_INVALID
        report.errors.append(str(e))
        status = "stopped_token_invalid"

    except SyncCancelled as e:
        logger.warning(f"🛑 PP {entity_type} sync cancelled during {report.state.value}")
        report.state = RunState.CANCELLED
        report.errors.append(str(e))
        status = "cancelled"

    except SyncError as e:
        logger.error(f"❌ PP {entity_type} sync failed during {report.state.value}: {e}")
        report.errors.append(str(e))
        status = "failed"

    except Exception as e:
        logger.error(f"❌ PP {entity_type} sync crashed during {report.state.value}: {e}", exc_info=True)
        report.errors.append(str(e))
        report.status = "failed"
        await _finish(context, report)
        raise

    report.created = upsert_result.created
    report.updated = upsert_result.updated
    report.synced = upsert_result.synced
    report.failed += upsert_result.failed
    for message in upsert_result.errors:
        if len(report.errors) >= settings.sync_error_sample_size:
            break
        report.errors.append(message)

    report.status = status or _final_status(report, incomplete)
    return await _finish(context, report)


# ============================================================================
# ALL ENTITY TYPES
# ============================================================================

async def run_full_sync(
    context: SyncContext,
    entity_types: Optional[List[str]] = None,
    mode: SyncMode = SyncMode.INCREMENTAL,
    concurrent: bool = False,
    since: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Optional[Sleep] = None
) -> List[SyncReport]:
    """
    Sync several entity types.

    Sequential runs follow SYNC_ORDER (referenced tables first) and stop
    after a run ends stopped_token_invalid or cancelled. Concurrent runs are
    independent flows sharing only the token manager.

    In incremental mode without an explicit `since`, each type resumes from
    its last successful sync in sync_logs.
    """
    requested = entity_types or list(SYNC_ORDER)
    for name in requested:
        get_entity_config(name)
    ordered = [name for name in SYNC_ORDER if name in requested]

    logger.info(f"🚀 Starting PP full sync: {', '.join(ordered)} ({'concurrent' if concurrent else 'sequential'})")

    async def _one(name: str) -> SyncReport:
        run_since = since
        if run_since is None and mode == SyncMode.INCREMENTAL and context.log_store is not None:
            run_since = await context.log_store.last_successful_sync(name)
        return await run_sync(context, name, mode=mode, since=run_since, cancel_event=cancel_event, sleep=sleep)

    if concurrent:
        tasks = [asyncio.create_task(_one(name), name=f"pp-sync-{name}") for name in ordered]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            # No flow outlives this call: cancel the siblings and wait for them
            pending = [task for task in tasks if not task.done()]
            if pending:
                logger.warning(f"🛑 Cancelling {len(pending)} concurrent flow(s) after a crash")
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    reports: List[SyncReport] = []
    for index, name in enumerate(ordered):
        report = await _one(name)
        reports.append(report)
        if report.status in ("stopped_token_invalid", "cancelled"):
            skipped = ordered[index + 1:]
            if skipped:
                logger.warning(f"⚠️ Not running {', '.join(skipped)} after {name} ended {report.status}")
            break

    return reports


# ============================================================================
# STATUS
# ============================================================================

async def get_sync_status(context: SyncContext, recent_limit: int = 10) -> Dict[str, Any]:
    """Token status, recent sync_logs rows and local row counts per entity type."""
    token_status = await context.token_manager.get_token_status()

    counts: Dict[str, Optional[int]] = {}
    for name in SYNC_ORDER:
        config = get_entity_config(name)
        counts[name] = await context.record_store.count(config.table)

    recent = await context.log_store.recent(recent_limit) if context.log_store is not None else []

    return {
        "token": token_status.model_dump(mode="json"),
        "counts": counts,
        "recent_syncs": recent,
    }


async def check_connection(context: SyncContext) -> Dict[str, Any]:
    try:
        return await context.client.test_connection()
    except AuthorizationError as e:
        return {"success": False, "message": str(e)}
