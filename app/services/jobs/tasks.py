"""
Dramatiq Background Tasks
Runs PracticePanther syncs and token refreshes outside the request cycle

Dramatiq workers run in separate processes, so every task builds its own
clients and sync context instead of sharing the API process's ones.

A sync job stops early when its sync_jobs row is flagged cancel_requested
(POST /sync/jobs/{job_id}/cancel); the flag is polled every
SYNC_CANCEL_POLL_SECONDS.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import dramatiq
from supabase import Client, create_client

from app.core.config import settings
from app.core.dependencies import create_http_client
from app.models.schemas import SyncMode
from app.services.jobs.broker import broker  # noqa: F401  registers the broker before actors
from app.services.sync.database import is_cancel_requested, update_sync_job
from app.services.sync.orchestration.pp_sync import build_sync_context, overall_status, run_full_sync, run_sync

logger = logging.getLogger(__name__)


def get_supabase_client() -> Client:
    return create_client(settings.supabase_url, settings.supabase_service_key)


async def _sync_entity(
    supabase: Client,
    entity_type: str,
    mode: str,
    since: Optional[str],
    cancel_event: asyncio.Event
) -> Dict[str, Any]:
    async with create_http_client() as http_client:
        context = build_sync_context(settings, http_client, supabase)
        report = await run_sync(context, entity_type, mode=SyncMode(mode), since=since, cancel_event=cancel_event)
        return {"status": report.status, "reports": [report.model_dump(mode="json")]}


async def _sync_all(
    supabase: Client,
    entity_types: Optional[List[str]],
    mode: str,
    concurrent: bool,
    since: Optional[str],
    cancel_event: asyncio.Event
) -> Dict[str, Any]:
    async with create_http_client() as http_client:
        context = build_sync_context(settings, http_client, supabase)
        reports = await run_full_sync(
            context,
            entity_types=entity_types,
            mode=SyncMode(mode),
            concurrent=concurrent,
            since=since,
            cancel_event=cancel_event
        )
        return {"status": overall_status(reports), "reports": [r.model_dump(mode="json") for r in reports]}


async def _refresh(supabase: Client) -> bool:
    async with create_http_client() as http_client:
        context = build_sync_context(settings, http_client, supabase)
        return await context.token_manager.manual_refresh()


# ============================================================================
# JOB LIFECYCLE
# ============================================================================

async def _watch_for_cancel(supabase: Client, job_id: str, cancel_event: asyncio.Event) -> None:
    """Poll the job row and set cancel_event once a cancel was requested."""
    while not cancel_event.is_set():
        try:
            if is_cancel_requested(supabase, job_id):
                logger.warning(f"🛑 Cancel requested for job {job_id}")
                cancel_event.set()
                return
        except Exception as e:
            logger.warning(f"⚠️ Could not read cancel flag for job {job_id}: {e}")
        await asyncio.sleep(settings.sync_cancel_poll_seconds)


async def _supervise(supabase: Client, job_id: Optional[str], run: Callable[[asyncio.Event], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
    cancel_event = asyncio.Event()
    if not job_id:
        return await run(cancel_event)

    watcher = asyncio.create_task(_watch_for_cancel(supabase, job_id, cancel_event))
    try:
        return await run(cancel_event)
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)


def _job_status(run_status: str) -> str:
    if run_status in ("success", "partial"):
        return "completed"
    if run_status == "cancelled":
        return "cancelled"
    return "failed"


def _run_job(
    job_id: Optional[str],
    supabase: Client,
    label: str,
    run: Callable[[asyncio.Event], Awaitable[Dict[str, Any]]]
) -> Dict[str, Any]:
    """Run a sync coroutine and mirror its outcome into sync_jobs."""
    if job_id and is_cancel_requested(supabase, job_id):
        logger.info(f"🛑 {label} job {job_id} cancelled before it started")
        result = {"status": "cancelled", "reports": []}
        update_sync_job(supabase, job_id, "cancelled", result=result)
        return result

    if job_id:
        update_sync_job(supabase, job_id, "running")

    try:
        result = asyncio.run(_supervise(supabase, job_id, run))
    except Exception as e:
        logger.error(f"❌ {label} job {job_id} failed: {e}", exc_info=True)
        if job_id:
            update_sync_job(supabase, job_id, "failed", error_message=str(e))
        raise  # Re-raise for Dramatiq retry logic

    if job_id:
        update_sync_job(supabase, job_id, _job_status(result["status"]), result=result)

    logger.info(f"✅ {label} job {job_id} finished: {result['status']}")
    return result


@dramatiq.actor(max_retries=3)
def sync_entity_task(entity_type: str, job_id: Optional[str] = None, mode: str = "incremental", since: Optional[str] = None):
    """
    Background job for one entity type.

    Args:
        entity_type: contacts, matters, users, tasks, invoices or expenses
        job_id: sync_jobs row to update
        mode: incremental, missing_only or full
        since: optional ISO timestamp passed as updated_since
    """
    logger.info(f"🚀 Starting PP {entity_type} sync job {job_id}")
    supabase = get_supabase_client()
    return _run_job(
        job_id,
        supabase,
        f"PP {entity_type} sync",
        lambda cancel_event: _sync_entity(supabase, entity_type, mode, since, cancel_event)
    )


@dramatiq.actor(max_retries=3)
def full_sync_task(
    job_id: Optional[str] = None,
    entity_types: Optional[List[str]] = None,
    mode: str = "incremental",
    concurrent: bool = False,
    since: Optional[str] = None
):
    """Background job for every (or the listed) entity type."""
    logger.info(f"🚀 Starting PP full sync job {job_id}")
    supabase = get_supabase_client()
    return _run_job(
        job_id,
        supabase,
        "PP full sync",
        lambda cancel_event: _sync_all(supabase, entity_types, mode, concurrent, since, cancel_event)
    )


@dramatiq.actor(max_retries=0)
def refresh_token_task():
    """Proactive token refresh, e.g. from a scheduler ahead of the 24h expiry."""
    refreshed = asyncio.run(_refresh(get_supabase_client()))
    if refreshed:
        logger.info("✅ PP token refreshed by background job")
    else:
        logger.warning("⚠️ PP background token refresh did not produce a new token")
    return refreshed
