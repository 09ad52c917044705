"""
Sync Routes
Manual PracticePanther sync endpoints, inline or as background jobs

Inline runs hold the request open until the run finishes; pass
?background=true to queue a Dramatiq job and poll GET /sync/jobs/{job_id}.
Background jobs can be stopped with POST /sync/jobs/{job_id}/cancel.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from supabase import Client

from app.core.dependencies import get_supabase, get_sync_context
from app.core.security import verify_api_key
from app.middleware.rate_limit import SYNC_TRIGGER_LIMIT, limiter
from app.models.schemas import FullSyncRequest, SyncRequest, SyncResponse
from app.services.jobs.tasks import full_sync_task, sync_entity_task
from app.services.sync.database import (
    FINISHED_JOB_STATUSES,
    create_sync_job,
    get_sync_job,
    request_sync_job_cancel,
)
from app.services.sync.entities import ENTITY_CONFIGS, SYNC_ORDER
from app.services.sync.orchestration.pp_sync import (
    SyncContext,
    check_connection,
    get_sync_status,
    overall_status,
    run_full_sync,
    run_sync,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(verify_api_key)])


@router.post("/full", response_model=SyncResponse)
@limiter.limit(SYNC_TRIGGER_LIMIT)
async def trigger_full_sync(
    request: Request,
    body: Optional[FullSyncRequest] = None,
    background: bool = Query(False, description="Queue as a background job"),
    context: SyncContext = Depends(get_sync_context),
):
    """
    Sync every entity type (or body.entity_types) in dependency order.

    Sequential runs stop at the first entity type that ends
    stopped_token_invalid; concurrent runs share only the token manager.
    """
    body = body or FullSyncRequest()
    entity_types = body.entity_types or list(SYNC_ORDER)
    unknown = [name for name in entity_types if name not in ENTITY_CONFIGS]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown entity type(s): {', '.join(unknown)}. Must be one of: {', '.join(SYNC_ORDER)}"
        )

    if background:
        supabase = get_supabase()
        job_id = create_sync_job(supabase, "practicepanther_full")
        full_sync_task.send(job_id, entity_types, body.mode.value, body.concurrent, body.since)
        logger.info(f"✅ PP full sync job {job_id} queued")
        return SyncResponse(status="queued", job_id=job_id)

    reports = await run_full_sync(
        context,
        entity_types=entity_types,
        mode=body.mode,
        concurrent=body.concurrent,
        since=body.since,
    )
    return SyncResponse(status=overall_status(reports), reports=reports)


@router.get("/status")
async def sync_status(context: SyncContext = Depends(get_sync_context)):
    """Token status, local row counts and recent sync_logs rows."""
    return await get_sync_status(context)


@router.get("/test-connection")
async def test_provider_connection(context: SyncContext = Depends(get_sync_context)):
    """One-record listing call; reports the provider's rate-limit headers."""
    return await check_connection(context)


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str, supabase: Client = Depends(get_supabase)):
    """
    Get status of a background sync job.

    Returns:
    - status: queued, running, completed, failed, cancelled
    - started_at / completed_at
    - result: sync reports
    - error_message: error details if failed
    """
    job = get_sync_job(supabase, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, supabase: Client = Depends(get_supabase)):
    """
    Ask a queued or running background job to stop.

    The worker stops at the next page, batch or wait boundary; rows already
    committed stay. Inline runs (no ?background=true) cannot be cancelled.
    """
    job = get_sync_job(supabase, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.get("status") in FINISHED_JOB_STATUSES:
        raise HTTPException(status_code=409, detail=f"Job already {job['status']}")

    request_sync_job_cancel(supabase, job_id)
    logger.info(f"🛑 Cancel requested for PP sync job {job_id}")
    return {"job_id": job_id, "status": job.get("status"), "cancel_requested": True}


@router.post("/{entity_type}", response_model=SyncResponse)
@limiter.limit(SYNC_TRIGGER_LIMIT)
async def trigger_entity_sync(
    entity_type: str,
    request: Request,
    body: Optional[SyncRequest] = None,
    background: bool = Query(False, description="Queue as a background job"),
    context: SyncContext = Depends(get_sync_context),
):
    """
    Sync one entity type: contacts, matters, users, tasks, invoices, expenses.

    Returns fetched/synced/failed counts; status "partial" whenever any
    record failed or extraction stopped early.
    """
    body = body or SyncRequest()
    if entity_type not in ENTITY_CONFIGS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid entity type. Must be one of: {', '.join(SYNC_ORDER)}"
        )

    if background:
        supabase = get_supabase()
        job_id: Optional[str] = create_sync_job(supabase, f"practicepanther_{entity_type}")
        sync_entity_task.send(entity_type, job_id, body.mode.value, body.since)
        logger.info(f"✅ PP {entity_type} sync job {job_id} queued")
        return SyncResponse(status="queued", job_id=job_id)

    report = await run_sync(context, entity_type, mode=body.mode, since=body.since)
    return SyncResponse(status=report.status, reports=[report])
