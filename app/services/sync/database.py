"""
Database helper functions for the PracticePanther connector
Handles OAuth token rows, sync logs and background job status
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from app.core.errors import PersistenceError
from app.models.schemas import OAuthToken, SyncReport

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# OAUTH TOKEN STORE
# ============================================================================

class SupabaseTokenStore:
    """
    oauth_tokens table access.

    Rotation keeps at most one active row per provider: the new row is
    inserted inactive, the old rows are deactivated, then the new row is
    activated. A failed insert leaves the previous token active; a failed
    activation is retried once and otherwise raises PersistenceError.
    """

    TABLE = "oauth_tokens"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get_active(self, provider: str) -> Optional[OAuthToken]:
        """Most recent active token for a provider, or None."""
        result = self.supabase.table(self.TABLE)\
            .select("*")\
            .eq("provider", provider)\
            .eq("is_active", True)\
            .order("created_at", desc=True)\
            .limit(1)\
            .execute()

        if not result.data:
            return None
        return OAuthToken.model_validate(result.data[0])

    async def rotate(self, token: OAuthToken) -> OAuthToken:
        """Persist `token` as the single active token for its provider."""
        record = token.to_record()
        record["is_active"] = False
        record.setdefault("created_at", _now_iso())
        record["updated_at"] = _now_iso()

        try:
            inserted = self.supabase.table(self.TABLE).insert(record).execute()
        except Exception as e:
            logger.error(f"❌ Failed to store {token.provider} token: {e}")
            raise PersistenceError(f"Could not store OAuth token: {e}")

        if not inserted.data:
            raise PersistenceError("Token insert returned no row")

        new_id = inserted.data[0]["id"]
        try:
            await self._activate_exclusively(token.provider, new_id)
        except Exception as e:
            # The refresh token behind this row is already spent at the provider
            logger.warning(f"⚠️ Activating {token.provider} token id={new_id} failed ({e}), retrying once")
            try:
                await self._activate_exclusively(token.provider, new_id)
            except Exception as repair_error:
                logger.error(f"❌ {token.provider} token id={new_id} is stored but inactive: {repair_error}")
                raise PersistenceError(f"Could not activate OAuth token id={new_id}: {repair_error}")

        logger.info(f"💾 Stored new {token.provider} token (id={new_id}), expires at {token.expires_at.isoformat()}")
        return token.model_copy(update={"id": new_id, "is_active": True})

    async def _activate_exclusively(self, provider: str, token_id: Any) -> None:
        await self.deactivate_all(provider)
        self.supabase.table(self.TABLE)\
            .update({"is_active": True, "updated_at": _now_iso()})\
            .eq("id", token_id)\
            .execute()

    async def deactivate_all(self, provider: str) -> int:
        """Deactivate every active token for a provider. Returns rows touched."""
        result = self.supabase.table(self.TABLE)\
            .update({"is_active": False, "updated_at": _now_iso()})\
            .eq("provider", provider)\
            .eq("is_active", True)\
            .execute()
        count = len(result.data or [])
        if count:
            logger.info(f"🔒 Deactivated {count} {provider} token(s)")
        return count

    async def touch_last_used(self, provider: str, when: datetime) -> None:
        self.supabase.table(self.TABLE)\
            .update({"last_used_at": when.isoformat(), "updated_at": _now_iso()})\
            .eq("provider", provider)\
            .eq("is_active", True)\
            .execute()


# ============================================================================
# SYNC LOGS
# ============================================================================

class SyncLogStore:
    """sync_logs rows: one per entity-type run."""

    TABLE = "sync_logs"

    def __init__(self, supabase: Client, source: str = "practicepanther"):
        self.supabase = supabase
        self.source = source

    async def record_run(self, report: SyncReport) -> None:
        """Write a run summary. Failure to log never fails the run."""
        row = {
            "source": self.source,
            "action": f"sync_{report.entity_type}",
            "entity_type": report.entity_type,
            "status": report.status,
            "started_at": report.started_at.isoformat(),
            "completed_at": (report.completed_at or datetime.now(timezone.utc)).isoformat(),
            "records_synced": report.synced,
            "errors_count": report.failed,
            "details": report.model_dump(mode="json", exclude={"errors"}) | {"errors": report.errors[:10]},
        }
        try:
            self.supabase.table(self.TABLE).insert(row).execute()
        except Exception as e:
            logger.error(f"Failed to write sync log for {report.entity_type}: {e}")

    async def last_successful_sync(self, entity_type: str) -> Optional[str]:
        """completed_at of the last successful run for an entity type."""
        result = self.supabase.table(self.TABLE)\
            .select("completed_at")\
            .eq("source", self.source)\
            .eq("entity_type", entity_type)\
            .eq("status", "success")\
            .order("completed_at", desc=True)\
            .limit(1)\
            .execute()
        if result.data:
            return result.data[0]["completed_at"]
        return None

    async def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        result = self.supabase.table(self.TABLE)\
            .select("*")\
            .eq("source", self.source)\
            .order("started_at", desc=True)\
            .limit(limit)\
            .execute()
        return result.data or []


# ============================================================================
# BACKGROUND JOBS
# ============================================================================

FINISHED_JOB_STATUSES = ("completed", "failed", "cancelled")


def create_sync_job(supabase: Client, job_type: str) -> str:
    """Insert a queued sync_jobs row and return its id."""
    job = supabase.table("sync_jobs").insert({
        "job_type": job_type,
        "status": "queued",
        "created_at": _now_iso()
    }).execute()
    return str(job.data[0]["id"])


def update_sync_job(supabase: Client, job_id: str, status: str, **fields: Any) -> None:
    payload = {"status": status, **fields}
    if status == "running":
        payload.setdefault("started_at", _now_iso())
    elif status in FINISHED_JOB_STATUSES:
        payload.setdefault("completed_at", _now_iso())
    supabase.table("sync_jobs").update(payload).eq("id", job_id).execute()


def get_sync_job(supabase: Client, job_id: str) -> Optional[Dict[str, Any]]:
    result = supabase.table("sync_jobs").select("*").eq("id", job_id).limit(1).execute()
    return result.data[0] if result.data else None


def request_sync_job_cancel(supabase: Client, job_id: str) -> None:
    """Flag a job; the worker running it polls the flag and stops at the next boundary."""
    supabase.table("sync_jobs")\
        .update({"cancel_requested": True, "cancel_requested_at": _now_iso()})\
        .eq("id", job_id)\
        .execute()


def is_cancel_requested(supabase: Client, job_id: str) -> bool:
    result = supabase.table("sync_jobs").select("cancel_requested").eq("id", job_id).limit(1).execute()
    return bool(result.data and result.data[0].get("cancel_requested"))
