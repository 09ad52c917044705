"""
Sync Schemas
Models for sync runs: fetched entities, reconciliation, upsert results, reports
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunState(str, Enum):
    """
    Run-level state machine.

    IDLE -> TOKEN_CHECK -> EXTRACTING -> RECONCILING -> UPSERTING -> REPORTING
    STOPPED_TOKEN_INVALID is reachable from any token check.
    """
    IDLE = "idle"
    TOKEN_CHECK = "token_check"
    EXTRACTING = "extracting"
    RECONCILING = "reconciling"
    UPSERTING = "upserting"
    REPORTING = "reporting"
    STOPPED_TOKEN_INVALID = "stopped_token_invalid"
    CANCELLED = "cancelled"


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"    # missing + changed
    MISSING_ONLY = "missing_only"  # only external ids absent locally
    FULL = "full"                  # every fetched entity


class ExternalEntity(BaseModel):
    """In-flight copy of a remote record. Never persisted on its own."""
    external_id: str
    entity_type: str
    display_name: Optional[str] = None
    updated_at: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=_utcnow)


class ExtractionResult(BaseModel):
    entity_type: str
    entities: List[ExternalEntity] = Field(default_factory=list)
    pages_requested: int = 0
    throttled: int = 0
    malformed: int = 0
    hit_safety_limit: bool = False
    incomplete: bool = False
    errors: List[str] = Field(default_factory=list)


class DiffResult(BaseModel):
    missing: List[ExternalEntity] = Field(default_factory=list)
    changed: List[ExternalEntity] = Field(default_factory=list)
    matched: List[ExternalEntity] = Field(default_factory=list)
    existing_count: int = 0
    missing_count: int = 0
    duplicates_dropped: int = 0


class UpsertResult(BaseModel):
    created: int = 0
    updated: int = 0
    failed: int = 0
    batches: int = 0
    failed_batches: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def synced(self) -> int:
        return self.created + self.updated


class SyncReport(BaseModel):
    """
    Final summary of one entity-type run.

    status is one of "success", "partial", "failed", "stopped_token_invalid",
    "cancelled". A run with any failed record is never reported as "success".
    """
    entity_type: str
    mode: SyncMode = SyncMode.INCREMENTAL
    status: str = "running"
    state: RunState = RunState.IDLE
    fetched: int = 0
    synced: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    pages: int = 0
    hit_safety_limit: bool = False
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.completed_at:
            return None
        return round((self.completed_at - self.started_at).total_seconds(), 2)


class SyncRequest(BaseModel):
    """Body for POST /sync endpoints."""
    mode: SyncMode = SyncMode.INCREMENTAL
    since: Optional[str] = None


class FullSyncRequest(SyncRequest):
    entity_types: Optional[List[str]] = None
    concurrent: bool = False


class SyncResponse(BaseModel):
    """
    Response for manual sync endpoints.
    One report per entity type that ran.
    """
    status: str  # "success", "partial", "failed", "stopped_token_invalid", "cancelled", "queued"
    reports: List[SyncReport] = Field(default_factory=list)
    job_id: Optional[str] = None
