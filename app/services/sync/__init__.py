"""
PracticePanther Sync System
Token lifecycle, extraction, reconciliation and batch upsert for every
PracticePanther entity type
"""
from app.services.sync.oauth import TokenManager
from app.services.sync.database import SupabaseTokenStore, SyncLogStore
from app.services.sync.persistence import PostgresRecordStore, SupabaseRecordStore, build_record_store
from app.services.sync.orchestration.pp_sync import (
    SyncContext,
    build_sync_context,
    check_connection,
    get_sync_status,
    overall_status,
    run_full_sync,
    run_sync,
)

__all__ = [
    "TokenManager",
    "SupabaseTokenStore",
    "SyncLogStore",
    "SupabaseRecordStore",
    "PostgresRecordStore",
    "build_record_store",
    "SyncContext",
    "build_sync_context",
    "check_connection",
    "get_sync_status",
    "overall_status",
    "run_full_sync",
    "run_sync",
]
