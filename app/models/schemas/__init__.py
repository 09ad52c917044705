"""
Pydantic Schemas
All request/response models for API endpoints and the sync engine
"""

# Token schemas
from .token import OAuthToken, TokenState, TokenStatus

# Health check schemas
from .health import HealthResponse

# Sync schemas
from .sync import (
    DiffResult,
    ExternalEntity,
    ExtractionResult,
    FullSyncRequest,
    RunState,
    SyncMode,
    SyncReport,
    SyncRequest,
    SyncResponse,
    UpsertResult,
)

__all__ = [
    # Token
    "OAuthToken",
    "TokenState",
    "TokenStatus",
    # Health
    "HealthResponse",
    # Sync
    "DiffResult",
    "ExternalEntity",
    "ExtractionResult",
    "FullSyncRequest",
    "RunState",
    "SyncMode",
    "SyncReport",
    "SyncRequest",
    "SyncResponse",
    "UpsertResult",
]
