"""
Sync Error Taxonomy
Exceptions raised by the token manager, provider client, stores and sync engine

Only AuthorizationError halts a sync run. Everything else is counted in the
run report (per page, per batch or per record) and the run carries on.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for every sync-engine failure."""


# ============================================================================
# AUTHORIZATION
# ============================================================================

class AuthorizationError(SyncError):
    """No usable credential: missing token or a refresh grant the provider rejected."""


class AuthorizationRequired(AuthorizationError):
    """Stored tokens were deactivated; a fresh authorization-code exchange is needed."""


# ============================================================================
# NETWORK
# ============================================================================

class TransientNetworkError(SyncError):
    """Timeout, connection failure or 5xx on a single call. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(TransientNetworkError):
    """Provider throttling signal (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


# ============================================================================
# PERSISTENCE / DATA
# ============================================================================

class PersistenceError(SyncError):
    """A write to the local store failed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class PersistenceConflictError(PersistenceError):
    """Uniqueness constraint violation (Postgres 23505)."""


class DataShapeError(SyncError):
    """A fetched entity is missing its id or a required field."""


class SyncCancelled(SyncError):
    """The run's cancellation signal was set."""
