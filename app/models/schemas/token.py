"""
OAuth Token Schemas
Persisted PracticePanther credential record and its monitoring view
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator


class TokenState(str, Enum):
    """
    Lifecycle of the provider credential.

    NO_TOKEN -> AUTHORIZED -> VALID -> EXPIRING_SOON -> REFRESHING -> VALID | REVOKED

    REVOKED is terminal until someone completes a new authorization-code exchange.
    """
    NO_TOKEN = "no_token"
    AUTHORIZED = "authorized"
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


class OAuthToken(BaseModel):
    """Row of the oauth_tokens table. At most one active row per provider."""
    id: Optional[Union[int, str]] = None
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: datetime
    scope: Optional[str] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("expires_at", "last_used_at", "created_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Supabase returns timestamptz with an offset; naive values are UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_valid_for(self, window: timedelta, now: datetime) -> bool:
        """True if the token will still be valid `window` from `now`."""
        return self.expires_at > now + window

    def to_record(self) -> Dict[str, Any]:
        """Serialize for insertion (database assigns id)."""
        return self.model_dump(mode="json", exclude={"id"} if self.id is None else set())


class TokenStatus(BaseModel):
    """Non-mutating diagnostic view returned by get_token_status()."""
    status: str  # "no_token", "expired", "expiring_soon", "valid", "error"
    message: str
    expires_at: Optional[datetime] = None
    minutes_until_expiry: Optional[int] = None
    has_refresh_token: bool = False
    last_used_at: Optional[datetime] = None
    state: TokenState = TokenState.NO_TOKEN
