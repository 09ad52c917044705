"""
Unified Configuration
All environment variables and settings in one place

ARCHITECTURE:
- ONE Supabase project for the platform tables (exchanges, contacts, tasks...)
- PracticePanther is the only upstream provider (OAuth2 authorization-code flow)
- Sync tuning knobs (page size, batch size, safety limit, cooldown) are explicit
  settings, never constants buried in sync code

SECURITY:
- All secrets loaded from environment variables
- No hardcoded credentials
"""
from typing import Optional
import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Unified application settings.
    Validates all environment variables at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================================================
    # SERVER
    # ============================================================================

    environment: str = Field(default="production", description="Environment: development/staging/production")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    admin_api_key: Optional[str] = Field(default=None, description="X-API-Key required by sync/oauth admin routes")

    # ============================================================================
    # DATABASE (Supabase PostgreSQL)
    # ============================================================================

    supabase_url: Optional[str] = Field(default=None, description="Supabase project URL")
    supabase_service_key: Optional[str] = Field(default=None, description="Supabase service key (backend uses this)")
    database_url: Optional[str] = Field(default=None, description="PostgreSQL connection string (for psycopg - direct DB access)")
    record_store_backend: str = Field(default="supabase", description="Where synced records are written: supabase | postgres")

    # ============================================================================
    # OAUTH (PracticePanther)
    # ============================================================================

    pp_client_id: str = Field(description="PracticePanther OAuth client ID")
    pp_client_secret: str = Field(description="PracticePanther OAuth client secret")
    pp_redirect_uri: Optional[str] = Field(default=None, description="Redirect URI registered with PracticePanther")
    pp_provider_name: str = Field(default="practicepanther", description="Provider key stored in oauth_tokens.provider")
    pp_api_base_url: str = Field(default="https://app.practicepanther.com/api/v2", description="PracticePanther REST API base URL")
    pp_token_url: str = Field(default="https://app.practicepanther.com/OAuth/Token", description="OAuth token endpoint")
    pp_authorize_url: str = Field(default="https://app.practicepanther.com/OAuth/Authorize", description="OAuth consent endpoint")
    pp_scope: str = Field(default="read write", description="OAuth scope requested at authorization")

    token_refresh_buffer_seconds: int = Field(default=300, description="Refresh tokens expiring within this many seconds")

    # ============================================================================
    # SYNC ENGINE
    # ============================================================================

    sync_page_size: int = Field(default=100, description="Records requested per provider page")
    sync_batch_size: int = Field(default=50, description="Records committed per upsert batch")
    sync_safety_page_limit: int = Field(default=200, description="Hard stop on pages fetched per entity type")
    sync_rate_limit_cooldown_seconds: float = Field(default=30.0, description="Pause after a 429 when no Retry-After is sent")
    sync_inter_call_delay_seconds: float = Field(default=0.5, description="Delay between sequential per-record calls")
    sync_max_throttle_retries: int = Field(default=5, description="Throttling signals tolerated per call before giving up")
    sync_transient_retry_attempts: int = Field(default=3, description="Attempts per call on timeouts/connection errors")
    sync_error_sample_size: int = Field(default=20, description="Error messages kept per sync report")
    sync_cancel_poll_seconds: float = Field(default=5.0, description="How often a background job checks its sync_jobs row for a cancel request")
    request_timeout_seconds: float = Field(default=30.0, description="Timeout applied to every external call")

    # ============================================================================
    # PRODUCTION INFRASTRUCTURE
    # ============================================================================

    redis_url: Optional[str] = Field(default=None, description="Redis connection URL (Dramatiq broker)")
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")

    @model_validator(mode='after')
    def validate_settings(self):
        """
        Validate critical settings at startup.

        - Sync sizes and limits must be positive
        - Store backend must be a known one
        - Warn about missing production infrastructure
        """
        for name in ("sync_page_size", "sync_batch_size", "sync_safety_page_limit", "sync_transient_retry_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")

        if self.sync_rate_limit_cooldown_seconds < 0 or self.sync_inter_call_delay_seconds < 0:
            raise ValueError("Cooldown and inter-call delay cannot be negative")

        if self.sync_cancel_poll_seconds <= 0:
            raise ValueError("sync_cancel_poll_seconds must be > 0")

        if self.record_store_backend not in ("supabase", "postgres"):
            raise ValueError(f"Unknown record_store_backend: {self.record_store_backend}")

        if self.environment == "production":
            if self.debug:
                logger.warning("⚠️  DEBUG MODE ENABLED IN PRODUCTION! This is insecure.")

            if not self.sentry_dsn:
                logger.warning("⚠️  Sentry not configured in production. Error tracking disabled.")

            if not self.admin_api_key:
                logger.warning("⚠️  ADMIN_API_KEY not set. Sync and OAuth admin routes are unprotected.")

        logger.info("=" * 80)
        logger.info("PracticePanther Sync Configuration Loaded")
        logger.info("=" * 80)
        logger.info(f"Environment: {self.environment}")
        logger.info(f"Record store: {self.record_store_backend}")
        logger.info(f"Supabase: {'✅ Configured' if self.supabase_url else '❌ Not configured'}")
        logger.info(f"Redis: {'✅ Configured' if self.redis_url else '❌ Not configured'}")
        logger.info(f"Page size: {self.sync_page_size}, batch size: {self.sync_batch_size}, safety page limit: {self.sync_safety_page_limit}")
        logger.info("=" * 80)

        return self


# Global settings instance
settings = Settings()
