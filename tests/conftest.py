"""pytest fixtures for the PracticePanther sync tests."""

import os

# Set environment variables BEFORE any app imports (Settings() runs at import)
os.environ.setdefault("PP_CLIENT_ID", "test-client-id")
os.environ.setdefault("PP_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("PP_REDIRECT_URI", "https://sync.example.com/oauth/practicepanther/callback")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import timedelta
from typing import Callable, List

import httpx
import pytest
import pytest_asyncio

from app.core.config import Settings
from app.services.sync.database import SupabaseTokenStore, SyncLogStore
from app.services.sync.oauth import TokenManager
from app.services.sync.orchestration.pp_sync import SyncContext
from app.services.sync.persistence import SupabaseRecordStore
from app.services.sync.providers.practicepanther import PracticePantherClient
from tests.fakes import NOW, FakeClock, FakeSupabase, ProviderStub, store_token


@pytest.fixture
def settings() -> Settings:
    return Settings(
        pp_client_id="test-client-id",
        pp_client_secret="test-client-secret",
        sync_page_size=100,
        sync_batch_size=50,
        sync_safety_page_limit=200,
        sync_rate_limit_cooldown_seconds=30.0,
        sync_inter_call_delay_seconds=0.5,
        sync_transient_retry_attempts=3,
    )


@pytest.fixture
def supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps) -> Callable:
    """Records waits instead of sleeping."""
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()


@pytest_asyncio.fixture
async def http_client(provider):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider)) as client:
        yield client


@pytest.fixture
def token_manager(supabase, http_client, settings, clock) -> TokenManager:
    return TokenManager(SupabaseTokenStore(supabase), http_client, settings, clock=clock)


@pytest.fixture
def valid_token(supabase):
    return store_token(supabase, NOW + timedelta(hours=20))


@pytest.fixture
def sync_context(settings, http_client, token_manager, supabase) -> SyncContext:
    return SyncContext(
        settings=settings,
        http_client=http_client,
        token_manager=token_manager,
        client=PracticePantherClient(http_client, token_manager, settings),
        record_store=SupabaseRecordStore(supabase),
        log_store=SyncLogStore(supabase),
    )
