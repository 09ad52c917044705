"""Tests for paginated extraction and the rate limiter around it."""

import asyncio

import httpx
import pytest

from app.core.errors import AuthorizationError, SyncCancelled
from app.services.sync.entities import get_entity_config
from app.services.sync.extractor import PaginatedExtractor
from app.services.sync.providers.practicepanther import PracticePantherClient
from app.services.sync.rate_limiter import RateLimiter
from tests.fakes import make_records

CONTACTS = get_entity_config("contacts")


@pytest.fixture
def rate_limiter(settings, fake_sleep):
    return RateLimiter.from_settings(settings, sleep=fake_sleep)


@pytest.fixture
def extractor(http_client, token_manager, settings, rate_limiter, valid_token):
    client = PracticePantherClient(http_client, token_manager, settings)
    return PaginatedExtractor(client, rate_limiter)


def _pages_requested(provider, endpoint="contacts"):
    return [int(r.url.params["page"]) for r in provider.listing_requests(endpoint)]


class TestPagination:

    @pytest.mark.asyncio
    async def test_walks_pages_until_short_page(self, extractor, provider):
        provider.pages["contacts"] = [
            make_records(100, start=1),
            make_records(100, start=101),
            make_records(100, start=201),
            make_records(37, start=301),
        ]

        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=200)

        assert len(result.entities) == 337
        assert result.pages_requested == 4
        assert _pages_requested(provider) == [1, 2, 3, 4]
        assert result.hit_safety_limit is False
        assert result.incomplete is False
        assert result.entities[0].external_id == "pp-1"
        assert result.entities[-1].external_id == "pp-337"

    @pytest.mark.asyncio
    async def test_sends_bearer_and_paging_params(self, extractor, provider):
        provider.pages["contacts"] = [make_records(3)]

        await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=10, params={"updated_since": "2026-03-01T00:00:00Z"})

        request = provider.listing_requests("contacts")[0]
        assert request.headers["Authorization"] == "Bearer access-old"
        assert request.url.params["limit"] == "100"
        assert request.url.params["updated_since"] == "2026-03-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_empty_first_page(self, extractor, provider):
        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=200)

        assert result.entities == []
        assert result.pages_requested == 1
        assert result.incomplete is False

    @pytest.mark.asyncio
    async def test_safety_limit_stops_extraction(self, extractor, provider):
        provider.pages["contacts"] = [make_records(10, start=1 + 10 * i) for i in range(5)]

        result = await extractor.fetch_all(CONTACTS, page_size=10, safety_page_limit=3)

        assert result.hit_safety_limit is True
        assert result.pages_requested == 3
        assert len(result.entities) == 30
        assert _pages_requested(provider) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_duplicates_across_pages_are_kept_for_reconciliation(self, extractor, provider):
        provider.pages["contacts"] = [make_records(10, start=1), make_records(5, start=10)]

        result = await extractor.fetch_all(CONTACTS, page_size=10, safety_page_limit=10)

        ids = [e.external_id for e in result.entities]
        assert len(ids) == 15
        assert ids.count("pp-10") == 2

    @pytest.mark.asyncio
    async def test_wrapped_page_is_accepted(self, extractor, provider):
        provider.pages["contacts"] = [{"data": make_records(2)}]

        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=10)

        assert [e.external_id for e in result.entities] == ["pp-1", "pp-2"]

    @pytest.mark.asyncio
    async def test_malformed_items_are_counted_not_fatal(self, extractor, provider):
        provider.pages["contacts"] = [make_records(2) + [{"display_name": "no id"}, {"id": "   "}, "garbage"]]

        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=10)

        assert len(result.entities) == 2
        assert result.malformed == 3
        assert len(result.errors) == 3

    @pytest.mark.asyncio
    async def test_numeric_ids_are_normalized(self, extractor, provider):
        provider.pages["contacts"] = [[{"id": 42, "display_name": "Numeric"}]]

        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=10)

        assert result.entities[0].external_id == "42"
        assert result.entities[0].display_name == "Numeric"


class TestThrottlingAndFailures:

    @pytest.mark.asyncio
    async def test_429_with_retry_after_resumes_same_page(self, extractor, provider, sleeps):
        provider.pages["contacts"] = [
            make_records(100, start=1),
            httpx.Response(429, headers={"Retry-After": "7"}),
            make_records(20, start=101),
        ]

        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=200)

        assert len(result.entities) == 120
        assert _pages_requested(provider) == [1, 2, 2]
        assert 7.0 in sleeps
        assert result.throttled == 1
        assert result.incomplete is False

    @pytest.mark.asyncio
    async def test_429_without_retry_after_uses_cooldown(self, extractor, provider, sleeps):
        provider.pages["contacts"] = [
            httpx.Response(429),
            make_records(5),
        ]

        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=200)

        assert len(result.entities) == 5
        assert sleeps == [30.0]
        assert _pages_requested(provider) == [1, 1]

    @pytest.mark.asyncio
    async def test_pacing_between_pages(self, extractor, provider, sleeps):
        provider.pages["contacts"] = [make_records(10, start=1), make_records(10, start=11), make_records(1, start=21)]

        await extractor.fetch_all(CONTACTS, page_size=10, safety_page_limit=10)

        assert sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_persistent_5xx_marks_extraction_incomplete(self, extractor, provider):
        provider.pages["contacts"] = [
            make_records(10, start=1),
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(503),
        ]

        result = await extractor.fetch_all(CONTACTS, page_size=10, safety_page_limit=10)

        assert result.incomplete is True
        assert len(result.entities) == 10
        assert result.pages_requested == 1
        assert _pages_requested(provider) == [1, 2, 2, 2]
        assert "contacts page 2" in result.errors[0]

    @pytest.mark.asyncio
    async def test_transient_5xx_is_retried(self, extractor, provider):
        provider.pages["contacts"] = [httpx.Response(502), make_records(3)]

        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=10)

        assert len(result.entities) == 3
        assert result.incomplete is False

    @pytest.mark.asyncio
    async def test_rejected_bearer_propagates(self, extractor, provider):
        provider.pages["contacts"] = [httpx.Response(401)]

        with pytest.raises(AuthorizationError):
            await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=10)

    @pytest.mark.asyncio
    async def test_throttle_retries_are_bounded(self, http_client, token_manager, settings, provider, fake_sleep, valid_token):
        limiter = RateLimiter(max_throttle_retries=2, sleep=fake_sleep)
        extractor = PaginatedExtractor(PracticePantherClient(http_client, token_manager, settings), limiter)
        provider.pages["contacts"] = [httpx.Response(429) for _ in range(3)]

        result = await extractor.fetch_all(CONTACTS, page_size=100, safety_page_limit=10)

        assert result.incomplete is True
        assert limiter.throttle_count == 3


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_during_pacing_stops_extraction(self, http_client, token_manager, settings, provider, valid_token):
        cancel = asyncio.Event()

        async def cancelling_sleep(seconds):
            cancel.set()

        limiter = RateLimiter.from_settings(settings, cancel_event=cancel, sleep=cancelling_sleep)
        extractor = PaginatedExtractor(PracticePantherClient(http_client, token_manager, settings), limiter)
        provider.pages["contacts"] = [make_records(10, start=1), make_records(10, start=11)]

        with pytest.raises(SyncCancelled):
            await extractor.fetch_all(CONTACTS, page_size=10, safety_page_limit=10)

        assert _pages_requested(provider) == [1]

    @pytest.mark.asyncio
    async def test_cancel_interrupts_real_cooldown(self):
        cancel = asyncio.Event()
        limiter = RateLimiter(cancel_event=cancel)

        async def cancel_soon():
            await asyncio.sleep(0.01)
            cancel.set()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(SyncCancelled):
            await limiter.sleep(30)
        await canceller
