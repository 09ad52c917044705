"""Tests for batched upserts against the Supabase record store."""

import asyncio

import httpx
import pytest

from app.core.errors import SyncCancelled
from app.models.schemas import UpsertResult
from app.services.sync.entities import get_entity_config
from app.services.sync.persistence import SupabaseRecordStore
from app.services.sync.rate_limiter import RateLimiter
from app.services.sync.upserter import BatchUpserter
from tests.fakes import NOW, api_error

CONTACTS = get_entity_config("contacts")


def contact_rows(count, start=1):
    return [{"pp_id": f"pp-{i}", "first_name": f"First {i}", "last_name": "Client"} for i in range(start, start + count)]


def keys(rows):
    return {row["pp_id"] for row in rows}


@pytest.fixture
def upserter(supabase, settings, fake_sleep, clock):
    limiter = RateLimiter.from_settings(settings, sleep=fake_sleep)
    return BatchUpserter(SupabaseRecordStore(supabase), limiter, clock=clock)


class TestBatching:

    @pytest.mark.asyncio
    async def test_rows_are_written_in_bounded_batches(self, upserter, supabase, sleeps):
        rows = contact_rows(120)

        result = await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)

        assert supabase.upsert_batches == [("contacts", 50), ("contacts", 50), ("contacts", 20)]
        assert result.batches == 3
        assert result.created == 120
        assert result.updated == 0
        assert result.synced == 120
        assert sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_stamps_sync_time(self, upserter, supabase):
        rows = contact_rows(2)

        await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)

        assert {r["pp_synced_at"] for r in supabase.rows("contacts")} == {NOW.isoformat()}
        assert "pp_synced_at" not in rows[0]

    @pytest.mark.asyncio
    async def test_empty_input(self, upserter, supabase):
        result = await upserter.upsert_all(CONTACTS, [], set(), batch_size=50)

        assert result.batches == 0
        assert supabase.upsert_batches == []

    @pytest.mark.asyncio
    async def test_repeat_upsert_is_idempotent(self, upserter, supabase):
        rows = contact_rows(30)

        first = await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)
        second = await upserter.upsert_all(CONTACTS, rows, set(), batch_size=50)

        assert len(supabase.rows("contacts")) == 30
        assert first.created == 30
        assert second.created == 0
        assert second.updated == 30

    @pytest.mark.asyncio
    async def test_created_and_updated_split_by_new_keys(self, upserter):
        rows = contact_rows(10)

        result = await upserter.upsert_all(CONTACTS, rows, {"pp-1", "pp-2", "pp-3"}, batch_size=50)

        assert result.created == 3
        assert result.updated == 7


class TestFailures:

    @pytest.mark.asyncio
    async def test_one_bad_row_costs_exactly_one_failure(self, upserter, supabase):
        def reject_pp_13(row):
            if row["pp_id"] == "pp-13":
                raise api_error("null value in column \"email\" violates not-null constraint", code="23502")

        supabase.validators["contacts"] = reject_pp_13
        rows = contact_rows(50)

        result = await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)

        assert result.failed_batches == 1
        assert result.failed == 1
        assert result.created == 49
        stored = {r["pp_id"] for r in supabase.rows("contacts")}
        assert len(stored) == 49
        assert "pp-13" not in stored
        assert result.errors[0].startswith("contacts pp-13:")

    @pytest.mark.asyncio
    async def test_conflict_rejection_falls_back_to_single_rows(self, upserter, supabase):
        supabase.fail_next("contacts", "upsert", api_error("duplicate key value", code="23505"))
        rows = contact_rows(5)

        result = await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)

        assert result.failed_batches == 1
        assert result.failed == 0
        assert result.created == 5

    @pytest.mark.asyncio
    async def test_transient_store_error_is_retried(self, upserter, supabase, sleeps):
        supabase.fail_next("contacts", "upsert", httpx.ConnectError("connection reset"))
        rows = contact_rows(5)

        result = await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)

        assert result.failed_batches == 0
        assert result.created == 5
        assert sleeps == [1]

    @pytest.mark.asyncio
    async def test_throttled_batch_cools_down_then_lands(self, upserter, supabase, sleeps):
        throttled = [api_error("API rate limit exceeded", code="429") for _ in range(3)]
        supabase.fail_next("contacts", "upsert", *throttled)
        rows = contact_rows(2)

        result = await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)

        assert sleeps == [30.0, 30.0, 30.0]
        assert result.failed_batches == 0
        assert result.failed == 0
        assert result.created == 2
        assert supabase.upsert_batches == [("contacts", 2)]
        assert upserter.rate_limiter.throttle_count == 3

    @pytest.mark.asyncio
    async def test_batch_still_throttled_is_not_replayed_per_row(self, supabase, fake_sleep, sleeps):
        limiter = RateLimiter(cooldown_seconds=30.0, max_throttle_retries=1, sleep=fake_sleep)
        upserter = BatchUpserter(SupabaseRecordStore(supabase), limiter)
        supabase.fail_next("contacts", "upsert", *[api_error("Too Many Requests", code="429") for _ in range(2)])
        rows = contact_rows(3)

        result = await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)

        assert sleeps == [30.0]
        assert result.failed_batches == 1
        assert result.failed == 3
        assert result.errors[0].startswith("contacts batch 1:")
        assert [c for c in supabase.calls if c == ("contacts", "upsert")] == [("contacts", "upsert")] * 2

    @pytest.mark.asyncio
    async def test_error_sample_is_bounded(self, supabase, settings, fake_sleep):
        limiter = RateLimiter.from_settings(settings, sleep=fake_sleep)
        upserter = BatchUpserter(SupabaseRecordStore(supabase), limiter, error_sample_size=2)

        def reject_even(row):
            if int(row["pp_id"].split("-")[1]) % 2 == 0:
                raise api_error("check constraint violated")

        supabase.validators["contacts"] = reject_even
        rows = contact_rows(8)

        result = await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50)

        assert result.failed == 4
        assert len(result.errors) == 2
        assert result.created == 4


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_between_batches_keeps_partial_counts(self, supabase, settings):
        cancel = asyncio.Event()

        async def cancelling_sleep(seconds):
            cancel.set()

        limiter = RateLimiter.from_settings(settings, cancel_event=cancel, sleep=cancelling_sleep)
        upserter = BatchUpserter(SupabaseRecordStore(supabase), limiter)
        rows = contact_rows(120)
        result = UpsertResult()

        with pytest.raises(SyncCancelled):
            await upserter.upsert_all(CONTACTS, rows, keys(rows), batch_size=50, result=result)

        assert result.created == 50
        assert len(supabase.rows("contacts")) == 50
