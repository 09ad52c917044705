"""Tests for the PracticePanther OAuth token lifecycle."""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.core.errors import AuthorizationError, AuthorizationRequired, PersistenceError, TransientNetworkError
from app.models.schemas import TokenState
from tests.fakes import NOW, TOKEN_URL, active_tokens, api_error, store_token, token_response


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _token_requests(provider):
    return [r for r in provider.requests if str(r.url).startswith(TOKEN_URL)]


class TestGetValidAccessToken:
    """Resolution order: cache -> stored token -> refresh grant."""

    @pytest.mark.asyncio
    async def test_stored_valid_token_is_returned_without_refresh(self, token_manager, supabase, provider, valid_token):
        token = await token_manager.get_valid_access_token()

        assert token == "access-old"
        assert _token_requests(provider) == []
        assert token_manager.state == TokenState.VALID
        assert supabase.rows("oauth_tokens")[0]["last_used_at"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_cached_token_skips_storage(self, token_manager, supabase, valid_token):
        await token_manager.get_valid_access_token()
        selects_before = supabase.calls.count(("oauth_tokens", "select"))

        assert await token_manager.get_valid_access_token() == "access-old"
        assert supabase.calls.count(("oauth_tokens", "select")) == selects_before

    @pytest.mark.asyncio
    async def test_token_expiring_in_two_minutes_is_refreshed(self, token_manager, supabase, provider):
        store_token(supabase, NOW + timedelta(minutes=2))
        provider.token_responses.append(token_response())

        token = await token_manager.get_valid_access_token()

        assert token == "access-new"
        active = active_tokens(supabase)
        assert len(active) == 1
        assert active[0]["access_token"] == "access-new"
        assert token_manager.state == TokenState.VALID

        form = _form(_token_requests(provider)[0])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-old"
        assert form["client_id"] == "test-client-id"
        assert form["client_secret"] == "test-client-secret"

    @pytest.mark.asyncio
    async def test_never_returns_token_inside_refresh_buffer(self, token_manager, supabase, provider):
        store_token(supabase, NOW + timedelta(minutes=4, seconds=59))
        provider.token_responses.append(token_response())

        assert await token_manager.get_valid_access_token() == "access-new"

    @pytest.mark.asyncio
    async def test_cached_token_is_refreshed_once_clock_reaches_buffer(self, token_manager, supabase, provider, clock):
        store_token(supabase, NOW + timedelta(hours=1))
        assert await token_manager.get_valid_access_token() == "access-old"

        clock.advance(minutes=56)
        provider.token_responses.append(token_response())

        assert await token_manager.get_valid_access_token() == "access-new"

    @pytest.mark.asyncio
    async def test_rejected_refresh_deactivates_and_requires_authorization(self, token_manager, supabase, provider):
        store_token(supabase, NOW + timedelta(minutes=2))
        provider.token_responses.append(httpx.Response(401, json={"error": "invalid_grant"}))

        with pytest.raises(AuthorizationRequired):
            await token_manager.get_valid_access_token()

        assert active_tokens(supabase) == []
        assert token_manager.state == TokenState.REVOKED

        status = await token_manager.get_token_status()
        assert status.status == "no_token"
        assert status.state == TokenState.REVOKED

        with pytest.raises(AuthorizationError):
            await token_manager.get_valid_access_token()

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_keeps_stored_token(self, token_manager, supabase, provider):
        store_token(supabase, NOW + timedelta(minutes=2))
        provider.token_responses.append(httpx.Response(503, text="maintenance"))

        with pytest.raises(TransientNetworkError):
            await token_manager.get_valid_access_token()

        active = active_tokens(supabase)
        assert len(active) == 1
        assert active[0]["access_token"] == "access-old"
        assert token_manager.state == TokenState.EXPIRING_SOON

    @pytest.mark.asyncio
    async def test_failed_activation_after_refresh_is_repaired(self, token_manager, supabase, provider):
        store_token(supabase, NOW + timedelta(minutes=2))
        provider.token_responses.append(token_response())
        # deactivate old rows passes, activating the new row fails once
        supabase.fail_next("oauth_tokens", "update", None, api_error("connection lost", code="08006"))

        assert await token_manager.get_valid_access_token() == "access-new"

        active = active_tokens(supabase)
        assert [row["access_token"] for row in active] == ["access-new"]
        assert token_manager.state == TokenState.VALID

    @pytest.mark.asyncio
    async def test_activation_that_keeps_failing_raises_and_resets_state(self, token_manager, supabase, provider):
        store_token(supabase, NOW + timedelta(minutes=2))
        provider.token_responses.append(token_response())
        failure = api_error("connection lost", code="08006")
        supabase.fail_next("oauth_tokens", "update", None, failure, None, failure)

        with pytest.raises(PersistenceError):
            await token_manager.get_valid_access_token()

        assert token_manager.state == TokenState.EXPIRING_SOON
        assert token_manager._cached is None

    @pytest.mark.asyncio
    async def test_manual_refresh_reports_failed_activation(self, token_manager, supabase, provider, valid_token):
        provider.token_responses.append(token_response())
        failure = api_error("connection lost", code="08006")
        supabase.fail_next("oauth_tokens", "update", None, failure, None, failure)

        assert await token_manager.manual_refresh() is False

    @pytest.mark.asyncio
    async def test_expired_token_without_refresh_token_is_revoked(self, token_manager, supabase):
        store_token(supabase, NOW - timedelta(minutes=1), refresh_token=None)

        with pytest.raises(AuthorizationRequired):
            await token_manager.get_valid_access_token()

        assert active_tokens(supabase) == []

    @pytest.mark.asyncio
    async def test_no_token_requires_authorization(self, token_manager):
        with pytest.raises(AuthorizationRequired):
            await token_manager.get_valid_access_token()
        assert token_manager.state == TokenState.NO_TOKEN

    @pytest.mark.asyncio
    async def test_inactive_tokens_are_never_reactivated(self, token_manager, supabase):
        store_token(supabase, NOW + timedelta(hours=10), is_active=False)

        with pytest.raises(AuthorizationRequired):
            await token_manager.get_valid_access_token()

        assert active_tokens(supabase) == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, token_manager, supabase, provider):
        store_token(supabase, NOW + timedelta(minutes=2))
        provider.token_responses.append(token_response())

        tokens = await asyncio.gather(*(token_manager.get_valid_access_token() for _ in range(5)))

        assert tokens == ["access-new"] * 5
        assert len(_token_requests(provider)) == 1
        assert len(active_tokens(supabase)) == 1


class TestRefreshToken:

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_one_day(self, token_manager, provider):
        provider.token_responses.append(token_response(expires_in=None))

        token = await token_manager.refresh_token("refresh-old")

        assert token is not None
        assert token.expires_at == NOW + timedelta(seconds=86400)

    @pytest.mark.asyncio
    async def test_keeps_old_refresh_token_when_none_returned(self, token_manager, supabase, provider):
        provider.token_responses.append(token_response(refresh_token=None))

        token = await token_manager.refresh_token("refresh-old")

        assert token.refresh_token == "refresh-old"
        assert active_tokens(supabase)[0]["refresh_token"] == "refresh-old"

    @pytest.mark.asyncio
    async def test_returns_none_on_failure(self, token_manager, provider):
        provider.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))
        assert await token_manager.refresh_token("refresh-old") is None

    @pytest.mark.asyncio
    async def test_response_without_access_token_is_rejected(self, token_manager, provider):
        provider.token_responses.append(httpx.Response(200, json={"token_type": "bearer"}))
        assert await token_manager.refresh_token("refresh-old") is None

    @pytest.mark.asyncio
    async def test_manual_refresh_ignores_expiry(self, token_manager, supabase, provider, valid_token):
        provider.token_responses.append(token_response())

        assert await token_manager.manual_refresh() is True
        assert active_tokens(supabase)[0]["access_token"] == "access-new"

    @pytest.mark.asyncio
    async def test_manual_refresh_without_token(self, token_manager):
        assert await token_manager.manual_refresh() is False


class TestAuthorizationCode:

    def test_authorization_url(self, token_manager):
        url = token_manager.build_authorization_url(redirect_uri="https://example.com/cb", state="xyz")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://app.practicepanther.com/OAuth/Authorize?")
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["test-client-id"]
        assert query["redirect_uri"] == ["https://example.com/cb"]
        assert query["state"] == ["xyz"]

    @pytest.mark.asyncio
    async def test_code_exchange_stores_single_active_token(self, token_manager, supabase, provider):
        store_token(supabase, NOW - timedelta(days=3), access_token="revoked", is_active=False)
        provider.token_responses.append(token_response(access_token="access-first"))

        token = await token_manager.exchange_code_for_token("auth-code", redirect_uri="https://example.com/cb")

        assert token.access_token == "access-first"
        assert token_manager.state == TokenState.AUTHORIZED
        active = active_tokens(supabase)
        assert [r["access_token"] for r in active] == ["access-first"]

        form = _form(_token_requests(provider)[0])
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == "https://example.com/cb"

    @pytest.mark.asyncio
    async def test_rejected_code_raises(self, token_manager, provider):
        provider.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(AuthorizationError):
            await token_manager.exchange_code_for_token("bad-code")


class TestTokenStatus:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset, expected", [
        (timedelta(hours=20), "valid"),
        (timedelta(minutes=30), "expiring_soon"),
        (timedelta(minutes=-10), "expired"),
    ])
    async def test_classification(self, token_manager, supabase, offset, expected):
        store_token(supabase, NOW + offset)

        status = await token_manager.get_token_status()

        assert status.status == expected
        assert status.has_refresh_token is True

    @pytest.mark.asyncio
    async def test_status_does_not_write(self, token_manager, supabase):
        store_token(supabase, NOW - timedelta(minutes=10))

        await token_manager.get_token_status()

        assert all(op == "select" for _, op in supabase.calls)
        assert len(active_tokens(supabase)) == 1

    @pytest.mark.asyncio
    async def test_no_token(self, token_manager):
        status = await token_manager.get_token_status()
        assert status.status == "no_token"
        assert status.state == TokenState.NO_TOKEN
