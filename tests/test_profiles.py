"""
Tests for hogflix.identity_sync.profiles (Supabase REST mocked with httpx).

Run with:
    pytest tests/test_profiles.py -v
"""

import httpx
import pytest

from hogflix.identity_sync.errors import ProfileStoreError
from hogflix.identity_sync.profiles import (
    PROFILE_COLUMNS,
    InMemoryProfileStore,
    Profile,
    SupabaseProfileStore,
    profile_from_row,
)

ROW = {
    "id": "5d2c",
    "email": "max@hogflix.com",
    "name": "Max Power",
    "created_at": "2024-05-01T10:00:00+00:00",
    "language": "Spanish",
    "is_kids": False,
    "is_admin": False,
    "subscription_status": "active",
    "subscription_plan_id": "p-3",
    "subscription_plans": {"name": "Premium", "price": "$15.99"},
}


def make_store(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseProfileStore("https://xyz.supabase.co/", "anon-key", client=client)


# =============================================================================
# TESTS: ROW MAPPING
# =============================================================================


class TestProfileFromRow:
    def test_full_row(self):
        profile = profile_from_row("max@hogflix.com", ROW)

        assert profile.display_name == "Max Power"
        assert profile.created_at == "2024-05-01T10:00:00+00:00"
        assert profile.cohort_hints == {"user_type": "Adult", "subscription": "Premium"}
        assert profile.attributes == {
            "language": "Spanish",
            "is_kids_account": False,
            "is_admin_user": False,
            "subscription_status": "active",
            "supabase_id": "5d2c",
            "plan_id": "p-3",
            "plan_price": "$15.99",
        }

    def test_kids_account(self):
        profile = profile_from_row("kid@hogflix.com", {"is_kids": True})

        assert profile.cohort_hints == {"user_type": "Kid"}
        assert profile.attributes["is_kids_account"] is True

    def test_defaults_for_sparse_row(self):
        profile = profile_from_row("max@hogflix.com", {})

        assert profile.cohort_hints == {"user_type": "Adult"}
        assert profile.attributes["language"] == "English"
        assert profile.attributes["subscription_status"] == "none"
        assert "plan_id" not in profile.attributes

    def test_plan_join_as_list(self):
        row = {"subscription_plans": [{"name": "Basic", "price": 7.99}]}

        profile = profile_from_row("max@hogflix.com", row)

        assert profile.cohort_hints["subscription"] == "Basic"
        assert profile.attributes["plan_price"] == 7.99


# =============================================================================
# TESTS: STORES
# =============================================================================


class TestInMemoryProfileStore:
    @pytest.mark.asyncio
    async def test_fetch(self):
        store = InMemoryProfileStore()
        store.put(Profile("max@hogflix.com", display_name="Max"))

        assert (await store.fetch_profile("max@hogflix.com")).display_name == "Max"
        assert await store.fetch_profile("kid@hogflix.com") is None


class TestSupabaseProfileStore:
    """PostgREST lookups."""

    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json=[ROW])

        store = make_store(handler)
        profile = await store.fetch_profile("max@hogflix.com")
        await store.aclose()

        request = seen["request"]
        assert request.url.path == "/rest/v1/profiles"
        assert request.url.params["email"] == "eq.max@hogflix.com"
        assert request.url.params["select"] == PROFILE_COLUMNS
        assert request.url.params["limit"] == "1"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer anon-key"
        assert profile.cohort_hints["subscription"] == "Premium"

    @pytest.mark.asyncio
    async def test_no_rows(self):
        store = make_store(lambda request: httpx.Response(200, json=[]))

        assert await store.fetch_profile("ghost@hogflix.com") is None

    @pytest.mark.asyncio
    async def test_http_error(self):
        store = make_store(lambda request: httpx.Response(401, json={"message": "no"}))

        with pytest.raises(ProfileStoreError, match="401"):
            await store.fetch_profile("max@hogflix.com")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        store = make_store(lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(ProfileStoreError):
            await store.fetch_profile("max@hogflix.com")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = make_store(handler)

        with pytest.raises(ProfileStoreError):
            await store.fetch_profile("max@hogflix.com")
