"""
Profile store: auxiliary visitor attributes used for enrichment.

After a visitor is identified, AuthBridge fetches their profile and turns
it into person properties and cohort hints (group type -> raw label):

    Profile(
        identifier="max@hogflix.com",
        display_name="Max",
        created_at="2024-05-01T10:00:00+00:00",
        cohort_hints={"user_type": "Adult", "subscription": "Premium"},
        attributes={"language": "English", "subscription_status": "active"},
    )

SupabaseProfileStore reads the `profiles` table through the Supabase REST
API with httpx.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from hogflix.logger import logger

from .errors import ProfileStoreError

PROFILE_COLUMNS = (
    "id,email,name,created_at,language,is_kids,is_admin,"
    "subscription_status,subscription_plan_id,subscription_plans(name,price)"
)


@dataclass(frozen=True)
class Profile:
    identifier: str
    display_name: str | None = None
    created_at: str | None = None
    cohort_hints: dict[str, str] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)


class ProfileStore(Protocol):
    async def fetch_profile(self, identifier: str) -> Profile | None: ...


class InMemoryProfileStore:
    """Profiles kept in a dict, keyed by identifier."""

    def __init__(self, profiles: dict[str, Profile] | None = None) -> None:
        self._profiles = dict(profiles or {})

    def put(self, profile: Profile) -> None:
        self._profiles[profile.identifier] = profile

    async def fetch_profile(self, identifier: str) -> Profile | None:
        return self._profiles.get(identifier)


def profile_from_row(identifier: str, row: dict[str, Any]) -> Profile:
    """
    Map a `profiles` row to a Profile.

    is_kids drives the user_type cohort (Kid/Adult); the joined plan name
    drives the subscription cohort.
    """
    hints = {"user_type": "Kid" if row.get("is_kids") is True else "Adult"}

    plan = row.get("subscription_plans") or {}
    if isinstance(plan, list):
        plan = plan[0] if plan else {}
    if plan.get("name"):
        hints["subscription"] = plan["name"]

    attributes = {
        "language": row.get("language") or "English",
        "is_kids_account": row.get("is_kids") is True,
        "is_admin_user": bool(row.get("is_admin")),
        "subscription_status": row.get("subscription_status") or "none",
        "supabase_id": row.get("id"),
    }
    if row.get("subscription_plan_id"):
        attributes["plan_id"] = row["subscription_plan_id"]
    if plan.get("price") is not None:
        attributes["plan_price"] = plan["price"]

    return Profile(
        identifier=identifier,
        display_name=row.get("name"),
        created_at=row.get("created_at"),
        cohort_hints=hints,
        attributes=attributes,
    )


class SupabaseProfileStore:
    """
    Profile lookups against Supabase PostgREST.

    USAGE:
        store = SupabaseProfileStore(url, anon_key)
        profile = await store.fetch_profile("max@hogflix.com")
        await store.aclose()

    Args:
        url: Project URL, e.g. https://xyz.supabase.co
        api_key: Anon or service role key
        client: Optional pre-built httpx.AsyncClient (tests, shared pools)
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._endpoint = f"{url.rstrip('/')}/rest/v1/profiles"
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_profile(self, identifier: str) -> Profile | None:
        """
        Fetch one profile by email.

        Returns:
            The profile, or None when no row matches

        Raises:
            ProfileStoreError: transport failure or non-2xx response
        """
        params = {
            "select": PROFILE_COLUMNS,
            "email": f"eq.{identifier}",
            "limit": "1",
        }
        try:
            response = await self._client.get(
                self._endpoint,
                params=params,
                headers=self._headers,
            )
            response.raise_for_status()
            rows = response.json()
        except httpx.HTTPStatusError as e:
            raise ProfileStoreError(
                f"profile lookup failed with HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProfileStoreError(f"profile lookup failed: {e}") from e

        if not rows:
            logger.info("profile_not_found", identifier=identifier)
            return None

        return profile_from_row(identifier, rows[0])

    async def aclose(self) -> None:
        await self._client.aclose()
