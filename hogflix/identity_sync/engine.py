"""
IdentityEngine: the surface the rest of the application uses.

USAGE:
    from hogflix.identity_sync import create_engine

    engine = create_engine(sessions=session_provider)
    await engine.start()

    engine.use_identity()           # IdentitySnapshot(is_identified=..., ...)
    engine.use_flag("my_list")      # bool, immediately
    engine.assign_group("subscription", "Premium", {"plan_id": "p-2"})
    engine.track_event("video_played", {"title": "Hedgehog Heist"})

    await engine.close()

None of these calls raise: failures are logged and the best-known value
is returned.
"""

from __future__ import annotations

from typing import Any

from hogflix.logger import logger

from .auth_bridge import AuthBridge
from .config import EngineSettings
from .events import EventEmitter, utc_now_iso
from .flag_cache import FlagCache
from .flags import FeatureFlagResolver
from .groups import GroupCoalescer, extract_price_value
from .identity_state import IdentitySnapshot, IdentityState
from .profiles import ProfileStore, SupabaseProfileStore
from .provider import AnalyticsProvider, PostHogProvider
from .session import SessionProvider
from .storage import OWNER_KEY, KeyValueStorage, create_storage

SUBSCRIPTION_STATUSES = ("none", "active", "cancelled", "expired")


def map_subscription_status(db_status: str | None) -> str:
    """Map a database subscription status onto the tracked statuses."""
    if db_status in SUBSCRIPTION_STATUSES:
        return db_status
    return "none"


class IdentityEngine:
    """
    Wires the components together and exposes the application API.

    Args:
        provider: Analytics provider (PostHogProvider in production)
        settings: Engine tunables (default: EngineSettings())
        storage: Local storage for flag cache and group assignments
        profiles: Optional profile store for enrichment
        sessions: Optional session provider driving the AuthBridge
    """

    def __init__(
        self,
        provider: AnalyticsProvider,
        settings: EngineSettings | None = None,
        storage: KeyValueStorage | None = None,
        profiles: ProfileStore | None = None,
        sessions: SessionProvider | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.provider = provider
        self.storage = storage if storage is not None else create_storage(None)
        self.profiles = profiles

        self.identity = IdentityState()
        self.emitter = EventEmitter(provider)
        self.flag_cache = FlagCache(self.storage, ttl=self.settings.cache_ttl)
        self.resolver = FeatureFlagResolver(
            provider,
            self.identity,
            self.flag_cache,
            max_retries=self.settings.max_retries,
            backoff_base=self.settings.backoff_base,
            backoff_cap=self.settings.backoff_cap,
            timeout=self.settings.provider_timeout,
        )
        self.coalescer = GroupCoalescer(
            provider,
            self.emitter,
            self.storage,
            debounce=self.settings.debounce,
            timeout=self.settings.provider_timeout,
        )
        self.bridge = AuthBridge(
            self.identity,
            provider,
            self.resolver,
            self.coalescer,
            profiles=profiles,
            sessions=sessions,
            settle_delay=self.settings.settle_delay,
            timeout=self.settings.provider_timeout,
        )

        # owners clear their own state when the identity resets
        self.identity.add_reset_hook(self.resolver.invalidate)
        self.identity.add_reset_hook(self.coalescer.forget_all)
        self.identity.add_reset_hook(self._release_storage)
        self.identity.add_begin_hook(self._claim_storage)

    # -------------------------------------------------------------------------
    # Storage ownership
    # -------------------------------------------------------------------------

    def _claim_storage(self, external_id: str) -> None:
        """
        Record which visitor the persisted flags and groups belong to.

        Storage can outlive the process. When another visitor's entries
        are found (previous run signed in as someone else), they are
        cleared before this visitor is identified.
        """
        try:
            owner = self.storage.get(OWNER_KEY)
        except Exception as e:
            logger.warning("storage_owner_read_failed", error=str(e))
            owner = None

        if owner is not None and owner != external_id:
            self.resolver.invalidate()
            self.coalescer.forget_all()
            logger.info("storage_owner_changed", previous=owner, owner=external_id)

        try:
            self.storage.set(OWNER_KEY, external_id)
        except Exception as e:
            logger.warning("storage_owner_write_failed", error=str(e))

    def _release_storage(self) -> None:
        try:
            self.storage.remove(OWNER_KEY)
        except Exception as e:
            logger.warning("storage_owner_write_failed", error=str(e))

    async def start(self) -> None:
        await self.bridge.start()
        restored = self.coalescer.last_known_all()
        if restored:
            logger.info("groups_restored", groups=restored)

    async def close(self) -> None:
        """Stop listening, deliver pending group writes, release clients."""
        self.bridge.stop()
        await self.coalescer.flush()

        shutdown = getattr(self.provider, "shutdown", None)
        if callable(shutdown):
            shutdown()

        aclose = getattr(self.profiles, "aclose", None)
        if callable(aclose):
            try:
                await aclose()
            except Exception as e:
                logger.warning("profile_store_close_failed", error=str(e))

    async def __aenter__(self) -> IdentityEngine:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Application API
    # -------------------------------------------------------------------------

    def use_identity(self) -> IdentitySnapshot:
        return self.identity.snapshot()

    def use_flag(self, flag_name: str) -> bool:
        """
        Current value of a flag; never blocks.

        A background refresh is started when no value has been confirmed
        for the current visitor yet.
        """
        value = self.resolver.is_enabled(flag_name)
        if not self.resolver.has_live_value(flag_name):
            self.resolver.resolve_in_background(flag_name)
        return value

    def check_flags(self, flag_names: list[str], require_all: bool = True) -> bool:
        """All (or, with require_all=False, any) of the flags are enabled."""
        if not flag_names:
            return False
        values = [self.use_flag(name) for name in flag_names]
        return all(values) if require_all else any(values)

    def assign_group(
        self,
        group_type: str,
        label: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        return self.coalescer.assign(group_type, label, properties)

    def last_known_group(self, group_type: str) -> str | None:
        return self.coalescer.last_known(group_type)

    def track_event(self, name: str, properties: dict[str, Any] | None = None) -> bool:
        return self.emitter.track_event(name, properties)

    def capture_with_group(
        self,
        name: str,
        group_type: str,
        group_key: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        return self.emitter.capture_with_group(name, group_type, group_key, properties)

    def capture_test_event(
        self,
        name: str,
        test_name: str,
        variant: str | None,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        return self.emitter.capture_test_event(name, test_name, variant, properties)

    # -------------------------------------------------------------------------
    # Cohort helpers
    # -------------------------------------------------------------------------

    def set_user_type(self, is_kid: bool) -> bool:
        """Assign the user_type cohort (Kid / Adult)."""
        label = "Kid" if is_kid else "Adult"
        return self.assign_group(
            "user_type",
            label,
            {"is_kids_account": is_kid, "updated_at": utc_now_iso()},
        )

    def set_subscription_plan(
        self,
        plan_name: str,
        plan_id: str | None = None,
        price: str | float | None = None,
    ) -> bool:
        """Assign the subscription cohort for a plan."""
        return self.assign_group(
            "subscription",
            plan_name,
            {
                "plan_id": plan_id or "",
                "plan_cost": extract_price_value(price),
                "price": price,
                "updated_at": utc_now_iso(),
            },
        )

    def sync_subscription_status(self, db_status: str | None, **plan_details: Any) -> str:
        """
        Push the subscription status onto the person profile.

        Returns:
            The mapped status: none, active, cancelled or expired
        """
        status = map_subscription_status(db_status)
        person = {
            "subscription_status": status,
            "is_subscribed": status == "active",
            "subscription_updated_at": utc_now_iso(),
        }
        person.update(plan_details)

        try:
            self.provider.set_person_properties(person)
        except Exception as e:
            logger.error("subscription_status_sync_failed", error=str(e))
            return status

        self.emitter.track_event(
            "subscription_status_synced",
            {
                "db_status": db_status,
                "mapped_status": status,
                "source": "database_sync",
                **plan_details,
            },
        )
        return status


def create_engine(
    settings: EngineSettings | None = None,
    sessions: SessionProvider | None = None,
    provider: AnalyticsProvider | None = None,
    profiles: ProfileStore | None = None,
) -> IdentityEngine:
    """
    Build an engine from the environment.

    PostHog, file storage and the Supabase profile store are enabled by
    the matching environment variables (see config.py).
    """
    settings = settings or EngineSettings.from_env()

    if provider is None:
        provider = PostHogProvider.from_settings(settings)

    if profiles is None and settings.supabase_url and settings.supabase_anon_key:
        profiles = SupabaseProfileStore(settings.supabase_url, settings.supabase_anon_key)

    return IdentityEngine(
        provider,
        settings=settings,
        storage=create_storage(settings.storage_path),
        profiles=profiles,
        sessions=sessions,
    )
