"""
Identity & group synchronization with PostHog.

USAGE:
    from hogflix.identity_sync import InMemorySessionProvider, Session, create_engine

    sessions = InMemorySessionProvider()
    engine = create_engine(sessions=sessions)
    await engine.start()

    sessions.sign_in(Session(identifier="max@hogflix.com"))

    if engine.use_flag("my_list"):
        show_my_list()

    engine.set_user_type(is_kid=False)
    engine.track_event("video_played", {"title": "Hedgehog Heist"})

ENVIRONMENT VARIABLES:
    POSTHOG_API_KEY: Project API key (empty disables the provider)
    POSTHOG_HOST: PostHog host (default: https://us.i.posthog.com)
    HOGFLIX_STORAGE_PATH: JSON file used as local storage (default: memory)
    SUPABASE_URL / SUPABASE_ANON_KEY: Enables profile enrichment
    See config.py for the timing tunables.
"""

from .auth_bridge import AuthBridge
from .config import EngineSettings
from .engine import IdentityEngine, create_engine, map_subscription_status
from .errors import (
    IdentitySyncError,
    InvalidSessionToken,
    ProfileStoreError,
    ProviderError,
    ProviderTimeout,
    StorageError,
)
from .events import EventEmitter
from .flag_cache import FlagCache, FlagCacheEntry
from .flags import FeatureFlagResolver
from .groups import GroupAssignment, GroupCoalescer, extract_price_value, slugify
from .identity_state import IdentitySnapshot, IdentityState, LifecycleState
from .profiles import InMemoryProfileStore, Profile, ProfileStore, SupabaseProfileStore
from .provider import AnalyticsProvider, PostHogProvider
from .session import (
    InMemorySessionProvider,
    Session,
    SessionProvider,
    session_from_access_token,
)
from .storage import JsonFileStorage, KeyValueStorage, MemoryStorage

__all__ = [
    # Engine
    "IdentityEngine",
    "create_engine",
    "EngineSettings",
    # Components
    "AuthBridge",
    "EventEmitter",
    "FeatureFlagResolver",
    "FlagCache",
    "FlagCacheEntry",
    "GroupAssignment",
    "GroupCoalescer",
    "IdentitySnapshot",
    "IdentityState",
    "LifecycleState",
    # Collaborators
    "AnalyticsProvider",
    "PostHogProvider",
    "Session",
    "SessionProvider",
    "InMemorySessionProvider",
    "session_from_access_token",
    "Profile",
    "ProfileStore",
    "InMemoryProfileStore",
    "SupabaseProfileStore",
    "KeyValueStorage",
    "MemoryStorage",
    "JsonFileStorage",
    # Helpers
    "slugify",
    "extract_price_value",
    "map_subscription_status",
    # Errors
    "IdentitySyncError",
    "InvalidSessionToken",
    "ProfileStoreError",
    "ProviderError",
    "ProviderTimeout",
    "StorageError",
]
