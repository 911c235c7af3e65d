"""
Engine configuration from environment variables.

ENVIRONMENT VARIABLES:
    POSTHOG_API_KEY: Project API key (empty disables the PostHog provider)
    POSTHOG_HOST: PostHog host (default: https://us.i.posthog.com)
    POSTHOG_PERSONAL_API_KEY: Enables local flag evaluation (optional)
    POSTHOG_POLL_INTERVAL: Flag polling interval in seconds (default: 15)
    HOGFLIX_FLAG_CACHE_TTL_SECONDS: Flag cache TTL (default: 300)
    HOGFLIX_GROUP_DEBOUNCE_MS: Group write debounce window (default: 300)
    HOGFLIX_PROVIDER_TIMEOUT_SECONDS: Identify/group/flag timeout (default: 10)
    HOGFLIX_FLAG_MAX_RETRIES: Flag resolve retries (default: 2)
    HOGFLIX_FLAG_BACKOFF_BASE_MS: First retry delay (default: 2000)
    HOGFLIX_FLAG_BACKOFF_CAP_MS: Maximum retry delay (default: 10000)
    HOGFLIX_IDENTITY_SETTLE_MS: Delay between reset and re-identify (default: 200)
    HOGFLIX_STORAGE_PATH: JSON file used as local storage (default: in-memory)
    SUPABASE_URL / SUPABASE_ANON_KEY: Profile store REST access (optional)
    SUPABASE_JWT_SECRET: Secret for verifying session access tokens (optional)
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_POSTHOG_HOST = "https://us.i.posthog.com"

CACHE_TTL_SECONDS = 300.0
DEBOUNCE_MS = 300
PROVIDER_TIMEOUT_SECONDS = 10.0
MAX_RETRIES = 2
BACKOFF_BASE_MS = 2000
BACKOFF_CAP_MS = 10000
SETTLE_MS = 200


def _safe_int(value, default):
    """Safely convert a value to int, returning default on failure."""
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _safe_float(value, default):
    try:
        return float(value)
    except (ValueError, TypeError):
        return default


@dataclass(frozen=True)
class EngineSettings:
    """Tunables for every engine component. Durations are in seconds."""

    posthog_api_key: str = ""
    posthog_host: str = DEFAULT_POSTHOG_HOST
    posthog_personal_api_key: str = ""
    posthog_poll_interval: int = 15

    cache_ttl: float = CACHE_TTL_SECONDS
    debounce: float = DEBOUNCE_MS / 1000
    provider_timeout: float = PROVIDER_TIMEOUT_SECONDS
    max_retries: int = MAX_RETRIES
    backoff_base: float = BACKOFF_BASE_MS / 1000
    backoff_cap: float = BACKOFF_CAP_MS / 1000
    settle_delay: float = SETTLE_MS / 1000

    storage_path: str | None = None
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    supabase_jwt_secret: str | None = None

    @classmethod
    def from_env(cls) -> EngineSettings:
        """Build settings from the environment; malformed numbers use defaults."""
        return cls(
            posthog_api_key=os.getenv("POSTHOG_API_KEY", ""),
            posthog_host=os.getenv("POSTHOG_HOST", DEFAULT_POSTHOG_HOST),
            posthog_personal_api_key=os.getenv("POSTHOG_PERSONAL_API_KEY", ""),
            posthog_poll_interval=_safe_int(os.getenv("POSTHOG_POLL_INTERVAL"), 15),
            cache_ttl=_safe_float(
                os.getenv("HOGFLIX_FLAG_CACHE_TTL_SECONDS"), CACHE_TTL_SECONDS
            ),
            debounce=_safe_int(os.getenv("HOGFLIX_GROUP_DEBOUNCE_MS"), DEBOUNCE_MS) / 1000,
            provider_timeout=_safe_float(
                os.getenv("HOGFLIX_PROVIDER_TIMEOUT_SECONDS"), PROVIDER_TIMEOUT_SECONDS
            ),
            max_retries=_safe_int(os.getenv("HOGFLIX_FLAG_MAX_RETRIES"), MAX_RETRIES),
            backoff_base=_safe_int(
                os.getenv("HOGFLIX_FLAG_BACKOFF_BASE_MS"), BACKOFF_BASE_MS
            ) / 1000,
            backoff_cap=_safe_int(
                os.getenv("HOGFLIX_FLAG_BACKOFF_CAP_MS"), BACKOFF_CAP_MS
            ) / 1000,
            settle_delay=_safe_int(os.getenv("HOGFLIX_IDENTITY_SETTLE_MS"), SETTLE_MS) / 1000,
            storage_path=os.getenv("HOGFLIX_STORAGE_PATH") or None,
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
            supabase_jwt_secret=os.getenv("SUPABASE_JWT_SECRET") or None,
        )
