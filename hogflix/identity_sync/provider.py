"""
Analytics / feature flag provider interface and its PostHog implementation.

The engine never touches a global SDK handle: it receives an
AnalyticsProvider and talks to it through this narrow surface.

    identify(id, properties)          async, awaited by AuthBridge
    reset()                           forget the identified visitor
    group(type, key, properties)      async, used by GroupCoalescer
    capture(event, properties)        fire-and-forget
    set_person_properties(properties) fire-and-forget
    is_feature_enabled(flag)          value loaded for the current visitor
    reload_flags()                    async refresh of all flag values

PostHogProvider wraps the server-side `posthog` SDK and keeps the visitor
state the browser SDK would keep for us (anonymous id, identified id,
groups, loaded flags). Blocking SDK calls run in a worker thread; state is
only mutated back on the event loop.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Awaitable, Protocol, TypeVar

from posthog import Posthog

from hogflix.logger import logger

from .config import EngineSettings
from .errors import ProviderError, ProviderTimeout

T = TypeVar("T")


# =============================================================================
# STEP 1: PROVIDER INTERFACE
# =============================================================================

class AnalyticsProvider(Protocol):
    async def identify(self, distinct_id: str, properties: dict[str, Any]) -> None: ...

    def reset(self) -> None: ...

    async def group(
        self, group_type: str, group_key: str, properties: dict[str, Any]
    ) -> None: ...

    def capture(self, event: str, properties: dict[str, Any] | None = None) -> None: ...

    def set_person_properties(self, properties: dict[str, Any]) -> None: ...

    def is_feature_enabled(self, flag_name: str) -> bool | None: ...

    async def reload_flags(self) -> None: ...


# =============================================================================
# STEP 2: TIMEOUTS
# =============================================================================

async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str,
) -> T:
    """
    Await a provider call, turning a timeout into ProviderTimeout.

    Example:
        await call_with_timeout(provider.identify(email, props), 10.0, "identify")
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise ProviderTimeout(f"{operation} timed out after {timeout}s") from e


# =============================================================================
# STEP 3: POSTHOG PROVIDER
# =============================================================================

class PostHogProvider:
    """
    AnalyticsProvider backed by the PostHog Python SDK.

    USAGE:
        provider = PostHogProvider.from_settings(EngineSettings.from_env())
        await provider.identify("max@hogflix.com", {"email": "max@hogflix.com"})
        await provider.reload_flags()
        provider.is_feature_enabled("my_list")

    Args:
        client: A configured posthog.Posthog instance
    """

    def __init__(self, client: Posthog) -> None:
        self._client = client
        self._anonymous_id = str(uuid.uuid4())
        self._identified_id: str | None = None
        self._groups: dict[str, str] = {}
        self._flags: dict[str, Any] = {}
        self._flags_for: str | None = None

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> PostHogProvider:
        """
        Build a provider from settings.

        Without an API key the SDK is created disabled: captures become
        no-ops and flag reloads fail, so every flag reads as its default.
        """
        disabled = not settings.posthog_api_key
        if disabled:
            logger.warning("posthog_api_key_missing", host=settings.posthog_host)

        client = Posthog(
            project_api_key=settings.posthog_api_key or "disabled",
            host=settings.posthog_host,
            personal_api_key=settings.posthog_personal_api_key or None,
            poll_interval=settings.posthog_poll_interval,
            disabled=disabled,
        )
        logger.info(
            "posthog_provider_initialized",
            host=settings.posthog_host,
            local_evaluation=bool(settings.posthog_personal_api_key),
            disabled=disabled,
        )
        return cls(client)

    @property
    def distinct_id(self) -> str:
        """The identified id, or the anonymous id before identification."""
        return self._identified_id or self._anonymous_id

    @property
    def anonymous_id(self) -> str:
        return self._anonymous_id

    @property
    def groups(self) -> dict[str, str]:
        return dict(self._groups)

    @property
    def flags_loaded(self) -> bool:
        return self._flags_for == self.distinct_id

    async def identify(self, distinct_id: str, properties: dict[str, Any]) -> None:
        """
        Merge the anonymous visitor into distinct_id.

        Sends a `$identify` event carrying `$anon_distinct_id`, so PostHog
        links the anonymous history to the person. Flags loaded for the
        anonymous id are dropped.

        Args:
            distinct_id: Stable external identifier (the account email)
            properties: Person properties for `$set`; a `$set_once` entry is
                sent as `$set_once`

        Raises:
            ProviderError: If the SDK call fails

        Example:
            await provider.identify(
                "max@hogflix.com",
                {"email": "max@hogflix.com", "$set_once": {"first_seen": now}},
            )
        """
        person = dict(properties)
        set_once = person.pop("$set_once", None) or {}
        event_properties = {
            "$anon_distinct_id": self._anonymous_id,
            "$set": person,
            "$set_once": set_once,
        }

        try:
            await asyncio.to_thread(
                self._client.capture,
                "$identify",
                distinct_id=distinct_id,
                properties=event_properties,
            )
        except Exception as e:
            raise ProviderError(f"identify failed: {e}") from e

        self._identified_id = distinct_id
        # flags loaded for the anonymous id no longer apply
        self._flags = {}
        self._flags_for = None

    def reset(self) -> None:
        self._identified_id = None
        self._anonymous_id = str(uuid.uuid4())
        self._groups = {}
        self._flags = {}
        self._flags_for = None

    async def group(
        self, group_type: str, group_key: str, properties: dict[str, Any]
    ) -> None:
        """
        Write a group's properties and attach the current visitor to it.

        Args:
            group_type: Group type, e.g. "subscription"
            group_key: Slugified group key, e.g. "premium"
            properties: Group properties (must carry name == group_key)

        Raises:
            ProviderError: If the SDK call fails

        The membership is only recorded locally when the visitor did not
        change while the write was in flight.
        """
        distinct_id = self.distinct_id
        try:
            await asyncio.to_thread(
                self._client.group_identify,
                group_type,
                group_key,
                properties=properties,
                distinct_id=distinct_id,
            )
        except Exception as e:
            raise ProviderError(f"group write failed: {e}") from e

        if self.distinct_id == distinct_id:
            self._groups[group_type] = group_key

    def capture(self, event: str, properties: dict[str, Any] | None = None) -> None:
        event_properties = dict(properties or {})
        groups = dict(self._groups)
        groups.update(event_properties.pop("$groups", None) or {})

        try:
            self._client.capture(
                event,
                distinct_id=self.distinct_id,
                properties=event_properties,
                groups=groups or None,
            )
        except Exception as e:
            raise ProviderError(f"capture failed: {e}") from e

    def set_person_properties(self, properties: dict[str, Any]) -> None:
        try:
            self._client.set(distinct_id=self.distinct_id, properties=properties)
        except Exception as e:
            raise ProviderError(f"set failed: {e}") from e

    def is_feature_enabled(self, flag_name: str) -> bool | None:
        """
        Value of a flag from the last reload for the current visitor.

        Args:
            flag_name: Feature flag key

        Returns:
            True/False from the loaded payload, or None when no payload has
            been loaded for the current distinct id

        Example:
            await provider.reload_flags()
            if provider.is_feature_enabled("my_list"):
                ...
        """
        if not self.flags_loaded:
            return None
        # a flag missing from a loaded payload is off; multivariate flags are
        # "enabled" when a variant is assigned
        return bool(self._flags.get(flag_name, False))

    async def reload_flags(self) -> None:
        """
        Fetch every flag for the current visitor and its groups.

        Raises:
            ProviderError: If the request fails or returns no data

        A payload that arrives after the visitor changed is discarded.
        """
        distinct_id = self.distinct_id
        groups = dict(self._groups)

        try:
            flags = await asyncio.to_thread(
                self._client.get_all_flags,
                distinct_id,
                groups=groups,
            )
        except Exception as e:
            raise ProviderError(f"flag reload failed: {e}") from e

        if flags is None:
            raise ProviderError("flag reload returned no data")

        if self.distinct_id != distinct_id:
            # the visitor changed while the request was in flight
            return

        self._flags = dict(flags)
        self._flags_for = distinct_id

    def shutdown(self) -> None:
        """Flush queued events and stop SDK background threads."""
        try:
            self._client.shutdown()
        except Exception as e:
            logger.warning("posthog_shutdown_failed", error=str(e))
