"""
Feature flag resolution with cache fallback and bounded retry.

RESOLUTION ORDER (is_enabled, synchronous):
    1. Live value loaded from the provider for the current identity
    2. FlagCache value, if not expired
    3. False

REFRESH (resolve, async):
    reload flags from the provider under a timeout. A value confirmed for
    an identified visitor becomes live and is written to FlagCache. Any
    failure, or a value seen before identification, is retried up to
    max_retries times with exponential backoff (2s, 4s, ... capped at 10s).
    After that the flag stays on its best-known value until remount() or
    an identity reset.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from hogflix.logger import logger

from .config import (
    BACKOFF_BASE_MS,
    BACKOFF_CAP_MS,
    MAX_RETRIES,
    PROVIDER_TIMEOUT_SECONDS,
)
from .flag_cache import FlagCache
from .identity_state import IdentityState
from .provider import AnalyticsProvider, call_with_timeout


# =============================================================================
# STEP 1: BACKOFF POLICY
# =============================================================================

def backoff_delay(retry: int, base: float, cap: float) -> float:
    """Delay before the given retry (1-based): base * 2**(retry-1), capped."""
    return min(base * (2 ** (retry - 1)), cap)


# =============================================================================
# STEP 2: RESOLVER
# =============================================================================

class FeatureFlagResolver:
    """
    Reads flags for the current visitor and keeps FlagCache up to date.

    FeatureFlagResolver is the only writer of FlagCache.

    Args:
        provider: Analytics provider used for live flag values
        identity: Identity state (read only)
        cache: Flag cache
        max_retries: Retries after the first attempt (default: 2)
        backoff_base: First retry delay in seconds (default: 2.0)
        backoff_cap: Maximum retry delay in seconds (default: 10.0)
        timeout: Timeout for one flag reload in seconds (default: 10.0)
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        provider: AnalyticsProvider,
        identity: IdentityState,
        cache: FlagCache,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE_MS / 1000,
        backoff_cap: float = BACKOFF_CAP_MS / 1000,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._identity = identity
        self._cache = cache
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._timeout = timeout
        self._sleep = sleep

        # live values belong to one identity; None is the anonymous visitor
        self._live: dict[str, bool] = {}
        self._live_for: str | None = None
        self._exhausted: set[str] = set()
        self._known: set[str] = set()
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def known_flags(self) -> frozenset[str]:
        return frozenset(self._known)

    def is_exhausted(self, flag_name: str) -> bool:
        return flag_name in self._exhausted

    def has_live_value(self, flag_name: str) -> bool:
        """True if a value was confirmed for the current identity."""
        return self._live_for == self._identity.external_id and flag_name in self._live

    def is_enabled(self, flag_name: str) -> bool:
        """
        Best available value, without touching the network.

        Args:
            flag_name: Feature flag key

        Returns:
            The live value for the current identity, else the cached value,
            else False

        Example:
            if resolver.is_enabled("my_list"):
                show_my_list()
        """
        self._known.add(flag_name)

        if self._live_for == self._identity.external_id and flag_name in self._live:
            return self._live[flag_name]

        cached = self._cache.get(flag_name)
        if cached is not None:
            return cached

        return False

    def resolve_in_background(self, flag_name: str) -> asyncio.Task | None:
        """
        Start resolve() unless one is already running for this flag or the
        flag is exhausted. Returns the running task, if any.
        """
        self._known.add(flag_name)
        if flag_name in self._exhausted:
            return None

        task = self._inflight.get(flag_name)
        if task is not None and not task.done():
            return task

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None

        task = loop.create_task(self.resolve(flag_name))
        self._inflight[flag_name] = task
        task.add_done_callback(lambda t, name=flag_name: self._forget_task(name, t))
        return task

    def _forget_task(self, flag_name: str, task: asyncio.Task) -> None:
        if self._inflight.get(flag_name) is task:
            del self._inflight[flag_name]

    async def resolve(self, flag_name: str) -> bool:
        """
        Refresh one flag from the provider, retrying per the backoff policy.

        Args:
            flag_name: Feature flag key

        Returns:
            The confirmed value, or the best-known value once retries are
            exhausted (the flag is then marked exhausted)

        Example:
            enabled = await resolver.resolve("my_list")
        """
        self._known.add(flag_name)
        if flag_name in self._exhausted:
            return self.is_enabled(flag_name)

        results = await self._resolve_many([flag_name])
        return results[flag_name]

    async def _resolve_many(self, flag_names: list[str]) -> dict[str, bool]:
        # one reload per attempt serves every flag still unresolved
        unresolved = list(flag_names)
        results: dict[str, bool] = {}

        retry = 0
        while True:
            identity_id = self._identity.external_id
            identified = self._identity.is_identified
            values = await self._fetch(unresolved, attempt=retry + 1)

            if self._identity.external_id == identity_id:
                for name, value in values.items():
                    if value is None:
                        continue
                    self._set_live(identity_id, name, value)
                    if identified:
                        self._cache.set(name, value)
                        results[name] = value
                        unresolved.remove(name)
                        logger.info(
                            "flag_resolved",
                            flag=name,
                            value=value,
                            attempts=retry + 1,
                        )

            if not unresolved:
                return results

            if retry >= self._max_retries:
                for name in unresolved:
                    self._exhausted.add(name)
                    results[name] = self.is_enabled(name)
                    logger.warning(
                        "flag_resolve_exhausted",
                        flag=name,
                        retries=retry,
                        identified=self._identity.is_identified,
                        fallback=results[name],
                    )
                return results

            retry += 1
            delay = backoff_delay(retry, self._backoff_base, self._backoff_cap)
            logger.info(
                "flag_resolve_retry",
                flags=unresolved,
                retry=retry,
                delay_seconds=delay,
                identified=identified,
            )
            await self._sleep(delay)

    async def _fetch(self, flag_names: list[str], attempt: int) -> dict[str, bool | None]:
        try:
            await call_with_timeout(
                self._provider.reload_flags(), self._timeout, "reload_flags"
            )
        except Exception as e:
            logger.warning(
                "flag_reload_failed",
                flags=flag_names,
                attempt=attempt,
                error=str(e),
            )
            return {name: None for name in flag_names}

        return {name: self._provider.is_feature_enabled(name) for name in flag_names}

    def _set_live(self, identity_id: str | None, flag_name: str, value: bool) -> None:
        if self._live_for != identity_id:
            self._live = {}
            self._live_for = identity_id
        self._live[flag_name] = value

    async def refresh(self) -> dict[str, bool]:
        """
        Re-resolve every flag read so far (after an identification).

        Exhaustion marks are cleared first. All flags share one reload per
        attempt.

        Returns:
            Mapping of flag name to its resolved or best-known value
        """
        self._exhausted.clear()
        names = sorted(self._known)
        if not names:
            return {}
        return await self._resolve_many(names)

    def remount(self, flag_name: str) -> None:
        """Allow an exhausted flag to hit the network again."""
        self._exhausted.discard(flag_name)

    def invalidate(self) -> None:
        """Drop live values, exhaustion marks, pending resolves and cached flags."""
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
        self._live = {}
        self._live_for = None
        self._exhausted.clear()
        self._cache.invalidate_all()
