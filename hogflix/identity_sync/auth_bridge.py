"""
Bridge between auth session notifications and the visitor identity.

DECISIONS PER NOTIFICATION:
    no session                        -> reset (logout)
    same identifier, IDENTIFIED       -> no-op (duplicate notification)
    other identifier, IDENTIFIED      -> reset, settle delay, identify
    otherwise                         -> identify, then enrich in background

Only one check runs at a time. A notification that arrives during a check
is dropped; once the running check finishes the bridge reconciles once
against the provider's current session, so the final state is never lost.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from hogflix.logger import logger

from .config import PROVIDER_TIMEOUT_SECONDS, SETTLE_MS
from .events import utc_now_iso
from .flags import FeatureFlagResolver
from .groups import GroupCoalescer
from .identity_state import IdentityState
from .profiles import Profile, ProfileStore
from .provider import AnalyticsProvider, call_with_timeout
from .session import Session, SessionProvider


class AuthBridge:
    """
    Drives IdentityState from session changes.

    USAGE:
        bridge = AuthBridge(identity, provider, resolver, coalescer,
                            profiles=store, sessions=session_provider)
        await bridge.start()     # subscribe + reconcile the current session
        ...
        bridge.stop()

    Args:
        identity: The identity state machine (AuthBridge is its only writer)
        provider: Analytics provider receiving identify/reset
        resolver: Flag resolver, refreshed after identification
        coalescer: Group coalescer fed with profile cohort hints
        profiles: Optional profile store used for enrichment
        sessions: Optional session provider (needed by start/reconcile_now)
        settle_delay: Seconds between a forced reset and the next identify
        timeout: Timeout in seconds for identify and profile lookups
    """

    def __init__(
        self,
        identity: IdentityState,
        provider: AnalyticsProvider,
        resolver: FeatureFlagResolver,
        coalescer: GroupCoalescer,
        profiles: ProfileStore | None = None,
        sessions: SessionProvider | None = None,
        settle_delay: float = SETTLE_MS / 1000,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self._identity = identity
        self._provider = provider
        self._resolver = resolver
        self._coalescer = coalescer
        self._profiles = profiles
        self._sessions = sessions
        self._settle_delay = settle_delay
        self._timeout = timeout

        self._check_in_progress = False
        self._missed_notification = False
        self._enrichment: asyncio.Task | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def check_in_progress(self) -> bool:
        return self._check_in_progress

    @property
    def enrichment_task(self) -> asyncio.Task | None:
        return self._enrichment

    async def start(self) -> None:
        """Subscribe to session changes and reconcile the current session."""
        if self._sessions is None:
            logger.warning("auth_bridge_without_session_provider")
            return
        if self._unsubscribe is None:
            self._unsubscribe = self._sessions.subscribe(self.on_session_changed)
        await self.reconcile_now()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_enrichment()

    async def reconcile_now(self) -> None:
        """Reconcile against the provider's current session. Idempotent."""
        if self._sessions is None:
            return
        await self.on_session_changed(await self._current_session())

    async def on_session_changed(self, session: Session | None) -> None:
        if self._check_in_progress:
            self._missed_notification = True
            logger.info(
                "session_check_dropped",
                reason="check_in_progress",
                identifier=session.identifier if session else None,
            )
            return

        self._check_in_progress = True
        try:
            await self._reconcile(session)
            while self._missed_notification and self._sessions is not None:
                self._missed_notification = False
                await self._reconcile(await self._current_session())
        except Exception as e:
            logger.error("session_check_failed", error=str(e))
        finally:
            self._missed_notification = False
            self._check_in_progress = False

    async def _current_session(self) -> Session | None:
        try:
            return await self._sessions.get_current_session()
        except Exception as e:
            logger.warning("session_lookup_failed", error=str(e))
            return None

    async def _reconcile(self, session: Session | None) -> None:
        if session is None or not session.identifier:
            self._reset("logout")
            return

        identifier = session.identifier
        if self._identity.is_identified:
            if self._identity.external_id == identifier:
                logger.debug("session_duplicate_ignored", identifier=identifier)
                return

            logger.info(
                "identity_switch_detected",
                previous=self._identity.external_id,
                identifier=identifier,
            )
            self._reset("identity_switch")
            await asyncio.sleep(self._settle_delay)

        await self._identify(session)

    def _reset(self, reason: str) -> None:
        self._cancel_enrichment()
        try:
            self._provider.reset()
        except Exception as e:
            logger.error("provider_reset_failed", reason=reason, error=str(e))
        self._identity.reset(reason)
        logger.info("identity_reset", reason=reason)

    async def _identify(self, session: Session) -> bool:
        identifier = session.identifier
        if not self._identity.begin(identifier):
            return False

        try:
            await call_with_timeout(
                self._provider.identify(identifier, self._identify_properties(session)),
                self._timeout,
                "identify",
            )
        except asyncio.CancelledError:
            # the next auth event must be able to begin again
            self._identity.fail("cancelled")
            logger.warning("identity_identify_cancelled", identifier=identifier)
            raise
        except Exception as e:
            # no retry here: the next auth event starts over
            self._identity.fail(str(e))
            logger.error("identity_identify_failed", identifier=identifier, error=str(e))
            return False

        if not self._identity.complete(identifier):
            return False

        logger.info("identity_identified", identifier=identifier)
        self._enrichment = asyncio.get_running_loop().create_task(self._enrich(session))
        return True

    @staticmethod
    def _identify_properties(session: Session) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "email": session.identifier,
            "name": session.display_name,
            "$set_once": {"first_seen": utc_now_iso()},
        }
        if session.user_id:
            properties["supabase_id"] = session.user_id
        return properties

    async def _enrich(self, session: Session) -> None:
        identifier = session.identifier
        profile = await self._fetch_profile(identifier)

        if self._identity.external_id != identifier:
            logger.info("enrichment_aborted", identifier=identifier)
            return

        if profile is not None:
            self._apply_profile(session, profile)
            # flags are evaluated with the cohorts just assigned
            await self._coalescer.flush()

        if self._identity.external_id == identifier:
            await self._resolver.refresh()

    async def _fetch_profile(self, identifier: str) -> Profile | None:
        if self._profiles is None:
            return None
        try:
            return await asyncio.wait_for(
                self._profiles.fetch_profile(identifier), self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning("profile_fetch_timeout", identifier=identifier)
        except Exception as e:
            logger.warning("profile_fetch_failed", identifier=identifier, error=str(e))
        return None

    def _apply_profile(self, session: Session, profile: Profile) -> None:
        person = dict(profile.attributes)
        person["name"] = profile.display_name or session.display_name
        if profile.created_at:
            person["date_joined"] = profile.created_at
        try:
            self._provider.set_person_properties(person)
        except Exception as e:
            logger.warning("person_properties_failed", error=str(e))

        for group_type, label in profile.cohort_hints.items():
            extras: dict[str, Any] = {"updated_at": utc_now_iso()}
            if profile.created_at:
                extras["date_joined"] = profile.created_at
            self._coalescer.assign(group_type, label, extras)

        logger.info(
            "profile_enrichment_applied",
            cohorts=sorted(profile.cohort_hints),
        )

    def _cancel_enrichment(self) -> None:
        if self._enrichment is not None and not self._enrichment.done():
            self._enrichment.cancel()
        self._enrichment = None
