"""
Auth/session provider interface.

A Session is what the auth provider knows about the signed-in visitor:
a stable identifier (the email) plus free-form metadata. The engine only
needs two things from the provider: the current session, and a way to be
told when it changes.

USAGE:
    sessions = InMemorySessionProvider()
    unsubscribe = sessions.subscribe(bridge.on_session_changed)
    sessions.sign_in(Session(identifier="max@hogflix.com"))
    sessions.sign_out()

Supabase access tokens can be turned into sessions with
session_from_access_token().
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import jwt

from hogflix.logger import logger

from .errors import InvalidSessionToken

SessionCallback = Callable[["Session | None"], Awaitable[None]]

SUPABASE_AUDIENCE = "authenticated"
TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class Session:
    identifier: str
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None

    @property
    def display_name(self) -> str:
        """Name from metadata, or the local part of the identifier."""
        name = self.metadata.get("name") or self.metadata.get("full_name")
        if name:
            return str(name)
        return self.identifier.split("@")[0]


class SessionProvider(Protocol):
    async def get_current_session(self) -> Session | None: ...

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]: ...


class InMemorySessionProvider:
    """
    Session provider driven by explicit sign_in / sign_out calls.

    Notifications are delivered as tasks on the running loop, like the
    browser auth client delivers them as separate callbacks. Repeated
    sign_in() with the same session models the duplicate SIGNED_IN
    events real providers emit.
    """

    def __init__(self, session: Session | None = None) -> None:
        self._session = session
        self._subscribers: list[SessionCallback] = []
        self._tasks: set[asyncio.Task] = set()

    async def get_current_session(self) -> Session | None:
        return self._session

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def sign_in(self, session: Session) -> list[asyncio.Task]:
        self._session = session
        return self._notify(session)

    def sign_out(self) -> list[asyncio.Task]:
        self._session = None
        return self._notify(None)

    def _notify(self, session: Session | None) -> list[asyncio.Task]:
        loop = asyncio.get_running_loop()
        tasks = []
        for callback in list(self._subscribers):
            task = loop.create_task(callback(session))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def drain(self) -> None:
        """Wait for every delivered notification to be handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def session_from_access_token(
    token: str,
    secret: str,
    audience: str = SUPABASE_AUDIENCE,
) -> Session:
    """
    Decode a Supabase access token into a Session.

    The token must be signed with the project JWT secret and carry an
    `email` claim; `user_metadata` becomes the session metadata and `sub`
    the user id.

    Raises:
        InvalidSessionToken: signature, expiry, audience or claims invalid
    """
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[TOKEN_ALGORITHM],
            audience=audience,
        )
    except jwt.PyJWTError as e:
        logger.warning("session_token_rejected", error=str(e))
        raise InvalidSessionToken(str(e)) from e

    email = claims.get("email")
    if not email:
        raise InvalidSessionToken("token has no email claim")

    metadata = claims.get("user_metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}

    return Session(identifier=email, metadata=dict(metadata), user_id=claims.get("sub"))
