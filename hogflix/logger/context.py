"""
Visitor context propagation for logs.

PROBLEM:
    Identity transitions, group writes and flag lookups interleave on one
    event loop. A log line is only useful if it says which visitor it was
    about.

SOLUTION:
    1. The engine stores the current distinct id and identity state in
       contextvars whenever the identity changes
    2. inject_visitor_context (a structlog processor) adds them to every log
    3. Tasks spawned afterwards inherit a copy of the context

USAGE:
    from hogflix.logger.context import bind_visitor, visitor_context

    bind_visitor("max@hogflix.com", state="identified")

    with visitor_context("kid@hogflix.com"):
        logger.info("group_write_scheduled")  # includes distinct_id
"""

from __future__ import annotations

import contextvars
from typing import Any

_distinct_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "distinct_id",
    default=None,
)

_identity_state: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "identity_state",
    default=None,
)

# Additional context fields (session_user_id, group types, ...)
_extra_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "extra_context",
    default={},
)


def get_distinct_id() -> str | None:
    """Return the distinct id bound to the current context, if any."""
    return _distinct_id.get()


def get_identity_state() -> str | None:
    return _identity_state.get()


def bind_visitor(distinct_id: str | None, state: str | None = None) -> None:
    """
    Bind the visitor for the current context.

    Args:
        distinct_id: The identified visitor id, or None when anonymous
        state: The identity lifecycle state name

    Example:
        bind_visitor("max@hogflix.com", state="identified")
    """
    _distinct_id.set(distinct_id)
    if state is not None:
        _identity_state.set(state)


def get_extra_context() -> dict[str, Any]:
    return _extra_context.get().copy()


def set_extra_context(**kwargs: Any) -> None:
    """
    Set extra fields included in every log of the current context.

    Example:
        set_extra_context(session_user_id="4f1c...")
    """
    current = _extra_context.get().copy()
    current.update(kwargs)
    _extra_context.set(current)


def clear_context() -> None:
    """Forget the bound visitor (called on logout and identity switch)."""
    _distinct_id.set(None)
    _identity_state.set(None)
    _extra_context.set({})


def inject_visitor_context(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """
    Structlog processor that adds the bound visitor to every log entry.

    Explicit keyword fields passed to the log call are never overwritten.
    """
    distinct_id = get_distinct_id()
    if distinct_id and "distinct_id" not in event_dict:
        event_dict["distinct_id"] = distinct_id

    state = get_identity_state()
    if state and "identity_state" not in event_dict:
        event_dict["identity_state"] = state

    for key, value in get_extra_context().items():
        if key not in event_dict:
            event_dict[key] = value

    return event_dict


def visitor_context(distinct_id: str | None, state: str | None = None):
    """
    Context manager that binds a visitor for a block and restores the
    previous binding afterwards. Works with `with` and `async with`.

    Example:
        async with visitor_context("max@hogflix.com", "identifying"):
            await provider.identify(...)
    """
    class VisitorContextManager:
        def __init__(self) -> None:
            self._tokens: tuple[contextvars.Token, contextvars.Token] | None = None

        def __enter__(self):
            self._tokens = (
                _distinct_id.set(distinct_id),
                _identity_state.set(state),
            )
            return distinct_id

        def __exit__(self, exc_type, exc_val, exc_tb):
            if self._tokens is not None:
                _distinct_id.reset(self._tokens[0])
                _identity_state.reset(self._tokens[1])
            return False

        async def __aenter__(self):
            return self.__enter__()

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            return self.__exit__(exc_type, exc_val, exc_tb)

    return VisitorContextManager()
