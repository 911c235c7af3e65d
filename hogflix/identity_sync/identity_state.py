"""
Visitor identity state machine.

    ANONYMOUS --begin--> IDENTIFYING --complete--> IDENTIFIED
        ^                    |                          |
        +-------fail---------+                          |
        +-------------------reset-----------------------+

Only AuthBridge drives it. Every transition goes through one table, so a
trigger that is not allowed from the current state is dropped (and logged)
instead of being prevented by scattered boolean checks.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable

from hogflix.logger import bind_visitor, clear_context, logger


class LifecycleState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    IDENTIFYING = "identifying"
    IDENTIFIED = "identified"


class Transition(str, enum.Enum):
    BEGIN = "begin"
    COMPLETE = "complete"
    FAIL = "fail"
    RESET = "reset"


_TRANSITIONS: dict[tuple[LifecycleState, Transition], LifecycleState] = {
    (LifecycleState.ANONYMOUS, Transition.BEGIN): LifecycleState.IDENTIFYING,
    (LifecycleState.IDENTIFYING, Transition.COMPLETE): LifecycleState.IDENTIFIED,
    (LifecycleState.IDENTIFYING, Transition.FAIL): LifecycleState.ANONYMOUS,
    (LifecycleState.ANONYMOUS, Transition.RESET): LifecycleState.ANONYMOUS,
    (LifecycleState.IDENTIFYING, Transition.RESET): LifecycleState.ANONYMOUS,
    (LifecycleState.IDENTIFIED, Transition.RESET): LifecycleState.ANONYMOUS,
}


@dataclass(frozen=True)
class IdentitySnapshot:
    """Read-only view handed to the rest of the application."""

    is_identified: bool
    is_identifying: bool
    external_id: str | None = None


class IdentityState:
    """
    Single-writer holder of the current visitor identity.

    Reset hooks run synchronously inside reset(), before it returns, so no
    later begin() can observe cached flags or cohorts of the previous
    visitor.
    """

    def __init__(self) -> None:
        self._state = LifecycleState.ANONYMOUS
        self._external_id: str | None = None
        self._pending_id: str | None = None
        self._reset_hooks: list[Callable[[], None]] = []
        self._begin_hooks: list[Callable[[str], None]] = []

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def external_id(self) -> str | None:
        return self._external_id

    @property
    def pending_id(self) -> str | None:
        """The identifier currently being identified, if any."""
        return self._pending_id

    @property
    def is_identified(self) -> bool:
        return self._state is LifecycleState.IDENTIFIED

    @property
    def is_identifying(self) -> bool:
        return self._state is LifecycleState.IDENTIFYING

    def snapshot(self) -> IdentitySnapshot:
        return IdentitySnapshot(
            is_identified=self.is_identified,
            is_identifying=self.is_identifying,
            external_id=self._external_id,
        )

    def add_reset_hook(self, hook: Callable[[], None]) -> None:
        self._reset_hooks.append(hook)

    def add_begin_hook(self, hook: Callable[[str], None]) -> None:
        """Register a hook called with the identifier when identification begins."""
        self._begin_hooks.append(hook)

    def begin(self, external_id: str) -> bool:
        """
        ANONYMOUS -> IDENTIFYING. Returns False if the trigger was dropped.

        Begin hooks run before this returns, so state left behind by another
        visitor (e.g. in persistent storage) is gone before identify is sent.
        """
        if not self._apply(Transition.BEGIN, external_id=external_id):
            return False
        self._pending_id = external_id
        bind_visitor(external_id, state=self._state.value)

        for hook in self._begin_hooks:
            try:
                hook(external_id)
            except Exception as e:
                logger.error("identity_begin_hook_failed", error=str(e))
        return True

    def complete(self, external_id: str) -> bool:
        """IDENTIFYING -> IDENTIFIED, recording the identifier."""
        if self._pending_id != external_id:
            logger.warning(
                "identity_complete_mismatch",
                expected=self._pending_id,
                received=external_id,
            )
            return False
        if not self._apply(Transition.COMPLETE, external_id=external_id):
            return False
        self._external_id = external_id
        self._pending_id = None
        bind_visitor(external_id, state=self._state.value)
        return True

    def fail(self, reason: str) -> bool:
        """IDENTIFYING -> ANONYMOUS after a failed identify call."""
        failed_id = self._pending_id
        if not self._apply(Transition.FAIL, external_id=failed_id, reason=reason):
            return False
        self._pending_id = None
        clear_context()
        return True

    def reset(self, reason: str) -> None:
        """Any state -> ANONYMOUS, clearing caches through the reset hooks."""
        previous_id = self._external_id or self._pending_id
        self._apply(Transition.RESET, external_id=previous_id, reason=reason)
        self._external_id = None
        self._pending_id = None

        for hook in self._reset_hooks:
            try:
                hook()
            except Exception as e:
                logger.error("identity_reset_hook_failed", error=str(e))

        clear_context()

    def _apply(self, transition: Transition, **fields) -> bool:
        target = _TRANSITIONS.get((self._state, transition))
        if target is None:
            logger.info(
                "identity_transition_dropped",
                transition=transition.value,
                state=self._state.value,
                **fields,
            )
            return False

        logger.debug(
            "identity_transition",
            transition=transition.value,
            from_state=self._state.value,
            to_state=target.value,
            **fields,
        )
        self._state = target
        return True
