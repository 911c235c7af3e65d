"""
Tests for hogflix.identity_sync.identity_state.

Run with:
    pytest tests/test_identity_state.py -v
"""

from hogflix.identity_sync.identity_state import (
    IdentitySnapshot,
    IdentityState,
    LifecycleState,
)
from hogflix.logger import get_distinct_id


class TestTransitions:
    """Allowed transitions of the lifecycle."""

    def test_starts_anonymous(self):
        state = IdentityState()

        assert state.state is LifecycleState.ANONYMOUS
        assert state.external_id is None

    def test_begin_then_complete(self):
        state = IdentityState()

        assert state.begin("max@hogflix.com") is True
        assert state.is_identifying
        assert state.complete("max@hogflix.com") is True
        assert state.is_identified
        assert state.external_id == "max@hogflix.com"

    def test_fail_reverts_to_anonymous(self):
        state = IdentityState()
        state.begin("max@hogflix.com")

        assert state.fail("timeout") is True
        assert state.state is LifecycleState.ANONYMOUS
        assert state.external_id is None
        assert state.pending_id is None

    def test_reset_from_identified(self):
        state = IdentityState()
        state.begin("max@hogflix.com")
        state.complete("max@hogflix.com")

        state.reset("logout")

        assert state.state is LifecycleState.ANONYMOUS
        assert state.external_id is None

    def test_cycles_for_process_lifetime(self):
        state = IdentityState()
        for email in ("a@hogflix.com", "b@hogflix.com", "a@hogflix.com"):
            assert state.begin(email)
            assert state.complete(email)
            state.reset("logout")

        assert state.state is LifecycleState.ANONYMOUS


class TestDroppedTriggers:
    """Triggers not allowed from the current state are no-ops."""

    def test_second_begin_while_identifying_is_dropped(self):
        state = IdentityState()
        state.begin("max@hogflix.com")

        assert state.begin("other@hogflix.com") is False
        assert state.pending_id == "max@hogflix.com"
        assert state.is_identifying

    def test_begin_while_identified_is_dropped(self):
        state = IdentityState()
        state.begin("max@hogflix.com")
        state.complete("max@hogflix.com")

        assert state.begin("other@hogflix.com") is False
        assert state.external_id == "max@hogflix.com"

    def test_complete_without_begin_is_dropped(self):
        state = IdentityState()

        assert state.complete("max@hogflix.com") is False
        assert state.state is LifecycleState.ANONYMOUS

    def test_complete_with_other_identifier_is_dropped(self):
        state = IdentityState()
        state.begin("max@hogflix.com")

        assert state.complete("other@hogflix.com") is False
        assert state.is_identifying

    def test_fail_while_anonymous_is_dropped(self):
        assert IdentityState().fail("boom") is False


class TestResetHooks:
    """Reset hooks run synchronously before reset() returns."""

    def test_hooks_run_in_order(self):
        calls = []
        state = IdentityState()
        state.add_reset_hook(lambda: calls.append("flags"))
        state.add_reset_hook(lambda: calls.append("groups"))

        state.reset("logout")

        assert calls == ["flags", "groups"]

    def test_failing_hook_does_not_block_others(self):
        calls = []
        state = IdentityState()

        def broken():
            raise RuntimeError("boom")

        state.add_reset_hook(broken)
        state.add_reset_hook(lambda: calls.append("groups"))

        state.reset("logout")

        assert calls == ["groups"]
        assert state.state is LifecycleState.ANONYMOUS


class TestBeginHooks:
    """Begin hooks receive the identifier before begin() returns."""

    def test_hook_called_with_identifier(self):
        calls = []
        state = IdentityState()
        state.add_begin_hook(calls.append)

        assert state.begin("max@hogflix.com") is True

        assert calls == ["max@hogflix.com"]

    def test_dropped_begin_skips_hooks(self):
        calls = []
        state = IdentityState()
        state.add_begin_hook(calls.append)
        state.begin("max@hogflix.com")

        assert state.begin("kid@hogflix.com") is False

        assert calls == ["max@hogflix.com"]

    def test_failing_hook_does_not_block_begin(self):
        calls = []
        state = IdentityState()

        def broken(external_id):
            raise RuntimeError("boom")

        state.add_begin_hook(broken)
        state.add_begin_hook(calls.append)

        assert state.begin("max@hogflix.com") is True

        assert calls == ["max@hogflix.com"]
        assert state.state is LifecycleState.IDENTIFYING


class TestSnapshot:
    """Read-only view used by the application."""

    def test_snapshot_values(self):
        state = IdentityState()
        assert state.snapshot() == IdentitySnapshot(False, False, None)

        state.begin("max@hogflix.com")
        assert state.snapshot() == IdentitySnapshot(False, True, None)

        state.complete("max@hogflix.com")
        assert state.snapshot() == IdentitySnapshot(True, False, "max@hogflix.com")

    def test_visitor_bound_to_log_context(self):
        state = IdentityState()
        state.begin("max@hogflix.com")
        state.complete("max@hogflix.com")

        assert get_distinct_id() == "max@hogflix.com"

        state.reset("logout")

        assert get_distinct_id() is None
