"""
Tests for hogflix.identity_sync.groups.

Run with:
    pytest tests/test_groups.py -v
"""

import asyncio
import json
from unittest.mock import patch

import pytest

from hogflix.identity_sync.errors import ProviderError
from hogflix.identity_sync.events import EventEmitter
from hogflix.identity_sync.groups import (
    GROUP_CONFIRMED_EVENT,
    GroupAssignment,
    GroupCoalescer,
    extract_price_value,
    slugify,
)
from hogflix.identity_sync.storage import GROUP_PREFIX, MemoryStorage

DEBOUNCE = 0.05


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def coalescer(provider, storage):
    return GroupCoalescer(
        provider,
        EventEmitter(provider),
        storage,
        debounce=DEBOUNCE,
        timeout=1.0,
    )


# =============================================================================
# TESTS: SLUGIFY
# =============================================================================


class TestSlugify:
    """Label normalization into group keys."""

    @pytest.mark.parametrize(
        "label, expected",
        [
            ("Kid", "kid"),
            ("Adult", "adult"),
            ("Premium Plan & Extras!", "premium-plan-and-extras"),
            ("  Basic   Plan  ", "basic-plan"),
            ("Crème Brûlée", "creme-brulee"),
            ("Standard-HD", "standard-hd"),
        ],
    )
    def test_known_labels(self, label, expected):
        assert slugify(label) == expected

    @pytest.mark.parametrize(
        "label", ["Premium Plan & Extras!", "Crème Brûlée", "--a--b--", "x"]
    )
    def test_idempotent(self, label):
        assert slugify(slugify(label)) == slugify(label)

    @pytest.mark.parametrize("label", ["", None, "!!!", "   ", "日本語"])
    def test_labels_without_ascii_content_are_empty(self, label):
        assert slugify(label) == ""

    def test_result_alphabet(self):
        slug = slugify("Ünïcödé -- Plan #42 & More")

        assert slug == "unicode-plan-42-and-more"
        assert not slug.startswith("-")
        assert not slug.endswith("-")


class TestExtractPriceValue:
    """Price labels to numbers."""

    @pytest.mark.parametrize(
        "price, expected",
        [
            ("$9.99/month", 9.99),
            ("15", 15.0),
            (12.5, 12.5),
            (None, 0.0),
            ("", 0.0),
            ("free", 0.0),
        ],
    )
    def test_values(self, price, expected):
        assert extract_price_value(price) == expected


class TestGroupAssignment:
    """Property set construction."""

    def test_name_always_equals_group_key(self):
        assignment = GroupAssignment.build(
            "subscription", "Premium Plan", {"name": "Something Else", "price": 9.99}
        )

        assert assignment.group_key == "premium-plan"
        assert assignment.properties["name"] == "premium-plan"
        assert assignment.properties["display_name"] == "Premium Plan"
        assert assignment.properties["price"] == 9.99


# =============================================================================
# TESTS: DEBOUNCING
# =============================================================================


class TestDebounce:
    """Rapid assignments collapse into the last one."""

    @pytest.mark.asyncio
    async def test_single_assign_writes_once(self, coalescer, provider):
        assert coalescer.assign("user_type", "Adult") is True

        await coalescer.flush()

        assert provider.group_calls == [
            ("user_type", "adult", {"display_name": "Adult", "name": "adult"})
        ]

    @pytest.mark.asyncio
    async def test_write_waits_for_debounce_window(self, coalescer, provider):
        coalescer.assign("user_type", "Adult")

        await asyncio.sleep(DEBOUNCE / 5)

        assert provider.group_calls == []
        assert coalescer.pending("user_type") is not None

        await coalescer.flush()

        assert len(provider.group_calls) == 1
        assert coalescer.pending("user_type") is None

    @pytest.mark.asyncio
    async def test_rapid_assigns_write_last_payload_once(self, coalescer, provider):
        for plan in ("Basic", "Standard", "Premium", "Standard", "Premium Plus"):
            coalescer.assign("subscription", plan, {"plan": plan})

        await coalescer.flush()

        assert len(provider.group_calls) == 1
        group_type, group_key, properties = provider.group_calls[0]
        assert group_type == "subscription"
        assert group_key == "premium-plus"
        assert properties["plan"] == "Premium Plus"

    @pytest.mark.asyncio
    async def test_kids_toggle_round_trip_writes_adult_once(self, coalescer, provider):
        """Kids account false -> true -> false inside the window: one adult write."""
        coalescer.assign("user_type", "Adult", {"is_kids_account": False})
        coalescer.assign("user_type", "Kid", {"is_kids_account": True})
        coalescer.assign("user_type", "Adult", {"is_kids_account": False})

        await coalescer.flush()

        assert provider.group_calls == [
            (
                "user_type",
                "adult",
                {"display_name": "Adult", "is_kids_account": False, "name": "adult"},
            )
        ]

    @pytest.mark.asyncio
    async def test_group_types_are_independent(self, coalescer, provider):
        coalescer.assign("user_type", "Kid")
        coalescer.assign("subscription", "Premium")

        await coalescer.flush()

        written = sorted((t, k) for t, k, _ in provider.group_calls)
        assert written == [("subscription", "premium"), ("user_type", "kid")]

    @pytest.mark.asyncio
    async def test_writes_for_one_type_apply_in_order(self, coalescer, provider):
        provider.group_delay = DEBOUNCE * 2

        coalescer.assign("subscription", "Basic")
        await asyncio.sleep(DEBOUNCE * 1.5)
        coalescer.assign("subscription", "Premium")

        await coalescer.flush()

        assert [k for _, k, _ in provider.group_calls] == ["basic", "premium"]
        assert coalescer.last_known("subscription") == "premium"


# =============================================================================
# TESTS: NO-OPS AND FAILURES
# =============================================================================


class TestNoOps:
    """Empty input never reaches the provider."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("label", ["", None, "!!!"])
    async def test_empty_labels_are_ignored(self, coalescer, provider, label):
        assert coalescer.assign("user_type", label) is False

        await coalescer.flush()

        assert provider.group_calls == []

    @pytest.mark.asyncio
    async def test_empty_group_type_is_ignored(self, coalescer, provider):
        assert coalescer.assign("", "Kid") is False

    def test_assign_without_event_loop_is_refused(self, coalescer, provider):
        with patch("hogflix.identity_sync.groups.logger") as mock_logger:
            assert coalescer.assign("user_type", "Kid") is False

        mock_logger.error.assert_called_once()
        assert coalescer.pending("user_type") is None


class TestWriteOutcome:
    """Success confirms and persists; failure does neither."""

    @pytest.mark.asyncio
    async def test_success_captures_confirmation_event(self, coalescer, provider):
        coalescer.assign("subscription", "Premium")

        await coalescer.flush()

        confirmations = provider.events_named(GROUP_CONFIRMED_EVENT)
        assert len(confirmations) == 1
        assert confirmations[0]["$groups"] == {"subscription": "premium"}

    @pytest.mark.asyncio
    async def test_success_persists_assignment(self, coalescer, provider, storage):
        coalescer.assign("subscription", "Premium")

        await coalescer.flush()

        record = json.loads(storage.get(f"{GROUP_PREFIX}subscription"))
        assert record["group_key"] == "premium"
        assert "assigned_at" in record

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_not_persisted(self, coalescer, provider):
        provider.group_error = ProviderError("group endpoint down")

        with patch("hogflix.identity_sync.groups.logger") as mock_logger:
            coalescer.assign("subscription", "Premium")
            await coalescer.flush()

        assert coalescer.last_known("subscription") is None
        assert provider.events_named(GROUP_CONFIRMED_EVENT) == []
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "group_write_failed"

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, provider, storage):
        provider.group_delay = 1.0
        coalescer = GroupCoalescer(
            provider, EventEmitter(provider), storage, debounce=0.01, timeout=0.05
        )

        coalescer.assign("subscription", "Premium")
        await coalescer.flush()

        assert coalescer.last_known("subscription") is None

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_value(self, coalescer, provider):
        coalescer.assign("subscription", "Basic")
        await coalescer.flush()

        provider.group_error = ProviderError("group endpoint down")
        coalescer.assign("subscription", "Premium")
        await coalescer.flush()

        assert coalescer.last_known("subscription") == "basic"


# =============================================================================
# TESTS: FORGETTING
# =============================================================================


class TestForgetAll:
    """Identity reset clears cohorts."""

    @pytest.mark.asyncio
    async def test_forget_cancels_pending_writes(self, coalescer, provider):
        coalescer.assign("user_type", "Kid")

        coalescer.forget_all()
        await asyncio.sleep(DEBOUNCE * 2)

        assert provider.group_calls == []
        assert coalescer.pending("user_type") is None

    @pytest.mark.asyncio
    async def test_forget_clears_persisted_assignments(self, coalescer, storage):
        coalescer.assign("user_type", "Kid")
        coalescer.assign("subscription", "Premium")
        await coalescer.flush()
        storage.set("unrelated", "1")

        coalescer.forget_all()

        assert coalescer.last_known_all() == {}
        assert storage.get("unrelated") == "1"

    @pytest.mark.asyncio
    async def test_last_known_all(self, coalescer):
        coalescer.assign("user_type", "Kid")
        coalescer.assign("subscription", "Premium")
        await coalescer.flush()

        assert coalescer.last_known_all() == {
            "user_type": "kid",
            "subscription": "premium",
        }

    def test_last_known_ignores_malformed_records(self, coalescer, storage):
        storage.set(f"{GROUP_PREFIX}user_type", "not json")

        assert coalescer.last_known("user_type") is None
