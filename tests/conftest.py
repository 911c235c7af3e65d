"""
Shared fakes for the identity sync tests.

FakeProvider records every call and can be told to fail, hang, or delay
specific operations, so tests never need a network or the real SDK.
"""

import asyncio

import pytest

from hogflix.identity_sync.errors import ProviderError


class FakeProvider:
    """In-memory AnalyticsProvider with call recording and failure knobs."""

    def __init__(self):
        self.identify_calls = []
        self.group_calls = []
        self.captured = []
        self.person_properties = []
        self.reset_calls = 0
        self.reload_calls = 0

        self.flags = {}
        self.distinct_id = None
        self.loaded = False

        # failure knobs
        self.identify_error = None
        self.identify_delay = 0.0
        self.group_error = None
        self.group_delay = 0.0
        self.failing_reloads = 0
        self.hanging_reloads = 0
        self.capture_error = None

    async def identify(self, distinct_id, properties):
        self.identify_calls.append((distinct_id, properties))
        if self.identify_delay:
            await asyncio.sleep(self.identify_delay)
        if self.identify_error is not None:
            raise self.identify_error
        self.distinct_id = distinct_id
        self.loaded = False

    def reset(self):
        self.reset_calls += 1
        self.distinct_id = None
        self.loaded = False

    async def group(self, group_type, group_key, properties):
        self.group_calls.append((group_type, group_key, dict(properties)))
        if self.group_delay:
            await asyncio.sleep(self.group_delay)
        if self.group_error is not None:
            raise self.group_error

    def capture(self, event, properties=None):
        if self.capture_error is not None:
            raise self.capture_error
        self.captured.append((event, properties))

    def set_person_properties(self, properties):
        self.person_properties.append(dict(properties))

    def is_feature_enabled(self, flag_name):
        if not self.loaded:
            return None
        return bool(self.flags.get(flag_name, False))

    async def reload_flags(self):
        self.reload_calls += 1
        if self.hanging_reloads > 0:
            self.hanging_reloads -= 1
            await asyncio.sleep(3600)
        if self.failing_reloads > 0:
            self.failing_reloads -= 1
            raise ProviderError("flag service unavailable")
        self.loaded = True

    def events_named(self, name):
        return [props for event, props in self.captured if event == name]


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start=1_760_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FakeClock()
