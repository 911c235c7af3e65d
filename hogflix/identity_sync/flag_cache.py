"""
TTL-bound local cache of resolved feature flag values.

Each entry is stored as JSON under `hogflix_sync:flag:<name>`:

    {"value": true, "cached_at": 1760000000.0, "ttl": 300.0}

The TTL check lives here and nowhere else. An entry older than its TTL
reads as absent. Storage failures are logged once and turn the cache into
a permanent miss; they are never fatal.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Callable

from hogflix.logger import logger

from .config import CACHE_TTL_SECONDS
from .storage import FLAG_PREFIX, KeyValueStorage, MemoryStorage, remove_prefix


@dataclass(frozen=True)
class FlagCacheEntry:
    flag_name: str
    value: bool
    cached_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.cached_at > self.ttl

    def to_json(self) -> str:
        return json.dumps(
            {"value": self.value, "cached_at": self.cached_at, "ttl": self.ttl}
        )

    @classmethod
    def from_json(cls, flag_name: str, raw: str) -> FlagCacheEntry | None:
        """Parse a stored entry; malformed payloads return None."""
        try:
            data = json.loads(raw)
            value = data["value"]
            if not isinstance(value, bool):
                return None
            return cls(
                flag_name=flag_name,
                value=value,
                cached_at=float(data["cached_at"]),
                ttl=float(data["ttl"]),
            )
        except (ValueError, TypeError, KeyError):
            return None


class FlagCache:
    """
    Flag name -> boolean cache with expiry.

    Only FeatureFlagResolver writes to it. Reads are safe from anywhere.

    Args:
        storage: Backing key/value storage (default: in-memory)
        ttl: Entry lifetime in seconds (default: 300)
        clock: Epoch-seconds time source, injectable for tests
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        self._ttl = ttl
        self._clock = clock
        self._disabled = False

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def disabled(self) -> bool:
        """True once a storage failure turned the cache into a permanent miss."""
        return self._disabled

    def get(self, flag_name: str) -> bool | None:
        """Return the cached value, or None when absent, malformed or expired."""
        if self._disabled:
            return None

        try:
            raw = self._storage.get(self._key(flag_name))
        except Exception as e:
            self._disable("get", e)
            return None

        if raw is None:
            return None

        entry = FlagCacheEntry.from_json(flag_name, raw)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.value

    def set(self, flag_name: str, value: bool) -> None:
        """Best-effort write; storage errors are swallowed."""
        if self._disabled:
            return

        entry = FlagCacheEntry(
            flag_name=flag_name,
            value=bool(value),
            cached_at=self._clock(),
            ttl=self._ttl,
        )
        try:
            self._storage.set(self._key(flag_name), entry.to_json())
        except Exception as e:
            self._disable("set", e)

    def invalidate_all(self) -> None:
        """Remove every cached flag."""
        if self._disabled:
            return

        try:
            removed = remove_prefix(self._storage, FLAG_PREFIX)
        except Exception as e:
            self._disable("invalidate_all", e)
            return

        logger.debug("flag_cache_invalidated", removed=removed)

    @staticmethod
    def _key(flag_name: str) -> str:
        return f"{FLAG_PREFIX}{flag_name}"

    def _disable(self, operation: str, error: Exception) -> None:
        # logged once: afterwards the cache short-circuits every call
        self._disabled = True
        logger.warning(
            "flag_cache_storage_unavailable",
            operation=operation,
            error=str(error),
        )
