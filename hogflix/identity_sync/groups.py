"""
Cohort (group) assignment with per group-type debouncing.

HOW IT WORKS:
    1. assign() slugifies the raw label into the group key
    2. The property set always carries name == group key (PostHog indexes
       groups by that field, so a caller supplied name is overridden)
    3. Any pending write for the same group type is cancelled and replaced
    4. After the debounce window the write is sent, a confirmation event is
       captured, and the assignment is persisted for reload survival

Writes for one group type are applied in the order they were scheduled:
a write waits for the previous in-flight write of its type to finish.
Different group types are independent.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable

from hogflix.logger import logger

from .config import DEBOUNCE_MS, PROVIDER_TIMEOUT_SECONDS
from .events import EventEmitter, utc_now_iso
from .provider import AnalyticsProvider, call_with_timeout
from .storage import GROUP_PREFIX, KeyValueStorage, MemoryStorage, remove_prefix

GROUP_CONFIRMED_EVENT = "group_assigned"


# =============================================================================
# STEP 1: LABEL NORMALIZATION
# =============================================================================

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]+")
_PRICE_CHARS = re.compile(r"[^\d.]")


def slugify(text: str | None) -> str:
    """
    Normalize a label into a canonical ASCII group key.

    Pure and idempotent: slugify(slugify(x)) == slugify(x).

    Example:
        slugify("Premium Plan & Extras!")  # "premium-plan-and-extras"
        slugify("Kid")                     # "kid"
    """
    if not text:
        return ""
    folded = unicodedata.normalize("NFKD", str(text))
    ascii_text = folded.encode("ascii", "ignore").decode("ascii").lower()
    ascii_text = ascii_text.replace("&", " and ")
    return _NON_ALPHANUMERIC.sub("-", ascii_text).strip("-")


def extract_price_value(price: str | float | int | None) -> float:
    """Numeric value of a price label such as "$9.99/month"; 0.0 if none."""
    if price is None or price == "":
        return 0.0
    if isinstance(price, (int, float)):
        return float(price)
    try:
        return float(_PRICE_CHARS.sub("", price))
    except ValueError:
        return 0.0


# =============================================================================
# STEP 2: ASSIGNMENTS
# =============================================================================

@dataclass(frozen=True)
class GroupAssignment:
    group_type: str
    group_key: str
    properties: dict[str, Any]

    @classmethod
    def build(
        cls,
        group_type: str,
        raw_label: str,
        extra_properties: dict[str, Any] | None = None,
    ) -> GroupAssignment:
        group_key = slugify(raw_label)
        properties = {"display_name": raw_label}
        properties.update(extra_properties or {})
        properties["name"] = group_key
        return cls(group_type=group_type, group_key=group_key, properties=properties)


@dataclass
class PendingWrite:
    group_type: str
    assignment: GroupAssignment
    scheduled_at: float
    task: asyncio.Task | None = field(default=None, repr=False)


# =============================================================================
# STEP 3: DEBOUNCED GROUP WRITER
# =============================================================================

class GroupCoalescer:
    """
    Debounced, last-write-wins group writer.

    USAGE:
        coalescer = GroupCoalescer(provider, emitter, storage)
        coalescer.assign("user_type", "Kid", {"is_kids_account": True})
        coalescer.assign("user_type", "Adult", {"is_kids_account": False})
        await coalescer.flush()  # exactly one write: user_type=adult

    Args:
        provider: Analytics provider receiving group writes
        emitter: Event emitter for confirmation events
        storage: Where last-known assignments are persisted
        debounce: Quiet period in seconds (default: 0.3)
        timeout: Timeout for the remote write in seconds (default: 10)
    """

    def __init__(
        self,
        provider: AnalyticsProvider,
        emitter: EventEmitter,
        storage: KeyValueStorage | None = None,
        debounce: float = DEBOUNCE_MS / 1000,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._provider = provider
        self._emitter = emitter
        self._storage = storage if storage is not None else MemoryStorage()
        self._debounce = debounce
        self._timeout = timeout
        self._clock = clock
        self._pending: dict[str, PendingWrite] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    def pending(self, group_type: str) -> PendingWrite | None:
        return self._pending.get(group_type)

    def assign(
        self,
        group_type: str,
        raw_label: str,
        extra_properties: dict[str, Any] | None = None,
    ) -> bool:
        """
        Schedule a group write, replacing any pending write of the same type.

        Must be called from within a running event loop.

        Args:
            group_type: Group type, e.g. "subscription"
            raw_label: Human label, slugified into the group key
            extra_properties: Extra group properties; "name" is overridden
                with the group key

        Returns:
            True if a write was scheduled, False when the call was a no-op
            (empty label, label without usable characters, no event loop)

        Example:
            coalescer.assign("subscription", "Premium", {"plan_id": "p-2"})
        """
        if not group_type or not raw_label:
            logger.debug("group_assign_skipped_empty", group_type=group_type)
            return False

        assignment = GroupAssignment.build(group_type, raw_label, extra_properties)
        if not assignment.group_key:
            logger.info(
                "group_assign_skipped_empty_key",
                group_type=group_type,
                raw_label=raw_label,
            )
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("group_assign_without_event_loop", group_type=group_type)
            return False

        previous = self._pending.pop(group_type, None)
        if previous is not None and previous.task is not None:
            previous.task.cancel()
            logger.debug(
                "group_write_superseded",
                group_type=group_type,
                superseded_key=previous.assignment.group_key,
                group_key=assignment.group_key,
            )

        pending = PendingWrite(
            group_type=group_type,
            assignment=assignment,
            scheduled_at=self._clock(),
        )
        pending.task = loop.create_task(self._fire(pending))
        self._pending[group_type] = pending
        return True

    async def _fire(self, pending: PendingWrite) -> None:
        await asyncio.sleep(self._debounce)

        group_type = pending.group_type
        # past the debounce window: no longer replaceable, now ordered
        if self._pending.get(group_type) is pending:
            del self._pending[group_type]

        previous = self._inflight.get(group_type)
        current = asyncio.current_task()
        self._inflight[group_type] = current
        try:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            await self._write(pending.assignment)
        finally:
            if self._inflight.get(group_type) is current:
                del self._inflight[group_type]

    async def _write(self, assignment: GroupAssignment) -> None:
        try:
            await call_with_timeout(
                self._provider.group(
                    assignment.group_type,
                    assignment.group_key,
                    assignment.properties,
                ),
                self._timeout,
                "group",
            )
        except Exception as e:
            # persisted value stays as-is so the next write reconciles for real
            logger.error(
                "group_write_failed",
                group_type=assignment.group_type,
                group_key=assignment.group_key,
                error=str(e),
            )
            return

        self._emitter.capture_with_group(
            GROUP_CONFIRMED_EVENT,
            assignment.group_type,
            assignment.group_key,
            {"display_name": assignment.properties.get("display_name")},
        )
        self._persist(assignment)
        logger.info(
            "group_write_sent",
            group_type=assignment.group_type,
            group_key=assignment.group_key,
        )

    def _persist(self, assignment: GroupAssignment) -> None:
        record = json.dumps(
            {"group_key": assignment.group_key, "assigned_at": utc_now_iso()}
        )
        try:
            self._storage.set(f"{GROUP_PREFIX}{assignment.group_type}", record)
        except Exception as e:
            logger.warning(
                "group_persist_failed",
                group_type=assignment.group_type,
                error=str(e),
            )

    def last_known(self, group_type: str) -> str | None:
        """
        The last successfully written group key for a type.

        Args:
            group_type: Group type, e.g. "user_type"

        Returns:
            The persisted group key, or None if nothing was written yet,
            storage is unreadable or the record is malformed
        """
        try:
            raw = self._storage.get(f"{GROUP_PREFIX}{group_type}")
        except Exception as e:
            logger.warning("group_read_failed", group_type=group_type, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)["group_key"]
        except (ValueError, TypeError, KeyError):
            return None

    def last_known_all(self) -> dict[str, str]:
        try:
            keys = self._storage.keys(GROUP_PREFIX)
        except Exception as e:
            logger.warning("group_read_failed", error=str(e))
            return {}

        known = {}
        for key in keys:
            group_type = key[len(GROUP_PREFIX):]
            group_key = self.last_known(group_type)
            if group_key:
                known[group_type] = group_key
        return known

    def forget_all(self) -> None:
        """Cancel pending and in-flight writes and clear persisted assignments."""
        for pending in self._pending.values():
            if pending.task is not None:
                pending.task.cancel()
        for task in self._inflight.values():
            task.cancel()
        cancelled = len(self._pending) + len(self._inflight)
        self._pending.clear()
        self._inflight.clear()

        try:
            removed = remove_prefix(self._storage, GROUP_PREFIX)
        except Exception as e:
            logger.warning("group_forget_failed", error=str(e))
            removed = 0

        logger.debug("groups_forgotten", cancelled=cancelled, removed=removed)

    async def flush(self) -> None:
        """
        Wait until every scheduled write has completed or been cancelled.

        Writes scheduled while flushing are waited for too. Failures are
        already logged by the write itself and are not raised here.

        Example:
            coalescer.assign("user_type", "Kid")
            await coalescer.flush()
        """
        while self._pending or self._inflight:
            tasks = [p.task for p in self._pending.values() if p.task is not None]
            tasks.extend(self._inflight.values())
            if not tasks:
                break
            await asyncio.gather(*tasks, return_exceptions=True)
