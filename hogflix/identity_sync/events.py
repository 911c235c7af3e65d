"""
Fire-and-forget analytics events.

Every other component reports telemetry through EventEmitter. A failed
capture is logged and dropped; it never reaches the caller.

USAGE:
    emitter = EventEmitter(provider)
    emitter.track_event("video_played", {"title": "Hedgehog Heist"})
    emitter.capture_with_group("plan_viewed", "subscription", "premium")
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from hogflix.logger import logger

from .provider import AnalyticsProvider


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventEmitter:
    def __init__(self, provider: AnalyticsProvider) -> None:
        self._provider = provider

    def track_event(self, name: str, properties: dict[str, Any] | None = None) -> bool:
        """
        Capture an event. Returns True if the provider accepted it.

        Args:
            name: Event name
            properties: Optional event properties
        """
        if not name:
            logger.warning("event_name_missing")
            return False

        try:
            self._provider.capture(name, dict(properties or {}))
        except Exception as e:
            logger.error("event_capture_failed", event_name=name, error=str(e))
            return False

        logger.debug("event_captured", event_name=name)
        return True

    def capture_with_group(
        self,
        name: str,
        group_type: str,
        group_key: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """
        Capture an event attributed to a group through `$groups`.

        Missing arguments make the call a logged no-op.
        """
        if not name or not group_type or not group_key:
            logger.warning(
                "group_event_missing_parameters",
                event_name=name,
                group_type=group_type,
                group_key=group_key,
            )
            return False

        event_properties = dict(properties or {})
        event_properties["$groups"] = {group_type: group_key}
        return self.track_event(name, event_properties)

    def capture_test_event(
        self,
        name: str,
        test_name: str,
        variant: str | None,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """Capture an experiment event; a missing variant counts as control."""
        event_properties = dict(properties or {})
        event_properties.update(
            {
                "ab_test": test_name,
                "variant": variant or "control",
                "timestamp": utc_now_iso(),
            }
        )
        return self.track_event(name, event_properties)
