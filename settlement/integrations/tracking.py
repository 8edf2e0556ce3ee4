from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from settlement.integrations.canonical import to_canonical_obj

logger = logging.getLogger(__name__)


class EventTracker(Protocol):
    def track(self, event: str, user_id: str, properties: dict[str, Any]) -> None:
        ...


class LoggingEventTracker:
    """Default analytics sink: one structured log line per business event."""

    def track(self, event: str, user_id: str, properties: dict[str, Any]) -> None:
        body = json.dumps(to_canonical_obj(properties), sort_keys=True, separators=(",", ":"))
        logger.info("analytics event=%s user=%s properties=%s", event, user_id, body)


@dataclass
class RecordingEventTracker:
    events: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    def track(self, event: str, user_id: str, properties: dict[str, Any]) -> None:
        self.events.append((event, user_id, to_canonical_obj(properties)))

    def names(self) -> list[str]:
        return [event for event, _, _ in self.events]


def track_safely(tracker: EventTracker | None, event: str, user_id: str, properties: dict[str, Any]) -> None:
    # Analytics must never block or fail settlement.
    if tracker is None:
        return
    try:
        tracker.track(event, user_id, properties)
    except Exception as exc:
        logger.warning("analytics tracking failed for event=%s: %s", event, exc)
