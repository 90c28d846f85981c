"""Telemetry recorder -- in-memory counters fed by the event bus."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from parley.events import (
    COMPACTION_COMPLETED,
    HARD_LIMIT_REACHED,
    TURN_COMPLETED,
    Event,
    EventBus,
)

logger = logging.getLogger(__name__)


class TelemetryRecorder:
    """Counts every event type and a few turn-level totals for /health."""

    def __init__(self, bus: EventBus) -> None:
        self._counts: Counter[str] = Counter()
        self._tokens_reclaimed = 0
        self._parts_executed = 0
        self._failed_turns = 0
        bus.on_any(self.handle)

    async def handle(self, event: Event) -> None:
        self._counts[event.type] += 1

        if event.type == TURN_COMPLETED:
            self._parts_executed += event.data.get("parts_completed", 0)
            if not event.data.get("succeeded", True):
                self._failed_turns += 1
        elif event.type == COMPACTION_COMPLETED:
            reclaimed = event.data.get("tokens_before", 0) - event.data.get("tokens_after", 0)
            self._tokens_reclaimed += max(reclaimed, 0)
        elif event.type == HARD_LIMIT_REACHED:
            logger.info(
                "Session %s reached hard context limit (%s tokens)",
                event.session_id, event.data.get("estimated_tokens"),
            )

    def count(self, event_type: str) -> int:
        return self._counts[event_type]

    def snapshot(self) -> dict[str, Any]:
        return {
            "events": dict(self._counts),
            "turns_failed": self._failed_turns,
            "parts_executed": self._parts_executed,
            "tokens_reclaimed": self._tokens_reclaimed,
        }
