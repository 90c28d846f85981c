"""Session cleanup monitor -- periodically deletes expired executor sessions.

Expired sessions are also removed lazily on read (SessionStore.get), but
users rarely come back to an abandoned chat, so without this sweep their
rows and transcripts would stay around indefinitely.
"""

from __future__ import annotations

import asyncio
import logging

from parley.config import Settings
from parley.events import SESSIONS_EXPIRED, Event, EventBus
from parley.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionCleanupMonitor:
    """Runs store.cleanup() every cleanup_interval seconds.

    Emits sessions_expired with the removed count whenever a sweep
    deletes something.
    """

    def __init__(self, store: SessionStore, bus: EventBus, settings: Settings):
        self._store = store
        self._bus = bus
        self._settings = settings
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the periodic sweep."""
        self._task = asyncio.create_task(self._check_loop(), name="session-cleanup")
        logger.info(
            "Session cleanup monitor started (timeout=%ds, interval=%ds)",
            self._settings.session_timeout,
            self._settings.cleanup_interval,
        )

    async def stop(self) -> None:
        """Stop the monitor."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _check_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._settings.cleanup_interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Session cleanup sweep failed")

    async def sweep(self) -> int:
        cleaned = await self._store.cleanup()
        if cleaned > 0:
            logger.info("Cleaned up %d expired sessions", cleaned)
            await self._bus.emit(Event(type=SESSIONS_EXPIRED, data={"count": cleaned}))
        return cleaned
