"""Rate limiting for the chat bridge.

Synology Chat needs 0.5-1 second between messages. The same limiter also
keeps a one-minute request history per key for per-user limits.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Callable

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Per-key minimum spacing plus a sliding one-minute request count."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._last_request: dict[str, float] = {}
        self._history: dict[str, list[float]] = defaultdict(list)

    def can_proceed(self, key: str, min_interval: float = 0.5) -> bool:
        last = self._last_request.get(key)
        return last is None or self._clock() - last >= min_interval

    def record(self, key: str) -> None:
        now = self._clock()
        self._last_request[key] = now
        cutoff = now - WINDOW_SECONDS
        self._history[key] = [t for t in self._history[key] if t > cutoff]
        self._history[key].append(now)

    def recent_count(self, key: str) -> int:
        cutoff = self._clock() - WINDOW_SECONDS
        return sum(1 for t in self._history.get(key, []) if t > cutoff)

    def is_user_rate_limited(self, user_id: str, max_per_minute: int = 20) -> bool:
        return self.recent_count(user_id) >= max_per_minute

    async def throttle(self, key: str, min_interval: float = 0.5) -> None:
        """Wait until min_interval has passed since the last request, then record."""
        last = self._last_request.get(key)
        if last is not None:
            wait = min_interval - (self._clock() - last)
            if wait > 0:
                await asyncio.sleep(wait)
        self.record(key)
