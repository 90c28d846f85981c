"""Request queue -- caps how many turns run against the CLI at once."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CONCURRENT = 2


class RequestQueue:
    """FIFO admission to at most max_concurrent concurrent jobs.

    Jobs past the cap wait their turn; waiters are admitted in arrival order
    (asyncio.Semaphore wakes waiters FIFO). Errors raised by a job propagate
    to the caller of add() and free the slot.
    """

    def __init__(self, max_concurrent: int = MAX_CONCURRENT) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active = 0
        self._pending = 0

    async def add(self, job: Callable[[], Awaitable[T]]) -> T:
        self._pending += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._pending -= 1

        self._active += 1
        try:
            return await job()
        finally:
            self._active -= 1
            self._semaphore.release()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return self._pending

    def __len__(self) -> int:
        return self._active + self._pending
