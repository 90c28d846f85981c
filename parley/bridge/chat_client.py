"""Synology Chat client -- sends messages through an incoming webhook."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque

import httpx

from parley.bridge.formatter import chunk_message
from parley.bridge.rate_limiter import RateLimiter
from parley.config import Settings

logger = logging.getLogger(__name__)

OUTGOING_KEY = "synology_outgoing"


class SynologyChatClient:
    """Queues outgoing chunks and posts them one at a time.

    Posts are spaced by chat_send_interval. API errors (non-2xx) are logged
    and the chunk is dropped; network errors are retried after
    chat_retry_delay, at most chat_max_retries attempts per chunk.
    """

    def __init__(
        self,
        webhook_url: str,
        rate_limiter: RateLimiter,
        settings: Settings,
        http: httpx.AsyncClient,
    ) -> None:
        self.webhook_url = webhook_url
        self._rate_limiter = rate_limiter
        self._settings = settings
        self._http = http
        self._queue: deque[str] = deque()
        self._processing = False

    async def send_message(self, text: str) -> None:
        """Chunk text and send every chunk in order."""
        self._queue.extend(chunk_message(text, self._settings.chat_max_message_length))
        if not self._processing:
            await self._process_queue()

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def _process_queue(self) -> None:
        self._processing = True
        try:
            while self._queue:
                message = self._queue.popleft()
                await self._deliver(message)
        finally:
            self._processing = False

    async def _deliver(self, message: str) -> bool:
        for attempt in range(1, self._settings.chat_max_retries + 1):
            await self._rate_limiter.throttle(OUTGOING_KEY, self._settings.chat_send_interval)
            try:
                response = await self._http.post(
                    self.webhook_url,
                    data={"payload": json.dumps({"text": message})},
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Failed to send message (attempt %d/%d): %s",
                    attempt, self._settings.chat_max_retries, e,
                )
                if attempt < self._settings.chat_max_retries:
                    await asyncio.sleep(self._settings.chat_retry_delay)
                continue

            if response.is_success:
                return True
            # API errors are not retried
            logger.error("Synology API error: %s - %s", response.status_code, response.text)
            return False

        logger.error("Giving up on message after %d attempts", self._settings.chat_max_retries)
        return False
