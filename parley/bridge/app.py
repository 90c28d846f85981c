"""Synology Chat bridge -- webhook receiver in front of the executor service.

Receives outgoing-webhook posts from Synology Chat, forwards the message to
the executor service and relays the reply through the incoming webhook.

Endpoints:
  POST /webhook   - Synology Chat outgoing webhook
  GET  /health    - Bridge status + executor reachability

Usage:
    SYNOLOGY_WEBHOOK_URL=... EXECUTOR_AUTH_TOKEN=... python -m parley.bridge.app
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from parley.bridge.chat_client import SynologyChatClient
from parley.bridge.executor_client import ExecutorClient
from parley.bridge.rate_limiter import RateLimiter
from parley.config import Settings

logger = logging.getLogger(__name__)

GLOBAL_KEY = "global"

GREETING = "Hi! Send me a message after @claude to get started."
SLOW_DOWN = "Please slow down - too many requests."
THINKING = "Thinking..."
HELP_TEXT = """Claude Code Commands:
@claude <message> - Chat with Claude
@claude reset - Start a new session
@claude status - Show session info
@claude help - Show this help"""


async def parse_webhook(request: Request) -> dict[str, Any]:
    """Decode form-urlencoded (payload=<json> or plain fields) or JSON bodies.

    Raises ValueError for bodies that are neither.
    """
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        raw = form.get("payload")
        if isinstance(raw, str):
            payload = json.loads(raw)
        else:
            payload = {k: v for k, v in form.items() if isinstance(v, str)}
    else:
        payload = await request.json()
    if not isinstance(payload, dict):
        raise ValueError("webhook payload must be an object")
    return payload


def strip_mention(text: str, pattern: str) -> str:
    return re.sub(pattern, "", text, flags=re.IGNORECASE).strip()


def format_status(status: dict[str, Any] | None) -> str:
    if not status:
        return "No active session."
    last_activity = datetime.fromisoformat(status["last_activity"])
    if last_activity.tzinfo is None:
        last_activity = last_activity.replace(tzinfo=UTC)
    minutes = round((datetime.now(UTC) - last_activity).total_seconds() / 60)
    context = status.get("context_state") or {}
    return (
        f"Session: {status.get('message_count', 0)} messages, "
        f"last active {minutes} minutes ago, "
        f"~{context.get('estimated_tokens', 0)} context tokens"
    )


class WebhookHandler:
    """Turns one webhook message into chat replies."""

    def __init__(self, chat: SynologyChatClient, executor: ExecutorClient) -> None:
        self._chat = chat
        self._executor = executor

    async def handle(self, session_id: str, user_name: str, command: str) -> None:
        lowered = command.lower()
        if lowered == "reset":
            await self._executor.reset_session(session_id)
            await self._chat.send_message("Session reset. Starting fresh!")
            return
        if lowered == "status":
            status = await self._executor.session_status(session_id)
            await self._chat.send_message(format_status(status))
            return
        if lowered == "help":
            await self._chat.send_message(HELP_TEXT)
            return

        await self._chat.send_message(THINKING)
        result = await self._executor.execute(session_id, command, user_name)
        if result.result:
            await self._chat.send_message(result.result)
            if not result.success and result.error:
                logger.warning("Partial result for %s: %s", session_id, result.error)
        else:
            await self._chat.send_message(f"Error: {result.error or 'Something went wrong'}")


def create_bridge_app(
    settings: Settings,
    chat: SynologyChatClient,
    executor: ExecutorClient,
    rate_limiter: RateLimiter,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the bridge Starlette app."""
    started_at = time.monotonic()
    handler = WebhookHandler(chat, executor)

    async def health(request: Request) -> JSONResponse:
        """GET /health - Bridge status."""
        healthy = await executor.is_healthy()
        return JSONResponse({
            "status": "ok" if healthy else "degraded",
            "executor_reachable": healthy,
            "uptime": round(time.monotonic() - started_at, 1),
        })

    async def webhook(request: Request) -> JSONResponse:
        """POST /webhook - Synology Chat outgoing webhook."""
        try:
            payload = await parse_webhook(request)
        except Exception as e:
            logger.error("Failed to parse webhook payload: %s", e)
            return JSONResponse({"error": "Invalid payload"}, status_code=400)

        if settings.synology_webhook_token and payload.get("token") != settings.synology_webhook_token:
            logger.warning("Invalid webhook token received")
            return JSONResponse({"error": "Invalid token"}, status_code=401)

        user_id = str(payload.get("user_id", ""))
        channel_id = str(payload.get("channel_id", ""))
        user_name = payload.get("user_name") or "Unknown"
        text = str(payload.get("text") or "").strip()
        logger.info("Webhook received: user=%s, channel=%s", user_name, channel_id)

        command = strip_mention(text, settings.mention_pattern)
        if not command:
            return JSONResponse(
                {"success": True}, background=BackgroundTask(chat.send_message, GREETING)
            )

        if not rate_limiter.can_proceed(GLOBAL_KEY, settings.global_min_interval):
            logger.info("Global rate limit hit")
            return JSONResponse({"success": True})

        if rate_limiter.is_user_rate_limited(user_id, settings.user_max_per_minute):
            return JSONResponse(
                {"success": True}, background=BackgroundTask(chat.send_message, SLOW_DOWN)
            )

        rate_limiter.record(GLOBAL_KEY)
        rate_limiter.record(user_id)

        session_id = f"{channel_id}_{user_id}"
        return JSONResponse(
            {"success": True},
            background=BackgroundTask(handler.handle, session_id, user_name, command),
        )

    routes = [
        Route("/health", health),
        Route("/webhook", webhook, methods=["POST"]),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)


def build_bridge_app(settings: Settings) -> Starlette:
    """Wire clients to the bridge app; the shared httpx client closes on shutdown."""
    http = httpx.AsyncClient(timeout=httpx.Timeout(connect=10, read=60, write=10, pool=10))
    rate_limiter = RateLimiter()
    chat = SynologyChatClient(settings.synology_webhook_url or "", rate_limiter, settings, http)
    executor = ExecutorClient(
        settings.executor_url,
        settings.executor_auth_token,
        http,
        timeout=settings.executor_client_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info("Synology Chat bridge listening on port %d", settings.bridge_port)
        yield
        await http.aclose()

    return create_bridge_app(settings, chat, executor, rate_limiter, lifespan=lifespan)


def main() -> None:
    """Entry point."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not settings.synology_webhook_url:
        logger.error("SYNOLOGY_WEBHOOK_URL is required")
        sys.exit(1)
    if not settings.executor_auth_token:
        logger.error("EXECUTOR_AUTH_TOKEN is required")
        sys.exit(1)

    app = build_bridge_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.bridge_port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
