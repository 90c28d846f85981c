"""REST API for the Parley executor service.

Endpoints:
  GET  /health           - Queue, session and telemetry stats
  POST /execute          - Run one prompt in a session
  POST /reset            - Delete a session and its transcript
  GET  /session/{id}     - Session metadata and context state
  POST /cleanup          - Delete expired sessions now

Every endpoint except /health requires `Authorization: Bearer <token>`
when auth_token is configured.
"""

from __future__ import annotations

import hmac
import logging
import time
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from parley.api.runner import TurnRunner
from parley.config import Settings
from parley.events import SESSION_RESET, Event, EventBus
from parley.handlers.telemetry import TelemetryRecorder
from parley.queue import RequestQueue
from parley.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


def check_bearer(header: str | None, expected: str | None) -> bool:
    """Constant-time bearer token check. No expected token disables auth."""
    if not expected:
        return True
    if not header or not header.startswith("Bearer "):
        return False
    token = header[len("Bearer "):]
    return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


def create_app(
    runner: TurnRunner,
    store: SessionStore,
    queue: RequestQueue,
    settings: Settings,
    bus: EventBus | None = None,
    telemetry: TelemetryRecorder | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""
    started_at = time.monotonic()

    if not settings.auth_token:
        logger.warning("No BRIDGE_AUTH_TOKEN set - auth disabled")

    def unauthorized(request: Request) -> JSONResponse | None:
        if check_bearer(request.headers.get("authorization"), settings.auth_token):
            return None
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    async def read_json(request: Request) -> dict[str, Any] | None:
        try:
            body = await request.json()
        except Exception:
            return None
        return body if isinstance(body, dict) else None

    async def health(request: Request) -> JSONResponse:
        """GET /health - Service status."""
        result: dict[str, Any] = {
            "status": "ok",
            "queue": {"active": queue.active, "pending": queue.pending},
            "sessions": await store.count(),
            "uptime": round(time.monotonic() - started_at, 1),
        }
        if telemetry is not None:
            result["telemetry"] = telemetry.snapshot()
        return JSONResponse(result)

    async def execute(request: Request) -> JSONResponse:
        """POST /execute - Run a prompt through the context pipeline."""
        if (denied := unauthorized(request)) is not None:
            return denied

        body = await read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        session_id = body.get("session_id")
        prompt = body.get("prompt")
        if not session_id or not prompt:
            return JSONResponse(
                {"error": "Missing required fields: session_id, prompt"}, status_code=400
            )
        user_name = body.get("user_name")
        logger.info("Execute request: session=%s, user=%s", session_id, user_name)

        try:
            result = await queue.add(
                lambda: runner.run_turn(
                    session_id,
                    prompt,
                    user_name=user_name,
                    continuation_handle=body.get("claude_session_id"),
                )
            )
        except Exception as e:
            logger.exception("Execute error: session=%s", session_id)
            return JSONResponse(
                {"success": False, "session_id": session_id, "error": str(e)},
                status_code=500,
            )

        return JSONResponse({
            "success": result.success,
            "session_id": session_id,
            "claude_session_id": result.continuation_handle,
            "result": result.output,
            "error": result.error,
            "context": result.context_state.model_dump(mode="json"),
        })

    async def reset(request: Request) -> JSONResponse:
        """POST /reset - Forget a session."""
        if (denied := unauthorized(request)) is not None:
            return denied

        body = await read_json(request)
        session_id = body.get("session_id") if body else None
        if not session_id:
            return JSONResponse({"error": "Missing session_id"}, status_code=400)

        async with store.lock(session_id):
            await store.delete(session_id)
        logger.info("Session reset: %s", session_id)
        if bus is not None:
            await bus.emit(Event(type=SESSION_RESET, session_id=session_id))
        return JSONResponse({"success": True, "message": "Session reset"})

    async def get_session(request: Request) -> JSONResponse:
        """GET /session/{id} - Session status."""
        if (denied := unauthorized(request)) is not None:
            return denied

        record = await store.get(request.path_params["id"])
        if record is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse(record.model_dump(mode="json"))

    async def cleanup(request: Request) -> JSONResponse:
        """POST /cleanup - Sweep expired sessions."""
        if (denied := unauthorized(request)) is not None:
            return denied

        cleaned = await store.cleanup()
        return JSONResponse({"success": True, "cleaned": cleaned})

    routes = [
        Route("/health", health),
        Route("/execute", execute, methods=["POST"]),
        Route("/reset", reset, methods=["POST"]),
        Route("/session/{id}", get_session),
        Route("/cleanup", cleanup, methods=["POST"]),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
