"""HTTP client for the Parley executor service."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 5.0


class ExecutorResponse(BaseModel):
    """Body of POST /execute, or a synthesized failure."""

    success: bool
    session_id: str
    claude_session_id: str | None = None
    result: str | None = None
    error: str | None = None
    context: dict[str, Any] | None = None


class ExecutorClient:
    """Talks to the executor service. Never raises for HTTP or network errors."""

    def __init__(
        self,
        base_url: str,
        auth_token: str | None,
        http: httpx.AsyncClient,
        timeout: float = 300,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._http = http
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self._auth_token:
            return {}
        return {"Authorization": f"Bearer {self._auth_token}"}

    async def execute(
        self,
        session_id: str,
        prompt: str,
        user_name: str,
        claude_session_id: str | None = None,
    ) -> ExecutorResponse:
        payload: dict[str, Any] = {
            "session_id": session_id,
            "prompt": prompt,
            "user_name": user_name,
        }
        if claude_session_id:
            payload["claude_session_id"] = claude_session_id

        try:
            response = await self._http.post(
                f"{self.base_url}/execute",
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except httpx.TimeoutException:
            return ExecutorResponse(
                success=False,
                session_id=session_id,
                error=f"Request timeout ({self._timeout:g} seconds)",
            )
        except httpx.HTTPError as e:
            logger.error("Executor request failed: %s", e)
            return ExecutorResponse(success=False, session_id=session_id, error=str(e) or "Unknown error")

        if not response.is_success:
            return ExecutorResponse(
                success=False,
                session_id=session_id,
                error=f"Executor error: {response.status_code} - {response.text}",
            )
        return ExecutorResponse.model_validate(response.json())

    async def reset_session(self, session_id: str) -> bool:
        try:
            response = await self._http.post(
                f"{self.base_url}/reset",
                json={"session_id": session_id},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning("Executor reset failed: %s", e)
            return False
        return response.is_success

    async def session_status(self, session_id: str) -> dict[str, Any] | None:
        """Session metadata from the executor, or None if unknown/unreachable."""
        try:
            response = await self._http.get(
                f"{self.base_url}/session/{session_id}",
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning("Executor session lookup failed: %s", e)
            return None
        if not response.is_success:
            return None
        return response.json()

    async def is_healthy(self) -> bool:
        try:
            response = await self._http.get(f"{self.base_url}/health", timeout=HEALTH_TIMEOUT)
        except httpx.HTTPError:
            return False
        return response.is_success
