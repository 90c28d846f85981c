"""Shared fixtures: settings, fake executor/summarizer, SQLite-backed store."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from parley.config import Settings
from parley.context.schemas import ConversationTurn, ExecutionOutcome, Role
from parley.storage.database import Database
from parley.storage.session_store import SessionStore

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeExecutor:
    """Scripted Executor. Records every call as (text, handle, metadata).

    Scripted items are returned (or raised, for exceptions) in order; once
    the script runs out each call succeeds with output "out-<n>" and
    continuation handle "h-<n>".
    """

    def __init__(self, script: list[Any] | None = None) -> None:
        self.calls: list[tuple[str, str | None, dict[str, Any]]] = []
        self._script = list(script or [])

    async def invoke(
        self,
        text: str,
        continuation_handle: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionOutcome:
        self.calls.append((text, continuation_handle, dict(metadata or {})))
        if self._script:
            item = self._script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        n = len(self.calls)
        return ExecutionOutcome(succeeded=True, output=f"out-{n}", continuation_handle=f"h-{n}")


class FixedSummarizer:
    """Returns a fixed digest, or raises the configured error."""

    def __init__(self, summary: str = "SUMMARY", error: Exception | None = None) -> None:
        self.summary = summary
        self.error = error
        self.calls: list[tuple[list[ConversationTurn], str | None]] = []

    async def summarize(
        self,
        turns: list[ConversationTurn],
        prior_summary: str | None = None,
    ) -> str:
        self.calls.append((list(turns), prior_summary))
        if self.error is not None:
            raise self.error
        return self.summary


def make_turns(n: int) -> list[ConversationTurn]:
    """n alternating user/assistant turns with content 'turn 1' .. 'turn n'."""
    return [
        ConversationTurn(role=Role.USER if i % 2 else Role.ASSISTANT, content=f"turn {i}")
        for i in range(1, n + 1)
    ]


def make_settings(**overrides: Any) -> Settings:
    defaults: dict[str, Any] = {"auth_token": "", "executor_auth_token": ""}
    defaults.update(overrides)
    return Settings(**defaults)


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    return make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'parley.sqlite'}")


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.connect()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def store(database, settings) -> SessionStore:
    return SessionStore(database, settings)
