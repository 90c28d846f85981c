"""Collaborator protocols consumed by the context orchestrator.

Production and test implementations both satisfy these structurally;
nothing here is tied to the claude CLI or the session store.
"""

from __future__ import annotations

from typing import Any, Protocol

from parley.context.schemas import ConversationTurn, ExecutionOutcome


class Executor(Protocol):
    """Single-shot execution backend.

    May block and may fail. Implementations report failures through
    ExecutionOutcome(succeeded=False) where they can; the orchestrator also
    tolerates raised exceptions.
    """

    async def invoke(
        self,
        text: str,
        continuation_handle: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionOutcome: ...


class Summarizer(Protocol):
    """Produces a short digest of a slice of conversation. Must not mutate turns."""

    async def summarize(
        self,
        turns: list[ConversationTurn],
        prior_summary: str | None = None,
    ) -> str: ...


class TranscriptAccessor(Protocol):
    """Loads the session's recorded turns on demand (only when compacting)."""

    async def __call__(self) -> list[ConversationTurn]: ...
