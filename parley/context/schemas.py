"""Pydantic DTOs for context management.

These models are the data contract between the orchestrator, its
collaborators (executor, summarizer, session store) and the HTTP layer.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class BudgetState(StrEnum):
    BELOW_SOFT = "below_soft"
    AT_OR_ABOVE_SOFT = "at_or_above_soft"
    AT_OR_ABOVE_HARD = "at_or_above_hard"


class ConversationTurn(BaseModel):
    """A single recorded turn. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime | None = None


class ContextState(BaseModel):
    """Per-session token bookkeeping, persisted by the session store."""

    estimated_tokens: int = Field(default=0, ge=0)
    needs_compaction: bool = False
    summary: str | None = None
    last_compaction_at: datetime | None = None
    parts_in_flight: int = Field(default=0, ge=0)  # parts never attempted last turn
    compaction_count: int = Field(default=0, ge=0)
    parts_executed: int = Field(default=0, ge=0)


class SegmentationAnomaly(BaseModel):
    """A fenced region larger than the segment size, kept whole."""

    offset: int
    length: int
    max_size: int


class SegmentationResult(BaseModel):
    segments: list[str]
    anomalies: list[SegmentationAnomaly] = Field(default_factory=list)


class ExecutionOutcome(BaseModel):
    """Result of one executor invocation, or the aggregate of a turn."""

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    output: str = ""
    continuation_handle: str | None = None
    failure: str | None = None


class CompactionResult(BaseModel):
    """Digest of the compaction window plus the verbatim tail."""

    summary: str
    kept_tail: list[ConversationTurn]
    tokens_before: int
    tokens_after: int
    compacted_turns: int = 0
    discarded_turns: int = 0

    @property
    def compacted(self) -> bool:
        return self.compacted_turns > 0


class TurnResult(BaseModel):
    """What the orchestrator hands back to the caller after one turn."""

    outcome: ExecutionOutcome
    new_state: ContextState
    compaction: CompactionResult | None = None
    parts: int = 1
    parts_completed: int = 0
