"""History compaction -- rolling digest plus verbatim recent tail.

Window layout for a transcript of N turns (oldest first):

    [ discarded ... | compaction window (<= max_compact_span) | tail (tail_size) ]

The tail is always kept verbatim. The compaction window is folded into a
short digest by a Summarizer. Anything older than the window is dropped
for good, which keeps memory bounded no matter how long a session runs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from parley.config import Settings
from parley.context.errors import CompactionFailure, ConfigurationError
from parley.context.protocols import Executor, Summarizer
from parley.context.schemas import CompactionResult, ConversationTurn, Role
from parley.context.tokens import TokenEstimator

logger = logging.getLogger(__name__)

TAIL_SIZE = 5
MAX_COMPACT_SPAN = 20

# ------------------------------------------------------------------
# Summarization prompts (co-located with compaction logic)
# ------------------------------------------------------------------

SUMMARY_PROMPT = """\
Summarize this conversation history concisely, preserving key context, \
decisions, and any code/technical details mentioned. Keep it under 500 words.

{transcript}"""

UPDATE_SUMMARY_PROMPT = """\
Update the existing conversation summary with the newer messages below. \
Preserve earlier context unless it is explicitly superseded, keep exact file \
paths, function names and error messages, and keep it under 500 words. \
Output ONLY the updated summary.

## Existing Summary

{prior_summary}

## Newer Messages

{transcript}"""


def format_transcript(turns: list[ConversationTurn]) -> str:
    """Render turns as readable text for summarization."""
    lines = []
    for turn in turns:
        speaker = "User" if turn.role == Role.USER else "Assistant"
        lines.append(f"{speaker}: {turn.content}")
    return "\n\n".join(lines)


# ------------------------------------------------------------------
# History Compactor
# ------------------------------------------------------------------


class HistoryCompactor:
    """Reduces a transcript to summary + tail via one summarizer call.

    Failure is all-or-nothing: if the summarizer raises, times out, or
    returns an empty digest, compact() raises CompactionFailure and the
    caller keeps its uncompacted state.
    """

    def __init__(
        self,
        estimator: TokenEstimator,
        tail_size: int = TAIL_SIZE,
        max_compact_span: int = MAX_COMPACT_SPAN,
        summarizer_timeout: float | None = None,
    ) -> None:
        if tail_size < 1:
            raise ConfigurationError("tail_size must be >= 1")
        if max_compact_span < 1:
            raise ConfigurationError("max_compact_span must be >= 1")
        self._estimator = estimator
        self._tail_size = tail_size
        self._max_compact_span = max_compact_span
        self._summarizer_timeout = summarizer_timeout

    @classmethod
    def from_settings(cls, settings: Settings, estimator: TokenEstimator) -> HistoryCompactor:
        return cls(
            estimator,
            tail_size=settings.tail_size,
            max_compact_span=settings.max_compact_span,
            summarizer_timeout=settings.summarizer_timeout,
        )

    @property
    def tail_size(self) -> int:
        return self._tail_size

    def windows(
        self, transcript: list[ConversationTurn]
    ) -> tuple[list[ConversationTurn], list[ConversationTurn], list[ConversationTurn]]:
        """Split a transcript into (discarded, compaction window, tail)."""
        if len(transcript) <= self._tail_size:
            return [], [], list(transcript)
        tail_start = len(transcript) - self._tail_size
        window_start = max(0, tail_start - self._max_compact_span)
        return (
            list(transcript[:window_start]),
            list(transcript[window_start:tail_start]),
            list(transcript[tail_start:]),
        )

    async def compact(
        self,
        transcript: list[ConversationTurn],
        prior_summary: str | None,
        summarizer: Summarizer,
    ) -> CompactionResult:
        """Summarize the compaction window and keep the tail verbatim."""
        tokens_before = self._estimator.estimate_turns(transcript)

        discarded, window, tail = self.windows(transcript)
        if not window:
            return CompactionResult(
                summary="",
                kept_tail=tail,
                tokens_before=tokens_before,
                tokens_after=tokens_before,
            )

        start_time = time.monotonic()
        try:
            summary = await asyncio.wait_for(
                summarizer.summarize(list(window), prior_summary),
                timeout=self._summarizer_timeout,
            )
        except asyncio.TimeoutError as e:
            raise CompactionFailure(
                f"Summarizer timed out after {self._summarizer_timeout:g}s", cause=e
            ) from e
        except CompactionFailure:
            raise
        except Exception as e:
            raise CompactionFailure(f"Summarizer failed: {e}", cause=e) from e

        summary = (summary or "").strip()
        if not summary:
            raise CompactionFailure("Summarizer returned an empty summary")

        tokens_after = self._estimator.estimate(summary) + self._estimator.estimate_turns(tail)
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Compacted history: %d turns -> summary (%d chars) + %d tail turns, "
            "%d discarded, tokens %d -> %d (%d ms)",
            len(transcript), len(summary), len(tail), len(discarded),
            tokens_before, tokens_after, duration_ms,
        )
        return CompactionResult(
            summary=summary,
            kept_tail=tail,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            compacted_turns=len(window),
            discarded_turns=len(discarded),
        )

    @staticmethod
    def reduction_percentage(tokens_before: int, tokens_after: int) -> int:
        if tokens_before == 0:
            return 0
        return round((1 - tokens_after / tokens_before) * 100)


# ------------------------------------------------------------------
# Executor-backed summarizer
# ------------------------------------------------------------------


class ExecutorSummarizer:
    """Summarizer that runs the summary prompt through an Executor.

    Always uses a fresh executor conversation (no continuation handle) so the
    summary request never lands in the user's own session history.
    """

    def __init__(self, executor: Executor) -> None:
        self._executor = executor

    async def summarize(
        self,
        turns: list[ConversationTurn],
        prior_summary: str | None = None,
    ) -> str:
        transcript = format_transcript(turns)
        if prior_summary:
            prompt = UPDATE_SUMMARY_PROMPT.format(prior_summary=prior_summary, transcript=transcript)
        else:
            prompt = SUMMARY_PROMPT.format(transcript=transcript)

        metadata: dict[str, Any] = {"purpose": "summary"}
        outcome = await self._executor.invoke(prompt, None, metadata)
        if not outcome.succeeded:
            raise CompactionFailure(f"Summary execution failed: {outcome.failure}")
        return outcome.output
