"""Context orchestrator -- runs one user turn through the context pipeline.

Per turn: size the request, compact history when over the soft limit,
segment oversized input, execute the parts in order, then fold the results
into a new ContextState. A turn that starts a fresh executor conversation on
a compacted session gets the stored summary and recent turns as a preamble.
Executor and summarizer failures never escape as exceptions; the caller
always gets a well-formed TurnResult.

The orchestrator keeps no per-session state. Callers must serialize turns
for the same session (see SessionStore.lock).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from parley.config import Settings
from parley.context.compactor import HistoryCompactor, format_transcript
from parley.context.errors import CompactionFailure
from parley.context.protocols import Executor, Summarizer, TranscriptAccessor
from parley.context.schemas import (
    BudgetState,
    CompactionResult,
    ContextState,
    ConversationTurn,
    ExecutionOutcome,
    TurnResult,
)
from parley.context.segmenter import segment_with_anomalies
from parley.context.tokens import TokenEstimator
from parley.events import (
    COMPACTION_COMPLETED,
    COMPACTION_FAILED,
    HARD_LIMIT_REACHED,
    PART_FAILED,
    SEGMENTATION_ANOMALY,
    TURN_COMPLETED,
    Event,
    EventBus,
)

logger = logging.getLogger(__name__)

PART_SEPARATOR = "\n\n---\n\n"


def failure_marker(part: int, total: int, reason: str | None) -> str:
    return f"[Part {part}/{total} failed: {reason or 'unknown error'}]"


def build_context_preamble(summary: str, recent: list[ConversationTurn]) -> str:
    """Text that seeds a fresh executor conversation with compacted history."""
    sections = [f"## Summary of earlier conversation\n\n{summary}"]
    if recent:
        sections.append(f"## Recent messages\n\n{format_transcript(recent)}")
    return "\n\n".join(sections)


class ContextOrchestrator:
    """Coordinates estimator, compactor, segmenter and executor for one turn."""

    def __init__(
        self,
        settings: Settings,
        executor: Executor,
        summarizer: Summarizer,
        *,
        estimator: TokenEstimator | None = None,
        compactor: HistoryCompactor | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._executor = executor
        self._summarizer = summarizer
        self._estimator = estimator or TokenEstimator.from_settings(settings)
        self._compactor = compactor or HistoryCompactor.from_settings(settings, self._estimator)
        self._bus = bus

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    async def execute(
        self,
        prior_state: ContextState,
        input_text: str,
        transcript_accessor: TranscriptAccessor,
        *,
        continuation_handle: str | None = None,
        metadata: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> TurnResult:
        state = prior_state.model_copy()
        input_tokens = self._estimator.estimate(input_text)

        # Sizing
        total = self._estimator.combined_estimate(prior_state.estimated_tokens, input_text)
        logger.debug(
            "Session %s: current=%d + new=%d = total=%d tokens",
            session_id, prior_state.estimated_tokens, input_tokens, total,
        )

        # Compacting
        compaction: CompactionResult | None = None
        if self._estimator.classify(total) is not BudgetState.BELOW_SOFT:
            compaction = await self._try_compact(state, transcript_accessor, session_id)
            if compaction is not None:
                state.estimated_tokens = compaction.tokens_after
                state.summary = compaction.summary
                state.last_compaction_at = datetime.now(UTC)
                state.compaction_count += 1
                continuation_handle = None

        # Segmenting
        segmentation = segment_with_anomalies(input_text, self._settings.max_chunk_size)
        parts = segmentation.segments
        for anomaly in segmentation.anomalies:
            await self._emit(SEGMENTATION_ANOMALY, session_id, **anomaly.model_dump())
        if len(parts) > 1:
            logger.info(
                "Session %s: input split into %d parts (%d chars)",
                session_id, len(parts), len(input_text),
            )

        # Executing
        base_metadata = dict(metadata or {})
        if compaction is not None:
            base_metadata["context_preamble"] = build_context_preamble(
                compaction.summary, compaction.kept_tail
            )
        elif continuation_handle is None and state.summary:
            # Fresh conversation on a compacted session: carry the summary over again
            base_metadata["context_preamble"] = await self._resume_preamble(
                state.summary, transcript_accessor, session_id
            )
        outcome, outputs = await self._execute_parts(
            parts, continuation_handle, base_metadata, session_id
        )

        # Finalizing
        completed = len(outputs)
        if completed > 0:
            output_tokens = self._estimator.estimate(PART_SEPARATOR.join(outputs))
            if compaction is not None:
                state.estimated_tokens = (
                    self._estimator.estimate(compaction.summary) + input_tokens + output_tokens
                )
            else:
                state.estimated_tokens += input_tokens + output_tokens

        budget = self._estimator.classify(state.estimated_tokens)
        state.needs_compaction = budget is not BudgetState.BELOW_SOFT
        attempted = completed if outcome.succeeded else completed + 1
        state.parts_in_flight = len(parts) - attempted
        state.parts_executed += completed

        if budget is BudgetState.AT_OR_ABOVE_HARD:
            logger.warning(
                "Session %s: context estimate %d at or above hard limit %d",
                session_id, state.estimated_tokens, self._estimator.hard_limit,
            )
            await self._emit(
                HARD_LIMIT_REACHED, session_id,
                estimated_tokens=state.estimated_tokens,
                hard_limit=self._estimator.hard_limit,
            )

        await self._emit(
            TURN_COMPLETED, session_id,
            succeeded=outcome.succeeded,
            parts=len(parts),
            parts_completed=completed,
            estimated_tokens=state.estimated_tokens,
            compacted=compaction is not None,
        )

        return TurnResult(
            outcome=outcome,
            new_state=state,
            compaction=compaction,
            parts=len(parts),
            parts_completed=completed,
        )

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def _try_compact(
        self,
        state: ContextState,
        transcript_accessor: TranscriptAccessor,
        session_id: str | None,
    ) -> CompactionResult | None:
        """Compact history; returns None when skipped or failed."""
        try:
            transcript = await transcript_accessor()
            if len(transcript) <= self._compactor.tail_size:
                logger.debug(
                    "Session %s: over soft limit but only %d turns recorded, skipping compaction",
                    session_id, len(transcript),
                )
                return None
            result = await self._compactor.compact(transcript, state.summary, self._summarizer)
        except CompactionFailure as e:
            logger.warning("Session %s: compaction failed: %s", session_id, e)
            await self._emit(COMPACTION_FAILED, session_id, error=str(e))
            return None
        except Exception as e:
            logger.warning("Session %s: could not load transcript for compaction: %s", session_id, e)
            await self._emit(COMPACTION_FAILED, session_id, error=f"transcript unavailable: {e}")
            return None

        if not result.compacted:
            return None

        await self._emit(
            COMPACTION_COMPLETED, session_id,
            tokens_before=result.tokens_before,
            tokens_after=result.tokens_after,
            compacted_turns=result.compacted_turns,
            discarded_turns=result.discarded_turns,
        )
        return result

    async def _resume_preamble(
        self,
        summary: str,
        transcript_accessor: TranscriptAccessor,
        session_id: str | None,
    ) -> str:
        """Summary plus the most recent recorded turns."""
        try:
            transcript = await transcript_accessor()
        except Exception as e:
            logger.warning(
                "Session %s: could not load transcript for context preamble: %s", session_id, e
            )
            transcript = []
        return build_context_preamble(summary, transcript[-self._compactor.tail_size:])

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_parts(
        self,
        parts: list[str],
        continuation_handle: str | None,
        base_metadata: dict[str, Any],
        session_id: str | None,
    ) -> tuple[ExecutionOutcome, list[str]]:
        """Fold over parts in order, threading the continuation handle.

        Stops at the first failed part. Returns the aggregate outcome and the
        outputs of the parts that completed successfully.
        """
        total = len(parts)
        outputs: list[str] = []
        handle = continuation_handle

        for index, text in enumerate(parts, start=1):
            part_metadata = dict(base_metadata)
            if index > 1:
                part_metadata.pop("context_preamble", None)
            if total > 1:
                part_metadata["part"] = index
                part_metadata["total"] = total

            result = await self._invoke(text, handle, part_metadata)
            if not result.succeeded:
                if total == 1:
                    return result, []
                logger.warning(
                    "Session %s: part %d/%d failed: %s", session_id, index, total, result.failure
                )
                await self._emit(
                    PART_FAILED, session_id, part=index, total=total, error=result.failure
                )
                output = PART_SEPARATOR.join([*outputs, failure_marker(index, total, result.failure)])
                return (
                    ExecutionOutcome(
                        succeeded=False,
                        output=output,
                        continuation_handle=handle,
                        failure=result.failure,
                    ),
                    outputs,
                )

            outputs.append(result.output)
            handle = result.continuation_handle or handle

        return (
            ExecutionOutcome(
                succeeded=True,
                output=PART_SEPARATOR.join(outputs),
                continuation_handle=handle,
            ),
            outputs,
        )

    async def _invoke(
        self, text: str, handle: str | None, metadata: dict[str, Any]
    ) -> ExecutionOutcome:
        timeout = self._settings.executor_timeout
        try:
            return await asyncio.wait_for(
                self._executor.invoke(text, handle, metadata), timeout=timeout
            )
        except asyncio.TimeoutError:
            return ExecutionOutcome(
                succeeded=False, failure=f"Execution timeout ({timeout:g} seconds)"
            )
        except Exception as e:
            logger.exception("Executor raised")
            return ExecutionOutcome(succeeded=False, failure=str(e) or type(e).__name__)

    async def _emit(self, event_type: str, session_id: str | None, **data: Any) -> None:
        if self._bus is None:
            return
        await self._bus.emit(Event(type=event_type, session_id=session_id, data=data))
