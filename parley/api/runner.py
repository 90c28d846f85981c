"""Turn runner -- one /execute request against a stored session.

Wires the SessionStore around ContextOrchestrator.execute(): load the
session, run the turn, then persist transcript, context state and the
executor's continuation handle. State is written only after the
orchestrator returns, so a cancelled turn leaves the session untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from parley.context.orchestrator import ContextOrchestrator
from parley.context.schemas import ContextState, ConversationTurn, Role, TurnResult
from parley.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class RunnerResult:
    """What the HTTP layer reports back for one turn."""

    success: bool
    session_id: str
    continuation_handle: str | None
    output: str
    error: str | None
    context_state: ContextState
    turn: TurnResult


class TurnRunner:
    """Runs conversational turns with per-session serialization."""

    def __init__(self, orchestrator: ContextOrchestrator, store: SessionStore) -> None:
        self._orchestrator = orchestrator
        self._store = store

    async def run_turn(
        self,
        session_id: str,
        prompt: str,
        *,
        user_name: str | None = None,
        continuation_handle: str | None = None,
    ) -> RunnerResult:
        async with self._store.lock(session_id):
            record = await self._store.get_or_create(session_id, user_name or "")

            # A client-supplied handle is only adopted for sessions without one
            handle = record.continuation_handle or continuation_handle

            async def transcript_accessor() -> list[ConversationTurn]:
                return await self._store.load_transcript(session_id)

            metadata = {"user_name": user_name} if user_name else {}
            result = await self._orchestrator.execute(
                record.context_state,
                prompt,
                transcript_accessor,
                continuation_handle=handle,
                metadata=metadata,
                session_id=session_id,
            )
            outcome = result.outcome

            if result.compaction is not None:
                await self._store.replace_transcript(session_id, result.compaction.kept_tail)

            now = datetime.now(UTC)
            turns = [ConversationTurn(role=Role.USER, content=prompt, timestamp=now)]
            if outcome.output:
                turns.append(ConversationTurn(role=Role.ASSISTANT, content=outcome.output, timestamp=now))
            await self._store.append_turns(session_id, turns)

            if outcome.continuation_handle or result.compaction is not None:
                new_handle = outcome.continuation_handle
            else:
                new_handle = handle
            await self._store.update(
                session_id,
                context_state=result.new_state,
                continuation_handle=new_handle,
                user_name=user_name,
            )
            await self._store.increment_message_count(session_id)

        logger.info(
            "Execute complete: session=%s, success=%s, parts=%d/%d, tokens=%d",
            session_id, outcome.succeeded, result.parts_completed, result.parts,
            result.new_state.estimated_tokens,
        )
        return RunnerResult(
            success=outcome.succeeded,
            session_id=session_id,
            continuation_handle=new_handle,
            output=outcome.output,
            error=outcome.failure,
            context_state=result.new_state,
            turn=result,
        )
