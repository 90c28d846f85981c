"""Session store -- executor session metadata, context state and transcripts.

Sessions expire after settings.session_timeout seconds of inactivity. An
expired session is deleted the next time it is read, or by cleanup().

Context state is stored as JSON and validated back into ContextState on
load. Transcripts are stored one row per turn with a dense position index.
Methods follow the session injection pattern: pass an AsyncSession to join
an outer transaction, or omit it to run in a fresh one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from parley.config import Settings
from parley.context.schemas import ContextState, ConversationTurn, Role
from parley.storage.database import Database
from parley.storage.models import SessionRow, TurnRow

logger = logging.getLogger(__name__)

_UNSET = object()


def _as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on round-trip; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SessionRecord(BaseModel):
    """A session as seen by callers of the store."""

    id: str
    user_name: str = ""
    continuation_handle: str | None = None
    context_state: ContextState = Field(default_factory=ContextState)
    message_count: int = 0
    created_at: datetime
    last_activity: datetime


class SessionStore:
    """Persists executor sessions and their transcripts."""

    def __init__(self, db: Database, settings: Settings) -> None:
        self.db = db
        self._timeout = timedelta(seconds=settings.session_timeout)
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Per-session serialization
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Mutual exclusion for turns on the same session.

        Different sessions never block each other.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            yield

    def _forget_lock(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    # ------------------------------------------------------------------
    # Session CRUD
    # ------------------------------------------------------------------

    async def get(self, session_id: str, session: AsyncSession | None = None) -> SessionRecord | None:
        """Return the session, or None if missing or expired (expired is deleted)."""
        if session is None:
            async with self.db.session() as session:
                result = await self._get(session_id, session)
                await session.commit()
                return result
        return await self._get(session_id, session)

    async def _get(self, session_id: str, session: AsyncSession) -> SessionRecord | None:
        row = await session.get(SessionRow, session_id)
        if row is None:
            return None
        if self._is_expired(row, datetime.now(UTC)):
            logger.info("Session %s expired, deleting", session_id)
            await self._delete(session_id, session)
            self._forget_lock(session_id)
            return None
        return self._to_record(row)

    async def create(
        self, session_id: str, user_name: str = "", session: AsyncSession | None = None
    ) -> SessionRecord:
        """Create a fresh session, replacing any stale row with the same id."""
        if session is None:
            async with self.db.session() as session:
                result = await self._create(session_id, user_name, session)
                await session.commit()
                return result
        return await self._create(session_id, user_name, session)

    async def _create(self, session_id: str, user_name: str, session: AsyncSession) -> SessionRecord:
        await self._delete(session_id, session)
        now = datetime.now(UTC)
        row = SessionRow(
            id=session_id,
            user_name=user_name,
            continuation_handle=None,
            context_state=ContextState().model_dump(mode="json"),
            message_count=0,
            created_at=now,
            last_activity=now,
        )
        session.add(row)
        await session.flush()
        logger.info("Created session %s for %s", session_id, user_name or "unknown user")
        return self._to_record(row)

    async def get_or_create(self, session_id: str, user_name: str = "") -> SessionRecord:
        async with self.db.session() as session:
            record = await self._get(session_id, session)
            if record is None:
                record = await self._create(session_id, user_name, session)
            await session.commit()
            return record

    async def update(
        self,
        session_id: str,
        *,
        context_state: ContextState | None = None,
        continuation_handle: str | None | object = _UNSET,
        user_name: str | None = None,
        session: AsyncSession | None = None,
    ) -> SessionRecord | None:
        """Apply the given changes and touch last_activity.

        Pass continuation_handle=None to clear the handle; omit it to keep it.
        Returns None when the session does not exist.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._update(
                    session_id, context_state, continuation_handle, user_name, session
                )
                await session.commit()
                return result
        return await self._update(session_id, context_state, continuation_handle, user_name, session)

    async def _update(
        self,
        session_id: str,
        context_state: ContextState | None,
        continuation_handle: str | None | object,
        user_name: str | None,
        session: AsyncSession,
    ) -> SessionRecord | None:
        row = await session.get(SessionRow, session_id)
        if row is None:
            return None
        if context_state is not None:
            row.context_state = context_state.model_dump(mode="json")
        if continuation_handle is not _UNSET:
            row.continuation_handle = continuation_handle
        if user_name is not None:
            row.user_name = user_name
        row.last_activity = datetime.now(UTC)
        await session.flush()
        return self._to_record(row)

    async def increment_message_count(self, session_id: str) -> int | None:
        async with self.db.session() as session:
            row = await session.get(SessionRow, session_id)
            if row is None:
                return None
            row.message_count += 1
            row.last_activity = datetime.now(UTC)
            await session.commit()
            return row.message_count

    async def delete(self, session_id: str) -> bool:
        """Delete the session and its transcript. Returns True if it existed."""
        async with self.db.session() as session:
            existed = await self._delete(session_id, session)
            await session.commit()
        self._forget_lock(session_id)
        return existed

    async def _delete(self, session_id: str, session: AsyncSession) -> bool:
        await session.execute(delete(TurnRow).where(TurnRow.session_id == session_id))
        row = await session.get(SessionRow, session_id)
        if row is None:
            return False
        await session.delete(row)
        await session.flush()
        return True

    async def count(self) -> int:
        async with self.db.session() as session:
            return await session.scalar(select(func.count()).select_from(SessionRow)) or 0

    async def cleanup(self) -> int:
        """Delete every expired session. Returns how many were removed."""
        cutoff = datetime.now(UTC) - self._timeout
        async with self.db.session() as session:
            result = await session.execute(select(SessionRow))
            expired = [row.id for row in result.scalars() if _as_utc(row.last_activity) < cutoff]
            for session_id in expired:
                await self._delete(session_id, session)
            await session.commit()
        for session_id in expired:
            self._forget_lock(session_id)
        if expired:
            logger.info("Cleaned up %d expired sessions", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    async def load_transcript(self, session_id: str) -> list[ConversationTurn]:
        """All recorded turns for the session, oldest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(TurnRow)
                .where(TurnRow.session_id == session_id)
                .order_by(TurnRow.position)
            )
            return [self._to_turn(row) for row in result.scalars()]

    async def append_turns(
        self,
        session_id: str,
        turns: list[ConversationTurn],
        session: AsyncSession | None = None,
    ) -> None:
        if session is None:
            async with self.db.session() as session:
                await self._append_turns(session_id, turns, session)
                await session.commit()
                return
        await self._append_turns(session_id, turns, session)

    async def _append_turns(
        self, session_id: str, turns: list[ConversationTurn], session: AsyncSession
    ) -> None:
        last = await session.scalar(
            select(func.max(TurnRow.position)).where(TurnRow.session_id == session_id)
        )
        position = -1 if last is None else last
        for turn in turns:
            position += 1
            session.add(self._to_row(session_id, position, turn))
        await session.flush()

    async def replace_transcript(
        self,
        session_id: str,
        turns: list[ConversationTurn],
        session: AsyncSession | None = None,
    ) -> None:
        """Swap the whole transcript, e.g. for the kept tail after compaction."""
        if session is None:
            async with self.db.session() as session:
                await self._replace_transcript(session_id, turns, session)
                await session.commit()
                return
        await self._replace_transcript(session_id, turns, session)

    async def _replace_transcript(
        self, session_id: str, turns: list[ConversationTurn], session: AsyncSession
    ) -> None:
        await session.execute(delete(TurnRow).where(TurnRow.session_id == session_id))
        await session.flush()
        for position, turn in enumerate(turns):
            session.add(self._to_row(session_id, position, turn))
        await session.flush()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_expired(self, row: SessionRow, now: datetime) -> bool:
        return now - _as_utc(row.last_activity) > self._timeout

    @staticmethod
    def _to_record(row: SessionRow) -> SessionRecord:
        state = ContextState.model_validate(row.context_state) if row.context_state else ContextState()
        return SessionRecord(
            id=row.id,
            user_name=row.user_name,
            continuation_handle=row.continuation_handle,
            context_state=state,
            message_count=row.message_count,
            created_at=_as_utc(row.created_at),
            last_activity=_as_utc(row.last_activity),
        )

    @staticmethod
    def _to_row(session_id: str, position: int, turn: ConversationTurn) -> TurnRow:
        return TurnRow(
            session_id=session_id,
            position=position,
            role=turn.role.value,
            content=turn.content,
            timestamp=turn.timestamp,
        )

    @staticmethod
    def _to_turn(row: TurnRow) -> ConversationTurn:
        return ConversationTurn(
            role=Role(row.role),
            content=row.content,
            timestamp=_as_utc(row.timestamp) if row.timestamp else None,
        )
