"""Implementation of SessionStore using SQLAlchemy"""

import asyncio
import logging
from typing import Any, Callable, Mapping, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chessduet.core.config import SessionSettings
from chessduet.core.exceptions import (
    InvalidRequestError,
    PersistenceError,
    SessionNotFoundError,
    SyncConflictError,
)
from chessduet.core.models import GameSession, SessionId
from chessduet.db.database import build_session_factory
from chessduet.db.memory_store import CallbackSubscription, notify
from chessduet.db.schema import DBSession
from chessduet.db.store import UPDATABLE_FIELDS, ChangeCallback

logger = logging.getLogger(__name__)

T = TypeVar("T")

# document field name -> mapped attribute name, where they differ
COLUMN_NAMES = {"metadata": "session_metadata"}


class SQLSessionStore:
    """
    Session documents stored in the `sessions` table.
    ----
    Database calls block, so they run in a worker thread, one at a time since the database session
    is not thread-safe. The event loop stays free for the rest of the session meanwhile.

    Writes made through this instance are pushed to subscribers right after commit. Writes made by
    other processes are picked up by a polling task, started with the first subscription when
    `poll_interval` is set and an event loop is running.
    """

    def __init__(self, db_session: Session, poll_interval: Optional[float] = None) -> None:
        self.db = db_session
        self.poll_interval = poll_interval
        self._db_lock = asyncio.Lock()
        self._subscribers: dict[SessionId, list[ChangeCallback]] = {}
        self._seen_versions: dict[SessionId, int] = {}
        self._poller: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> "SQLSessionStore":
        """Store on a fresh database session for the configured URL."""
        factory = build_session_factory(settings)
        return cls(factory(), poll_interval=settings.store_poll_interval_seconds)

    async def create(self, session: GameSession) -> GameSession:
        stored = await self._run_db(self._insert, session)
        return self._committed(stored)

    async def update(
        self,
        session_id: SessionId,
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> GameSession:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequestError(f"Cannot update fields: {sorted(unknown)}")

        stored = await self._run_db(
            self._conditional_update, session_id, dict(changes), expected_version
        )
        return self._committed(stored)

    async def get(self, session_id: SessionId) -> GameSession | None:
        try:
            return await self._run_db(self._read, session_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read session {session_id}: {exc}") from exc

    def subscribe(
        self, session_id: SessionId, callback: ChangeCallback
    ) -> CallbackSubscription:
        self._subscribers.setdefault(session_id, []).append(callback)
        self._start_polling()
        return CallbackSubscription(self._subscribers, session_id, callback)

    async def close(self) -> None:
        """Stop the polling task."""
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None

    # -- Internal helpers --
    async def _run_db(self, func: Callable[..., T], *args: Any) -> T:
        async with self._db_lock:
            call = asyncio.ensure_future(asyncio.to_thread(func, *args))
            try:
                return await asyncio.shield(call)
            except asyncio.CancelledError:
                # a worker thread cannot be interrupted: hold the lock until it is done
                await asyncio.wait([call])
                if not call.cancelled():
                    call.exception()
                raise

    def _committed(self, stored: GameSession) -> GameSession:
        self._seen_versions[stored.id] = stored.version
        notify(self._subscribers, stored)
        return stored

    def _start_polling(self) -> None:
        if self.poll_interval is None or self._poller is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._poller = loop.create_task(self._poll())

    async def _poll(self) -> None:
        """Push documents whose version moved since we last saw them."""
        assert self.poll_interval is not None
        while True:
            await asyncio.sleep(self.poll_interval)
            for session_id in [sid for sid, callbacks in self._subscribers.items() if callbacks]:
                try:
                    stored = await self._run_db(self._read, session_id)
                except SQLAlchemyError:
                    logger.warning("Polling session %s failed", session_id, exc_info=True)
                    continue
                if stored is None:
                    continue
                if stored.version > self._seen_versions.get(session_id, 0):
                    self._committed(stored)

    # -- Blocking database calls, run in a worker thread --
    def _insert(self, session: GameSession) -> GameSession:
        document = session.to_document()
        session_db = DBSession(
            id=document["id"],
            position=document["position"],
            turn=document["turn"],
            move_history=document["move_history"],
            participants=document["participants"],
            mode=document["mode"],
            status=document["status"],
            version=1,
            starting_position=document["starting_position"],
            ai_color=document["ai_color"],
            difficulty=document["difficulty"],
            result=document["result"],
            termination=document["termination"],
            last_writer=document["last_writer"],
            session_metadata=document["metadata"],
        )
        try:
            self.db.add(session_db)
            self.db.commit()
            self.db.refresh(session_db)
            return self._to_model(session_db)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Could not create session {session.id}: {exc}") from exc

    def _conditional_update(
        self, session_id: SessionId, changes: dict[str, Any], expected_version: int
    ) -> GameSession:
        values = {COLUMN_NAMES.get(key, key): value for key, value in changes.items()}
        values["version"] = expected_version + 1
        statement = (
            update(DBSession)
            .where(DBSession.id == session_id, DBSession.version == expected_version)
            .values(**values)
        )
        try:
            matched = self.db.execute(statement).rowcount
            if matched == 0:
                self.db.rollback()
                current = self._fetch_session(session_id)
                if current is None:
                    raise SessionNotFoundError(session_id)
                raise SyncConflictError(session_id, expected_version, current.version)
            self.db.commit()
            session_db = self._fetch_session(session_id)
            assert session_db is not None
            return self._to_model(session_db)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Could not update session {session_id}: {exc}") from exc

    def _read(self, session_id: SessionId) -> GameSession | None:
        session_db = self._fetch_session(session_id)
        if session_db is None:
            return None
        return self._to_model(session_db)

    def _fetch_session(self, session_id: SessionId) -> DBSession | None:
        query = (
            select(DBSession)
            .where(DBSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        return self.db.scalar(query)

    def _to_model(self, session_db: DBSession) -> GameSession:
        """Convert SQLAlchemy model to the session document model."""
        return GameSession.from_document(
            {
                "id": session_db.id,
                "position": session_db.position,
                "turn": session_db.turn,
                "move_history": list(session_db.move_history),
                "participants": dict(session_db.participants),
                "mode": session_db.mode,
                "status": session_db.status,
                "version": session_db.version,
                "starting_position": session_db.starting_position,
                "ai_color": session_db.ai_color,
                "difficulty": session_db.difficulty,
                "result": session_db.result,
                "termination": session_db.termination,
                "last_writer": session_db.last_writer,
                "metadata": dict(session_db.session_metadata or {}),
            }
        )
