"""Unit tests for chessduet/db/sql_store.py"""

import asyncio
import time
from typing import Any

import pytest
from sqlalchemy.orm import Session

from chessduet.core.exceptions import (
    InvalidRequestError,
    SessionNotFoundError,
    SyncConflictError,
)
from chessduet.core.models import STARTING_POSITION, GameSession
from chessduet.core.shared_types import (
    Color,
    Difficulty,
    GameMode,
    SessionStatus,
    Termination,
)
from chessduet.db.sql_store import SQLSessionStore

AFTER_E4 = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"
FOOLS_MATE = "rnb1kbnr/pppp1ppp/8/4p3/6Pq/5P2/PPPPP2P/RNBQKBNR w KQkq - 1 3"
E4_CHANGES = {"position": AFTER_E4, "turn": "b", "move_history": ["e4"]}


class SlowSQLSessionStore(SQLSessionStore):
    """Every conditional update takes `delay` seconds, like a database under load."""

    def __init__(self, db_session: Session, delay: float) -> None:
        super().__init__(db_session)
        self.delay = delay

    def _conditional_update(
        self, session_id: str, changes: dict[str, Any], expected_version: int
    ) -> GameSession:
        time.sleep(self.delay)
        return super()._conditional_update(session_id, changes, expected_version)


def make_session(session_id: str = "session-1") -> GameSession:
    return GameSession(
        id=session_id,
        position=STARTING_POSITION,
        turn=Color.WHITE,
        move_history=[],
        participants={Color.WHITE: "player_white"},
        mode=GameMode.AI,
        status=SessionStatus.IN_PROGRESS,
        ai_color=Color.BLACK,
        difficulty=Difficulty.EASY,
        last_writer="client-a",
        metadata={"source": "test"},
    )


@pytest.mark.asyncio
async def test_create_session(db_session_repo: Session) -> None:
    """Conversion from a GameSession to DBSession for a new entry to the database."""
    store = SQLSessionStore(db_session_repo)
    stored = await store.create(make_session())

    assert isinstance(stored, GameSession)
    assert stored.version == 1
    assert stored.participants == {Color.WHITE: "player_white"}
    assert stored.ai_color == Color.BLACK
    assert stored.difficulty == Difficulty.EASY
    assert stored.metadata == {"source": "test"}


@pytest.mark.asyncio
async def test_get_session_by_id(db_session_repo: Session) -> None:
    store = SQLSessionStore(db_session_repo)
    expected = await store.create(make_session())
    found = await store.get("session-1")
    assert found == expected


@pytest.mark.asyncio
async def test_get_unknown_session(db_session_repo: Session) -> None:
    """
    Should return None if ID does not match anything in database.

    NOTE with an empty database, any id is a valid test case.
    """
    store = SQLSessionStore(db_session_repo)
    assert await store.get("unknown") is None

    await store.create(make_session())
    assert await store.get("unknown") is None


@pytest.mark.asyncio
async def test_update_session(db_session_repo: Session) -> None:
    store = SQLSessionStore(db_session_repo)
    await store.create(make_session())
    updated = await store.update("session-1", E4_CHANGES, expected_version=1)

    assert updated.version == 2
    assert updated.position == AFTER_E4
    assert updated.turn == Color.BLACK
    assert updated.move_history == ["e4"]
    assert updated.participants == {Color.WHITE: "player_white"}


@pytest.mark.asyncio
async def test_consecutive_updates(db_session_repo: Session) -> None:
    store = SQLSessionStore(db_session_repo)
    await store.create(make_session())
    history = ["f3", "e5", "g4", "Qh4#"]
    await store.update("session-1", {"move_history": history[:1]}, expected_version=1)
    await store.update("session-1", {"move_history": history[:3]}, expected_version=2)
    final = await store.update(
        "session-1",
        {
            "position": FOOLS_MATE,
            "turn": "w",
            "move_history": history,
            "status": SessionStatus.COMPLETE.value,
            "result": "0-1",
            "termination": Termination.CHECKMATE.value,
            "metadata": {"source": "test", "finished": True},
        },
        expected_version=3,
    )

    assert final.version == 4
    assert final.move_history == history
    assert final.is_complete
    assert final.termination == Termination.CHECKMATE
    assert final.metadata == {"source": "test", "finished": True}
    assert await store.get("session-1") == final


@pytest.mark.asyncio
async def test_stale_update_conflicts(db_session_repo: Session) -> None:
    store = SQLSessionStore(db_session_repo)
    await store.create(make_session())
    await store.update("session-1", E4_CHANGES, expected_version=1)

    with pytest.raises(SyncConflictError) as exc_info:
        await store.update("session-1", {"move_history": ["d4"]}, expected_version=1)
    assert exc_info.value.actual_version == 2

    found = await store.get("session-1")
    assert found is not None
    assert found.move_history == ["e4"]


@pytest.mark.asyncio
async def test_attempt_updating_unknown_session(db_session_repo: Session) -> None:
    store = SQLSessionStore(db_session_repo)
    with pytest.raises(SessionNotFoundError):
        await store.update("unknown", E4_CHANGES, expected_version=1)


@pytest.mark.asyncio
async def test_update_rejects_store_owned_fields(db_session_repo: Session) -> None:
    store = SQLSessionStore(db_session_repo)
    await store.create(make_session())
    with pytest.raises(InvalidRequestError):
        await store.update("session-1", {"version": 10}, expected_version=1)


@pytest.mark.asyncio
async def test_own_writes_are_pushed(db_session_repo: Session) -> None:
    store = SQLSessionStore(db_session_repo)
    await store.create(make_session())
    received: list[GameSession] = []
    subscription = store.subscribe("session-1", received.append)

    await store.update("session-1", E4_CHANGES, expected_version=1)
    assert [session.version for session in received] == [2]

    subscription.cancel()
    await store.update("session-1", {"metadata": {}}, expected_version=2)
    assert len(received) == 1


@pytest.mark.asyncio
async def test_slow_write_leaves_the_loop_running(db_session_repo: Session) -> None:
    """A deadline running next to a slow database write still fires on time."""
    store = SlowSQLSessionStore(db_session_repo, delay=0.5)
    await store.create(make_session())
    loop = asyncio.get_running_loop()

    write = asyncio.create_task(store.update("session-1", E4_CHANGES, expected_version=1))
    await asyncio.sleep(0)
    started = loop.time()
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(asyncio.sleep(10), timeout=0.05)
    assert loop.time() - started < 0.4
    assert not write.done()

    updated = await write
    assert updated.version == 2
    assert updated.move_history == ["e4"]


@pytest.mark.asyncio
async def test_polling_picks_up_other_writers(
    db_session_repo: Session, db_session_shared: Session
) -> None:
    """Two stores on the same tables: writes of one reach subscribers of the other."""
    writer = SQLSessionStore(db_session_repo)
    reader = SQLSessionStore(db_session_shared, poll_interval=0.01)
    await writer.create(make_session())

    received: list[GameSession] = []
    reader.subscribe("session-1", received.append)
    try:
        await writer.update("session-1", E4_CHANGES, expected_version=1)
        for _ in range(100):
            if received and received[-1].version == 2:
                break
            await asyncio.sleep(0.01)
    finally:
        await reader.close()

    assert received[-1].version == 2
    assert received[-1].move_history == ["e4"]
    # each version is pushed at most once
    versions = [session.version for session in received]
    assert versions == sorted(set(versions))
