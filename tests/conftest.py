"""
Pytest will auto-discover / import this file called 'conftest.py'.
This file defines fixtures/variables required for testing multiple layers.
"""

from typing import Any, Generator

import pytest
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from chessduet.core.config import SessionSettings
from chessduet.core.events import SessionEvent
from chessduet.db.memory_store import InMemorySessionStore
from chessduet.db.schema import Base

STARTING_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"

# Setup an in-memory SQLite database for testing
DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db_session_repo() -> Generator[Session, None, None]:
    """Connection to a test database. Tables are removed at teardown to make unit tests of the store independent of each other."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session_shared(db_session_repo: Session) -> Generator[Session, None, None]:
    """A second connection to the same tables. Mock real setup with multiple clients writing to one database."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def memory_store() -> Generator[InMemorySessionStore, None, None]:
    """Ensures to clear the store between tests"""
    store = InMemorySessionStore()
    try:
        yield store
    finally:
        store.clear()


@pytest.fixture
def fast_settings() -> SessionSettings:
    """No waiting between persistence retries, short AI deadline."""
    return SessionSettings(
        persistence_backoff_seconds=0,
        persistence_backoff_max_seconds=0,
        ai_timeout_seconds=0.5,
    )


class EventRecorder:
    """Listener collecting every emitted session event."""

    def __init__(self) -> None:
        self.events: list[SessionEvent] = []

    def __call__(self, event: SessionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: Any) -> list[SessionEvent]:
        return [event for event in self.events if event.event_type == event_type]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
