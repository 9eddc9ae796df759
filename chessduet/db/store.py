"""Protocol for the replicated session store (in-memory, SQL, or any document database with conditional writes)."""

from typing import Any, Callable, Mapping, Protocol

from chessduet.core.models import GameSession, SessionId

ChangeCallback = Callable[[GameSession], None]

# Fields a conditional update may touch. id and version are owned by the store.
UPDATABLE_FIELDS = frozenset(
    {
        "position",
        "turn",
        "move_history",
        "participants",
        "mode",
        "status",
        "starting_position",
        "ai_color",
        "difficulty",
        "result",
        "termination",
        "last_writer",
        "metadata",
    }
)


class Subscription(Protocol):
    def cancel(self) -> None:
        """Stop delivering changes. Safe to call more than once."""
        ...


class SessionStore(Protocol):
    """Persistence layer for session documents."""

    async def create(self, session: GameSession) -> GameSession:
        """Store a new session document. The stored copy carries version 1."""
        ...

    async def update(
        self,
        session_id: SessionId,
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> GameSession:
        """
        Conditional partial update.
        ----
        Applies `changes` (document field names, document values) only if the stored version
        equals `expected_version`; raises SyncConflictError otherwise. Returns the stored
        document with its version incremented by one.
        """
        ...

    async def get(self, session_id: SessionId) -> GameSession | None:
        """One-shot read, if the record exists."""
        ...

    def subscribe(self, session_id: SessionId, callback: ChangeCallback) -> Subscription:
        """Deliver every committed version of the session to `callback`."""
        ...
