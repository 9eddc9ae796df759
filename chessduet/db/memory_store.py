"""Process-local SessionStore. Backs local-only AI and Learning sessions, and stands in for a remote store in tests."""

import logging
from typing import Any, Mapping

from chessduet.core.exceptions import (
    GameStateError,
    InvalidRequestError,
    SessionNotFoundError,
    SyncConflictError,
)
from chessduet.core.models import GameSession, SessionId
from chessduet.db.store import UPDATABLE_FIELDS, ChangeCallback

logger = logging.getLogger(__name__)


class CallbackSubscription:
    """Handle returned by subscribe(); removes the callback from its registry on cancel."""

    def __init__(
        self, registry: dict[SessionId, list[ChangeCallback]], session_id: SessionId, callback: ChangeCallback
    ) -> None:
        self._registry = registry
        self._session_id = session_id
        self._callback = callback
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        callbacks = self._registry.get(self._session_id, [])
        if self._callback in callbacks:
            callbacks.remove(self._callback)


def notify(
    registry: dict[SessionId, list[ChangeCallback]], session: GameSession
) -> None:
    """Push a fresh copy of the document to every subscriber of the session."""
    document = session.to_document()
    for callback in list(registry.get(session.id, [])):
        try:
            callback(GameSession.from_document(document))
        except Exception:
            logger.exception("Subscriber of session %s failed", session.id)


class InMemorySessionStore:
    """Documents kept in a dictionary, keyed by session id."""

    def __init__(self) -> None:
        self._documents: dict[SessionId, dict[str, Any]] = {}
        self._subscribers: dict[SessionId, list[ChangeCallback]] = {}

    async def create(self, session: GameSession) -> GameSession:
        if session.id in self._documents:
            raise GameStateError(f"Session {session.id} already exists.")
        document = session.to_document()
        document["version"] = 1
        self._documents[session.id] = document
        stored = GameSession.from_document(document)
        notify(self._subscribers, stored)
        return stored

    async def update(
        self,
        session_id: SessionId,
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> GameSession:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequestError(f"Cannot update fields: {sorted(unknown)}")

        document = self._documents.get(session_id)
        if document is None:
            raise SessionNotFoundError(session_id)
        if document["version"] != expected_version:
            raise SyncConflictError(session_id, expected_version, document["version"])

        updated = {**document, **changes, "version": document["version"] + 1}
        # validates the merged document before it replaces the stored one
        stored = GameSession.from_document(updated)
        self._documents[session_id] = stored.to_document()
        notify(self._subscribers, stored)
        return stored

    async def get(self, session_id: SessionId) -> GameSession | None:
        document = self._documents.get(session_id)
        if document is None:
            return None
        return GameSession.from_document(document)

    def subscribe(
        self, session_id: SessionId, callback: ChangeCallback
    ) -> CallbackSubscription:
        self._subscribers.setdefault(session_id, []).append(callback)
        return CallbackSubscription(self._subscribers, session_id, callback)

    def clear(self) -> None:
        """Clear the store (useful in between tests)"""
        self._documents.clear()
        self._subscribers.clear()
