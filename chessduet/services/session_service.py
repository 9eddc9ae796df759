"""Orchestration of communication from request models to session contexts (and the reverse direction)."""

from typing import Any

from chessduet.api.models import (
    JoinSessionRequest,
    MoveRequest,
    SessionResponse,
    StartSessionRequest,
)
from chessduet.core.exceptions import InvalidRequestError
from chessduet.core.models import PlayerId, SessionId
from chessduet.db.store import SessionStore
from chessduet.services.session import GameSessionContext


class SessionService:
    """
    Keeps one GameSessionContext per (session, player) for a process serving several players.
    Keyword arguments are passed on to every context (settings, oracle, AI capabilities).
    """

    def __init__(self, store: SessionStore, **context_options: Any) -> None:
        self.store = store
        self.context_options = context_options
        self._contexts: dict[tuple[SessionId, PlayerId], GameSessionContext] = {}

    async def start_session(self, request: StartSessionRequest) -> SessionResponse:
        """First player requested to create a new session."""
        context = await GameSessionContext.start(
            self.store,
            request.player_name,
            request.mode,
            color=request.color,
            difficulty=request.difficulty,
            starting_position=request.starting_fen,
            **self.context_options,
        )
        self._contexts[(context.session.id, request.player_name)] = context
        return SessionResponse.from_session(context.session)

    async def join_session(self, request: JoinSessionRequest) -> SessionResponse:
        """Second player requested to join a PvP session."""
        context = await GameSessionContext.join(
            self.store, request.session_id, request.player_name, **self.context_options
        )
        self._contexts[(request.session_id, request.player_name)] = context
        return SessionResponse.from_session(context.session)

    async def get_session(self, session_id: SessionId, player_name: PlayerId) -> SessionResponse:
        """Current state as seen by this player; pulls from the store first."""
        context = await self._context(session_id, player_name)
        await context.resync()
        return SessionResponse.from_session(context.session)

    async def make_move(self, request: MoveRequest) -> SessionResponse:
        """Make a move attempt. Without a player name, the one context open on the session is used."""
        if request.player_name is None:
            context = self._only_context(request.session_id)
        else:
            context = await self._context(request.session_id, request.player_name)
        session = context.execute_move(
            request.from_square,
            request.to_square,
            request.promote_to.value if request.promote_to else None,
        )
        return SessionResponse.from_session(session)

    async def close(self) -> None:
        for context in self._contexts.values():
            await context.close()
        self._contexts.clear()

    # -- Internal helpers --
    async def _context(self, session_id: SessionId, player_name: PlayerId) -> GameSessionContext:
        """Existing context for the player, or a new one attached to the stored session."""
        key = (session_id, player_name)
        if key not in self._contexts:
            self._contexts[key] = await GameSessionContext.open(
                self.store, session_id, player_name, **self.context_options
            )
        return self._contexts[key]

    def _only_context(self, session_id: SessionId) -> GameSessionContext:
        contexts = [
            context for (sid, _), context in self._contexts.items() if sid == session_id
        ]
        if len(contexts) != 1:
            raise InvalidRequestError(
                f"player_name is required: {len(contexts)} players are connected to session {session_id}."
            )
        return contexts[0]
