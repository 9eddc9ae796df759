"""Terminal-state and check detection, run after every applied move (local, AI or remote)."""

import logging
from dataclasses import replace
from typing import Optional

from chessduet.chess.oracle import RulesOracle
from chessduet.core.events import EventHub, EventType
from chessduet.core.models import GameSession, SessionId
from chessduet.core.shared_types import SessionStatus

logger = logging.getLogger(__name__)


class OutcomeDetector:
    """
    Judge a session after a move.
    ----
    The terminal event fires once per session id. Check notices are edge-triggered: they fire
    when a position in check is seen for the first time, not on every evaluation of it.
    """

    def __init__(self, oracle: RulesOracle, events: EventHub) -> None:
        self.oracle = oracle
        self.events = events
        self._terminal_sessions: set[SessionId] = set()
        self._check_positions: dict[SessionId, Optional[str]] = {}

    def has_terminated(self, session_id: SessionId) -> bool:
        return session_id in self._terminal_sessions

    def reopen(self, session_id: SessionId) -> None:
        """Forget the end of a game that a newer remote document overturned."""
        self._terminal_sessions.discard(session_id)
        self._check_positions.pop(session_id, None)

    def evaluate(self, session: GameSession) -> GameSession:
        """Return the session, marked COMPLETE if the position is terminal."""
        if session.id in self._terminal_sessions:
            return session

        outcome = self.oracle.outcome(
            session.position, session.move_history, session.starting_position
        )
        if outcome is not None:
            session = replace(
                session,
                status=SessionStatus.COMPLETE,
                result=outcome.result,
                termination=outcome.termination,
            )
        if session.status == SessionStatus.COMPLETE:
            self._mark_terminal(session)
            return session

        if self.oracle.is_check(session.position):
            if self._check_positions.get(session.id) != session.position:
                self._check_positions[session.id] = session.position
                self.events.emit(
                    EventType.CHECK,
                    session.id,
                    session.ply,
                    {"color": session.turn.value, "position": session.position},
                )
        else:
            self._check_positions[session.id] = None
        return session

    def _mark_terminal(self, session: GameSession) -> None:
        self._terminal_sessions.add(session.id)
        logger.info(
            "Session %s complete: %s (%s)",
            session.id,
            session.result,
            session.termination,
        )
        self.events.emit(
            EventType.GAME_OVER,
            session.id,
            session.ply,
            {
                "result": session.result,
                "termination": session.termination.value if session.termination else None,
                "position": session.position,
            },
        )
