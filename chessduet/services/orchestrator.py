"""
Move orchestration: the owner of the authoritative local session document.

A proposed move is validated and applied locally (optimistic, synchronous), then replicated to the
session store by the SessionWriter with the last confirmed version as precondition. The local
document only ever changes through three doors: a committed local move, a committed AI move, or a
remote snapshot adopted by the reconciliation controller.
"""

import asyncio
import logging
from dataclasses import replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from chessduet.ai.capabilities import MoveFeedbackCapability
from chessduet.chess.oracle import AppliedMove, RulesOracle
from chessduet.core.config import SessionSettings
from chessduet.core.events import EventHub, EventType
from chessduet.core.exceptions import (
    AiUnavailableError,
    GameError,
    GameStateError,
    NotYourTurnError,
    PersistenceError,
    SyncConflictError,
    TerminalStateViolation,
)
from chessduet.core.models import GameSession, PlayerId
from chessduet.core.shared_types import GameMode, SessionStatus
from chessduet.db.store import SessionStore
from chessduet.services.outcome import OutcomeDetector

if TYPE_CHECKING:
    from chessduet.services.ai_coordinator import AiMoveCoordinator

logger = logging.getLogger(__name__)

ConflictHandler = Callable[[SyncConflictError], Awaitable[None]]

# Fields pushed to the store on every local commit
REPLICATED_FIELDS = (
    "position",
    "turn",
    "move_history",
    "status",
    "result",
    "termination",
    "last_writer",
)


class OrchestratorState(StrEnum):
    IDLE = "idle"
    SELECTING = "selecting"
    VALIDATING = "validating"
    COMMITTING = "committing"
    RECONCILING = "reconciling"


class SessionWriter:
    """
    Replicates the local document to the store, one conditional write at a time.
    ----
    Each write carries the full replicated document and the last confirmed version. Moves committed
    locally while a write is in flight are folded into the next write. Transport failures are
    retried with exponential backoff; a version conflict is handed over to reconciliation, where
    the newer remote document wins.
    """

    def __init__(
        self,
        orchestrator: "MoveOrchestrator",
        store: SessionStore,
        settings: SessionSettings,
        events: EventHub,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.settings = settings
        self.events = events
        self.pending = False
        self.on_conflict: Optional[ConflictHandler] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def mark_dirty(self) -> None:
        """Local document changed: make sure a write is on its way."""
        self.pending = True
        self.kick()

    def kick(self) -> None:
        if self.pending and not self.busy:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def discard(self) -> None:
        """Local document was replaced by the store's version: nothing left to write."""
        self.pending = False

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def close(self) -> None:
        if self.busy:
            assert self._task is not None
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        attempt = 0
        while self.pending:
            session = self.orchestrator.session
            revision = self.orchestrator.revision
            document = session.to_document()
            changes = {name: document[name] for name in REPLICATED_FIELDS}
            try:
                stored = await self.store.update(session.id, changes, session.version)
            except SyncConflictError as exc:
                logger.warning("Write rejected for session %s: %s", session.id, exc)
                self.pending = False
                if self.on_conflict is not None:
                    await self.on_conflict(exc)
                return
            except PersistenceError as exc:
                if attempt >= self.settings.persistence_max_retries:
                    logger.warning(
                        "Giving up writing session %s after %d retries; local state stands.",
                        session.id,
                        attempt,
                    )
                    self.events.emit(
                        EventType.PERSISTENCE_FAILED, session.id, session.ply, exc.to_dict()
                    )
                    return
                delay = self.settings.backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    "Write for session %s failed (%s). Retry %d in %.2fs",
                    session.id,
                    exc,
                    attempt,
                    delay,
                )
                await asyncio.sleep(delay)
                continue
            except GameError as exc:
                # the store refused the document itself (unknown session, invalid fields)
                logger.error("Store rejected session %s: %s", session.id, exc)
                self.pending = False
                self.events.emit(
                    EventType.PERSISTENCE_FAILED, session.id, session.ply, exc.to_dict()
                )
                return

            attempt = 0
            self.orchestrator.confirm_version(stored.version)
            if self.orchestrator.revision == revision:
                self.pending = False


class MoveOrchestrator:
    """Validates, applies and replicates moves for one session on one client."""

    def __init__(
        self,
        session: GameSession,
        oracle: RulesOracle,
        store: SessionStore,
        detector: OutcomeDetector,
        events: EventHub,
        settings: SessionSettings,
        client_id: str,
        feedback: Optional[MoveFeedbackCapability] = None,
    ) -> None:
        self.session = session
        self.oracle = oracle
        self.detector = detector
        self.events = events
        self.client_id = client_id
        self.feedback = feedback
        self.state = OrchestratorState.IDLE
        # bumped on every local commit; lets the writer know whether it caught up
        self.revision = 0
        self.writer = SessionWriter(self, store, settings, events)
        self.ai_coordinator: Optional["AiMoveCoordinator"] = None
        self._background: set[asyncio.Task[Any]] = set()

    # --- local actor ---
    def select(self, square: str, player_id: Optional[PlayerId] = None) -> set[str]:
        """Legal target squares for the piece on `square`, if the caller may move now."""
        self._check_preconditions(player_id, by_ai=False)
        self.state = OrchestratorState.SELECTING
        return self.oracle.legal_moves(self.session.position, square)

    def execute_move(
        self,
        from_square: str,
        to_square: str,
        promotion: Optional[str] = None,
        player_id: Optional[PlayerId] = None,
    ) -> GameSession:
        """
        Attempt a move for the local actor.
        ----
        Raises TerminalStateViolation, GameStateError, NotYourTurnError or IllegalMoveError
        without touching the session. On success the new document is applied locally right away
        and replication starts in the background. Must be called from the session's event loop.
        """
        position_before = self.session.position
        self.state = OrchestratorState.VALIDATING
        try:
            self._check_preconditions(player_id, by_ai=False)
            applied = self.oracle.apply_move(
                position_before, from_square, to_square, promotion
            )
        except Exception:
            self.state = OrchestratorState.IDLE
            raise

        session = self._commit(applied, by_ai=False)
        if session.mode == GameMode.LEARNING and self.feedback is not None:
            self.spawn(self._request_feedback(position_before, applied.uci))
        return session

    # --- AI actor ---
    def commit_ai_move(self, uci: str) -> GameSession:
        """Same commit path as a human move, for the side played by the AI."""
        self.state = OrchestratorState.VALIDATING
        try:
            self._check_preconditions(None, by_ai=True)
            applied = self.oracle.apply_uci(self.session.position, uci)
        except Exception:
            self.state = OrchestratorState.IDLE
            raise
        return self._commit(applied, by_ai=True)

    def is_ai_turn(self) -> bool:
        session = self.session
        return (
            session.mode == GameMode.AI
            and session.status == SessionStatus.IN_PROGRESS
            and session.turn == session.ai_color
        )

    # --- remote side ---
    def adopt_remote(self, remote: GameSession) -> GameSession:
        """Replace the local document with a newer remote one, atomically."""
        self.state = OrchestratorState.RECONCILING
        if self.writer.pending:
            logger.info(
                "Remote version %d of session %s supersedes unconfirmed local moves",
                remote.version,
                remote.id,
            )
        self.writer.discard()
        if remote.status != SessionStatus.COMPLETE and self.detector.has_terminated(remote.id):
            logger.info(
                "Remote version %d of session %s overturns the local end of the game",
                remote.version,
                remote.id,
            )
            self.detector.reopen(remote.id)
        session = self.detector.evaluate(remote)
        self.session = session
        self.state = OrchestratorState.IDLE
        logger.info("Adopted remote version %d of session %s", session.version, session.id)
        self.events.emit(
            EventType.REMOTE_APPLIED,
            session.id,
            session.ply,
            {"version": session.version, "position": session.position},
        )
        self._after_application()
        return session

    def confirm_version(self, version: int) -> None:
        """The store holds our document at `version`."""
        if version > self.session.version:
            self.session = replace(self.session, version=version)

    def reset(self, session: GameSession) -> None:
        """Start over on a fresh session document (restart or mode switch)."""
        self.writer.discard()
        self.session = session
        self.revision += 1
        self.state = OrchestratorState.IDLE

    @property
    def has_background_work(self) -> bool:
        return bool(self._background)

    async def wait_for_idle(self) -> None:
        while self.writer.busy or self._background:
            await self.writer.wait()
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self.writer.close()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- Internal helpers --
    def _check_preconditions(self, player_id: Optional[PlayerId], by_ai: bool) -> None:
        session = self.session
        if session.status == SessionStatus.COMPLETE:
            raise TerminalStateViolation(
                f"Session {session.id} is complete ({session.result}). No more moves."
            )
        if session.status == SessionStatus.WAITING_FOR_OPPONENT:
            raise GameStateError("Cannot move yet. Waiting for an opponent to join.")

        if by_ai:
            if not self.is_ai_turn():
                raise NotYourTurnError("It is not the AI opponent's turn.")
            return

        if session.mode == GameMode.AI and session.turn == session.ai_color:
            raise NotYourTurnError("It is not your turn. Waiting for the AI opponent.")

        if session.mode == GameMode.LEARNING:
            return

        player_color = session.color_of(player_id) if player_id else None
        if player_color is None:
            raise NotYourTurnError(f"{player_id!r} is not playing in this session.")
        if player_color != session.turn:
            raise NotYourTurnError(
                f"It is not your turn. Waiting for {session.participants.get(session.turn)!r} to move first."
            )

    def _commit(self, applied: AppliedMove, by_ai: bool) -> GameSession:
        self.state = OrchestratorState.COMMITTING
        session = replace(
            self.session,
            position=applied.position,
            turn=self.oracle.side_to_move(applied.position),
            move_history=[*self.session.move_history, applied.san],
            last_writer=self.client_id,
        )
        session = self.detector.evaluate(session)
        self.session = session
        self.revision += 1
        self.state = OrchestratorState.IDLE

        logger.info(
            "Session %s: %s played %s", session.id, "AI" if by_ai else "player", applied.san
        )
        self.events.emit(
            EventType.MOVE_APPLIED,
            session.id,
            session.ply,
            {
                "uci": applied.uci,
                "san": applied.san,
                "by_ai": by_ai,
                "position": session.position,
            },
        )
        self.writer.mark_dirty()
        self._after_application()
        return session

    def _after_application(self) -> None:
        if self.ai_coordinator is not None and self.is_ai_turn():
            self.ai_coordinator.schedule()

    def spawn(self, coroutine: Awaitable[Any]) -> None:
        """Run a best-effort side task tied to this session."""
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _request_feedback(self, position: str, uci: str) -> None:
        """Learning mode: ask the tutor capability about the move just played. Best effort."""
        assert self.feedback is not None
        session_id = self.session.id
        try:
            feedback = await self.feedback.move_feedback(position, uci)
        except AiUnavailableError as exc:
            logger.warning("Move feedback unavailable for %s: %s", uci, exc)
            return
        if self.session.id != session_id:
            return
        self.events.emit(
            EventType.MOVE_FEEDBACK,
            session_id,
            self.session.ply,
            {"move": uci, **feedback.model_dump()},
        )
