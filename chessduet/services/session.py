"""
Session-scoped context: everything one client needs to play one session.

The context is built when a session is started, opened or joined, and torn down with close(). It
owns the store handle, the rules oracle, the AI capabilities and the event hub, and hands them
explicitly to the orchestrator, the AI coordinator, the reconciliation controller and the outcome
detector.
"""

import logging
from typing import Any, Optional
from uuid import uuid4

from chessduet.ai.capabilities import (
    AiAnalysisCapability,
    AiMoveCapability,
    HttpAiCapability,
    MoveFeedbackCapability,
    format_move_history,
)
from chessduet.api.models import GameAnalysis
from chessduet.chess.oracle import ChessRulesOracle, RulesOracle
from chessduet.core.config import SessionSettings
from chessduet.core.events import EventHub, EventListener, EventType, SessionEvent
from chessduet.core.exceptions import (
    AiUnavailableError,
    GameStateError,
    SessionNotFoundError,
    SyncConflictError,
)
from chessduet.core.models import STARTING_POSITION, GameSession, PlayerId, SessionId
from chessduet.core.shared_types import Color, Difficulty, GameMode, SessionStatus
from chessduet.db.store import SessionStore
from chessduet.services.ai_coordinator import AiMoveCoordinator
from chessduet.services.orchestrator import MoveOrchestrator, OrchestratorState
from chessduet.services.outcome import OutcomeDetector
from chessduet.services.reconciliation import ReconciliationController

logger = logging.getLogger(__name__)


class GameSessionContext:
    """One client's handle on one game session."""

    def __init__(
        self,
        store: SessionStore,
        player_id: PlayerId,
        oracle: Optional[RulesOracle] = None,
        settings: Optional[SessionSettings] = None,
        ai_moves: Optional[AiMoveCapability] = None,
        analysis: Optional[AiAnalysisCapability] = None,
        feedback: Optional[MoveFeedbackCapability] = None,
        client_id: Optional[str] = None,
    ) -> None:
        self.store = store
        self.player_id = player_id
        self.oracle = oracle or ChessRulesOracle()
        self.settings = settings or SessionSettings()
        self.client_id = client_id or uuid4().hex
        self.events = EventHub()

        self._http_ai: Optional[HttpAiCapability] = None
        if self.settings.ai_service_url and not (ai_moves or analysis or feedback):
            self._http_ai = HttpAiCapability(
                self.settings.ai_service_url, self.settings.ai_timeout_seconds
            )
            ai_moves = analysis = feedback = self._http_ai
        self.ai_moves = ai_moves
        self.analysis = analysis
        self.feedback = feedback

        self._orchestrator: Optional[MoveOrchestrator] = None
        self._coordinator: Optional[AiMoveCoordinator] = None
        self._controller: Optional[ReconciliationController] = None
        self._closed = False

        if self.settings.analyze_on_completion:
            self.events.add_listener(self._analyze_when_complete)

    # --- construction ---
    @classmethod
    async def start(
        cls,
        store: SessionStore,
        player_id: PlayerId,
        mode: GameMode,
        color: Color = Color.WHITE,
        difficulty: Difficulty = Difficulty.MEDIUM,
        starting_position: Optional[str] = None,
        **kwargs: Any,
    ) -> "GameSessionContext":
        """
        Create a new session and attach to it.
        ----
        PvP sessions wait for a second player to join. AI and Learning sessions start right away;
        in AI mode the AI plays the colour the player did not pick (and moves first if that is white).
        """
        context = cls(store, player_id, **kwargs)
        session = context._new_session(mode, color, difficulty, starting_position)
        stored = await store.create(session)
        logger.info("Started %s session %s for %s", mode.value, stored.id, player_id)
        context._attach(stored)
        return context

    @classmethod
    async def open(
        cls, store: SessionStore, session_id: SessionId, player_id: PlayerId, **kwargs: Any
    ) -> "GameSessionContext":
        """Attach to an existing session (e.g. after a reload)."""
        session = await store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        context = cls(store, player_id, **kwargs)
        context._attach(session)
        return context

    @classmethod
    async def join(
        cls, store: SessionStore, session_id: SessionId, player_id: PlayerId, **kwargs: Any
    ) -> "GameSessionContext":
        """Take the free seat of a PvP session waiting for an opponent."""
        context = cls(store, player_id, **kwargs)
        while True:
            session = await store.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.mode != GameMode.PVP:
                raise GameStateError(f"Cannot join a {session.mode.value} session.")
            if session.color_of(player_id) is not None:
                break
            if session.status != SessionStatus.WAITING_FOR_OPPONENT:
                raise GameStateError(
                    f"Cannot join this session. Not accepting new players. status: {session.status}"
                )
            free_color = next(
                color for color in (Color.WHITE, Color.BLACK) if color not in session.participants
            )
            participants = {color.value: name for color, name in session.participants.items()}
            participants[free_color.value] = player_id
            try:
                session = await store.update(
                    session_id,
                    {
                        "participants": participants,
                        "status": SessionStatus.IN_PROGRESS.value,
                        "last_writer": context.client_id,
                    },
                    session.version,
                )
            except SyncConflictError:
                logger.info("Session %s changed while joining, retrying", session_id)
                continue
            logger.info("%s joined session %s as %s", player_id, session_id, free_color.name.lower())
            break

        context._attach(session)
        return context

    # --- state ---
    @property
    def session(self) -> GameSession:
        return self._require_orchestrator().session

    @property
    def state(self) -> OrchestratorState:
        return self._require_orchestrator().state

    @property
    def ai_thinking(self) -> bool:
        return self._coordinator is not None and self._coordinator.in_flight

    def add_listener(self, listener: EventListener) -> None:
        self.events.add_listener(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self.events.remove_listener(listener)

    # --- playing ---
    def select(self, square: str) -> set[str]:
        return self._require_orchestrator().select(square, self.player_id)

    def execute_move(
        self, from_square: str, to_square: str, promotion: Optional[str] = None
    ) -> GameSession:
        return self._require_orchestrator().execute_move(
            from_square, to_square, promotion, self.player_id
        )

    async def on_visibility_change(self, visible: bool) -> None:
        await self._require_controller().on_visibility_change(visible)

    async def resync(self) -> bool:
        return await self._require_controller().resync()

    async def restart(
        self, mode: Optional[GameMode] = None, difficulty: Optional[Difficulty] = None
    ) -> GameSession:
        """
        Abandon the current game and start a fresh session document, by default with the same
        mode and difficulty. Any in-flight AI request is invalidated and its answer discarded.
        """
        orchestrator = self._require_orchestrator()
        coordinator = self._require_coordinator()
        current = orchestrator.session
        coordinator.invalidate()
        await orchestrator.writer.close()

        color = current.color_of(self.player_id) or Color.WHITE
        session = self._new_session(
            mode or current.mode,
            color,
            difficulty or current.difficulty,
            current.starting_position,
        )
        stored = await self.store.create(session)
        logger.info("Session %s restarted as %s", current.id, stored.id)

        orchestrator.reset(orchestrator.detector.evaluate(stored))
        self._require_controller().restart()
        coordinator.schedule()
        return orchestrator.session

    async def switch_mode(
        self, mode: GameMode, difficulty: Optional[Difficulty] = None
    ) -> GameSession:
        """Change game mode (and AI difficulty). Starts a new game."""
        return await self.restart(mode, difficulty)

    async def request_analysis(self) -> Optional[GameAnalysis]:
        """Post-game analysis of the move history. Best effort: None when unavailable."""
        if self.analysis is None:
            return None
        session = self.session
        try:
            analysis = await self.analysis.analyze_game(
                format_move_history(session.move_history)
            )
        except AiUnavailableError as exc:
            logger.warning("Game analysis unavailable for session %s: %s", session.id, exc)
            return None
        self.events.emit(
            EventType.GAME_ANALYSIS, session.id, session.ply, analysis.model_dump()
        )
        return analysis

    async def wait_for_idle(self) -> None:
        """Wait until no write, AI request, remote snapshot or background call is pending."""
        orchestrator = self._require_orchestrator()
        coordinator = self._require_coordinator()
        controller = self._require_controller()
        while True:
            await controller.drain()
            await coordinator.wait()
            await orchestrator.wait_for_idle()
            if not (
                coordinator.in_flight
                or orchestrator.writer.busy
                or orchestrator.has_background_work
                or controller.has_queued
            ):
                return

    async def close(self) -> None:
        """Tear the session down. Late AI answers and queued pushes are dropped."""
        if self._closed:
            return
        self._closed = True
        if self._coordinator is not None:
            self._coordinator.invalidate()
        if self._controller is not None:
            await self._controller.stop()
        if self._orchestrator is not None:
            await self._orchestrator.close()
        if self._http_ai is not None:
            await self._http_ai.aclose()

    async def __aenter__(self) -> "GameSessionContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- Internal helpers --
    def _new_session(
        self,
        mode: GameMode,
        color: Color,
        difficulty: Difficulty,
        starting_position: Optional[str],
    ) -> GameSession:
        position = self.oracle.replay([], starting_position or STARTING_POSITION)
        return GameSession(
            id=uuid4().hex,
            position=position,
            turn=self.oracle.side_to_move(position),
            move_history=[],
            participants={color: self.player_id},
            mode=mode,
            status=(
                SessionStatus.WAITING_FOR_OPPONENT
                if mode == GameMode.PVP
                else SessionStatus.IN_PROGRESS
            ),
            starting_position=position,
            ai_color=color.opponent if mode == GameMode.AI else None,
            difficulty=difficulty,
            last_writer=self.client_id,
        )

    def _attach(self, session: GameSession) -> None:
        detector = OutcomeDetector(self.oracle, self.events)
        orchestrator = MoveOrchestrator(
            detector.evaluate(session),
            self.oracle,
            self.store,
            detector,
            self.events,
            self.settings,
            self.client_id,
            feedback=self.feedback,
        )
        coordinator = AiMoveCoordinator(
            orchestrator, self.oracle, self.ai_moves, self.events, self.settings
        )
        controller = ReconciliationController(
            orchestrator, self.store, self.events, self.settings
        )
        orchestrator.ai_coordinator = coordinator
        orchestrator.writer.on_conflict = controller.handle_conflict
        self._orchestrator = orchestrator
        self._coordinator = coordinator
        self._controller = controller

        controller.start()
        coordinator.schedule()

    def _analyze_when_complete(self, event: SessionEvent) -> None:
        if event.event_type == EventType.GAME_OVER and self._orchestrator is not None:
            self._orchestrator.spawn(self.request_analysis())

    def _require_orchestrator(self) -> MoveOrchestrator:
        if self._orchestrator is None or self._closed:
            raise GameStateError("No active session in this context.")
        return self._orchestrator

    def _require_coordinator(self) -> AiMoveCoordinator:
        self._require_orchestrator()
        assert self._coordinator is not None
        return self._coordinator

    def _require_controller(self) -> ReconciliationController:
        self._require_orchestrator()
        assert self._controller is not None
        return self._controller
