"""AI opponent turns: ask the move capability, validate its answer, fall back to a legal move when it fails."""

import asyncio
import hashlib
import logging
from typing import Optional

from pydantic import ValidationError

from chessduet.ai.capabilities import AiMoveCapability
from chessduet.chess.oracle import RulesOracle
from chessduet.core.config import SessionSettings
from chessduet.core.events import EventHub, EventType
from chessduet.core.exceptions import AiUnavailableError, GameError
from chessduet.core.models import GameSession
from chessduet.core.shared_types import Difficulty
from chessduet.services.orchestrator import MoveOrchestrator

logger = logging.getLogger(__name__)


def fallback_move(position: str, legal_moves: list[str]) -> str:
    """Pick a legal move deterministically: the same position always yields the same move."""
    if not legal_moves:
        raise GameError(f"No legal moves in {position!r}")
    digest = hashlib.sha256(position.encode("utf-8")).digest()
    index = int.from_bytes(digest[:8], byteorder="big", signed=False) % len(legal_moves)
    return sorted(legal_moves)[index]


class AiMoveCoordinator:
    """
    Drives the AI side of a session.
    ----
    At most one request is in flight per session. Every restart, mode switch or teardown bumps the
    epoch; a response is only applied if the epoch and the position it was computed for are still
    current, so late answers are dropped.
    """

    def __init__(
        self,
        orchestrator: MoveOrchestrator,
        oracle: RulesOracle,
        capability: Optional[AiMoveCapability],
        events: EventHub,
        settings: SessionSettings,
    ) -> None:
        self.orchestrator = orchestrator
        self.oracle = oracle
        self.capability = capability
        self.events = events
        self.timeout = settings.ai_timeout_seconds
        self.epoch = 0
        self._task: Optional[asyncio.Task[Optional[GameSession]]] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> Optional[asyncio.Task[Optional[GameSession]]]:
        """Start the AI turn if it is due and not already running."""
        if self.in_flight:
            return self._task
        if not self.orchestrator.is_ai_turn():
            return None
        session = self.orchestrator.session
        self._task = asyncio.get_running_loop().create_task(
            self.request_ai_move(session.position, session.difficulty, self.epoch)
        )
        return self._task

    def invalidate(self) -> None:
        """Forget any in-flight request; its result will never be applied."""
        self.epoch += 1
        if self.in_flight:
            assert self._task is not None
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def request_ai_move(
        self, position: str, difficulty: Difficulty, epoch: int
    ) -> Optional[GameSession]:
        """Obtain a move for `position` and commit it, unless the session moved on meanwhile."""
        if not self.orchestrator.is_ai_turn():
            return None
        legal_moves = self.oracle.all_legal_moves(position)
        move, error = await self._obtain_move(position, difficulty, legal_moves)

        if epoch != self.epoch or self.orchestrator.session.position != position:
            logger.debug("Discarding AI move %s computed for a stale position", move)
            if epoch == self.epoch and self._task is asyncio.current_task():
                # still this epoch: ask again for the position we are at now
                self._task = None
                self.schedule()
            return None

        if error is not None:
            logger.warning("%s. Playing fallback move %s", error, move)
            self.events.emit(
                EventType.AI_UNAVAILABLE,
                self.orchestrator.session.id,
                self.orchestrator.session.ply,
                {**error.to_dict(), "fallback_move": move},
            )
        return self.orchestrator.commit_ai_move(move)

    async def _obtain_move(
        self, position: str, difficulty: Difficulty, legal_moves: list[str]
    ) -> tuple[str, Optional[AiUnavailableError]]:
        if self.capability is None:
            error = AiUnavailableError(
                AiUnavailableError.UNAVAILABLE, "no AI move capability configured"
            )
            return fallback_move(position, legal_moves), error

        try:
            response = await asyncio.wait_for(
                self.capability.request_move(position, difficulty), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            error = AiUnavailableError(
                AiUnavailableError.TIMEOUT, f"no answer within {self.timeout}s"
            )
        except AiUnavailableError as exc:
            error = exc
        except ValidationError as exc:
            error = AiUnavailableError(AiUnavailableError.MALFORMED, str(exc))
        except Exception as exc:
            # any failure of the capability must end in a playable move
            logger.warning("AI move capability failed", exc_info=True)
            error = AiUnavailableError(AiUnavailableError.UNAVAILABLE, repr(exc))
        else:
            move = self._match_legal(response.move, legal_moves)
            if move is not None:
                return move, None
            error = AiUnavailableError(
                AiUnavailableError.ILLEGAL, f"{response.move!r} is not a legal move"
            )
        return fallback_move(position, legal_moves), error

    def _match_legal(self, move: str, legal_moves: list[str]) -> Optional[str]:
        """The move as listed by the oracle. A promotion without a piece letter is read as a queen."""
        move = move.strip().lower()
        if move in legal_moves:
            return move
        if move + "q" in legal_moves:
            return move + "q"
        return None
