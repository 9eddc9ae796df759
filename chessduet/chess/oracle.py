"""
Rules oracle adapter.

Move legality, check detection and position encoding are delegated to python-chess. The rest of
the engine only ever sees FEN strings, square names (algebraic, e.g. "e2") and moves in UCI or SAN
notation, so the oracle can be swapped for any implementation of the RulesOracle protocol.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

import chess

from chessduet.core.exceptions import IllegalMoveError, InvalidPositionError
from chessduet.core.models import STARTING_POSITION
from chessduet.core.shared_types import Color, PieceType, Termination

logger = logging.getLogger(__name__)

PROMOTION_PIECES: dict[str, chess.PieceType] = {
    "q": chess.QUEEN,
    "r": chess.ROOK,
    "b": chess.BISHOP,
    "n": chess.KNIGHT,
    PieceType.QUEEN: chess.QUEEN,
    PieceType.ROOK: chess.ROOK,
    PieceType.BISHOP: chess.BISHOP,
    PieceType.KNIGHT: chess.KNIGHT,
}

TERMINATIONS: dict[chess.Termination, Termination] = {
    chess.Termination.CHECKMATE: Termination.CHECKMATE,
    chess.Termination.STALEMATE: Termination.STALEMATE,
    chess.Termination.INSUFFICIENT_MATERIAL: Termination.INSUFFICIENT_MATERIAL,
    chess.Termination.SEVENTYFIVE_MOVES: Termination.SEVENTYFIVE_MOVES,
    chess.Termination.FIVEFOLD_REPETITION: Termination.FIVEFOLD_REPETITION,
    chess.Termination.FIFTY_MOVES: Termination.FIFTY_MOVES,
    chess.Termination.THREEFOLD_REPETITION: Termination.THREEFOLD_REPETITION,
}


@dataclass(frozen=True)
class AppliedMove:
    """Result of a move accepted by the oracle."""

    uci: str
    san: str
    position: str


@dataclass(frozen=True)
class Outcome:
    termination: Termination
    result: str
    winner: Optional[Color]


class RulesOracle(Protocol):
    """Capabilities the session engine consumes from a chess rules implementation."""

    def legal_moves(self, position: str, square: str) -> set[str]:
        """Target squares reachable by the piece on `square`."""
        ...

    def all_legal_moves(self, position: str) -> list[str]:
        """Every legal move of the side to move, in UCI notation."""
        ...

    def apply_move(
        self,
        position: str,
        from_square: str,
        to_square: str,
        promotion: Optional[str] = None,
    ) -> AppliedMove: ...

    def apply_uci(self, position: str, uci: str) -> AppliedMove: ...

    def side_to_move(self, position: str) -> Color: ...

    def is_check(self, position: str) -> bool: ...

    def is_checkmate(self, position: str) -> bool: ...

    def is_draw(self, position: str) -> bool: ...

    def is_game_over(self, position: str) -> bool: ...

    def replay(
        self, move_history: Iterable[str], starting_position: str = STARTING_POSITION
    ) -> str: ...

    def outcome(
        self,
        position: str,
        move_history: Iterable[str] = (),
        starting_position: str = STARTING_POSITION,
    ) -> Optional[Outcome]: ...


class ChessRulesOracle:
    """RulesOracle backed by python-chess."""

    # --- notation ---
    def from_notation(self, position: str) -> chess.Board:
        """Parse a FEN string into a board. Only valid boards (one king per side etc.) are accepted."""
        try:
            board = chess.Board(position)
        except ValueError as exc:
            raise InvalidPositionError(f"Cannot parse position {position!r}: {exc}") from exc
        if not board.is_valid():
            raise InvalidPositionError(
                f"Position {position!r} is not a valid board (status: {board.status()!r})"
            )
        return board

    def to_notation(self, board: chess.Board) -> str:
        return board.fen()

    # --- legal moves ---
    def legal_moves(self, position: str, square: str) -> set[str]:
        board = self.from_notation(position)
        from_square = self._parse_square(square)
        return {
            chess.square_name(move.to_square)
            for move in board.legal_moves
            if move.from_square == from_square
        }

    def all_legal_moves(self, position: str) -> list[str]:
        board = self.from_notation(position)
        return sorted(move.uci() for move in board.legal_moves)

    # --- applying moves ---
    def apply_move(
        self,
        position: str,
        from_square: str,
        to_square: str,
        promotion: Optional[str] = None,
    ) -> AppliedMove:
        """
        Validate and play a move.
        ----
        Moves onto a square occupied by a king are rejected outright. A game ends by checkmate,
        never by removing a king from the board, whatever the underlying board implementation
        would generate for malformed positions.
        """
        board = self.from_notation(position)
        origin = self._parse_square(from_square)
        target = self._parse_square(to_square)
        attempted = f"{from_square}{to_square}{promotion or ''}"

        target_piece = board.piece_at(target)
        if target_piece is not None and target_piece.piece_type == chess.KING:
            raise IllegalMoveError(
                f"Move not allowed: {attempted}. A king can never be captured.",
                move=attempted,
            )

        promotion_piece = self._promotion_piece(board, origin, target, promotion)
        move = chess.Move(origin, target, promotion=promotion_piece)
        if move not in board.legal_moves:
            raise IllegalMoveError(f"Move not allowed: {attempted}", move=attempted)

        san = board.san(move)
        board.push(move)
        return AppliedMove(uci=move.uci(), san=san, position=board.fen())

    def apply_uci(self, position: str, uci: str) -> AppliedMove:
        try:
            move = chess.Move.from_uci(uci.strip().lower())
        except ValueError as exc:
            raise IllegalMoveError(f"Cannot interpret {uci!r} as a move.", move=uci) from exc
        if not move:
            raise IllegalMoveError("Null moves are not allowed.", move=uci)
        promotion = chess.piece_symbol(move.promotion) if move.promotion else None
        return self.apply_move(
            position,
            chess.square_name(move.from_square),
            chess.square_name(move.to_square),
            promotion,
        )

    # --- status queries ---
    def side_to_move(self, position: str) -> Color:
        board = self.from_notation(position)
        return Color.WHITE if board.turn == chess.WHITE else Color.BLACK

    def is_check(self, position: str) -> bool:
        return self.from_notation(position).is_check()

    def is_checkmate(self, position: str) -> bool:
        return self.from_notation(position).is_checkmate()

    def is_draw(self, position: str) -> bool:
        outcome = self.from_notation(position).outcome(claim_draw=True)
        return outcome is not None and outcome.winner is None

    def is_game_over(self, position: str) -> bool:
        return self.from_notation(position).is_game_over(claim_draw=True)

    # --- history ---
    def replay(
        self, move_history: Iterable[str], starting_position: str = STARTING_POSITION
    ) -> str:
        """Replay SAN moves from the starting position and return the resulting position."""
        return self._replay_board(move_history, starting_position).fen()

    def outcome(
        self,
        position: str,
        move_history: Iterable[str] = (),
        starting_position: str = STARTING_POSITION,
    ) -> Optional[Outcome]:
        """
        Terminal status of a position, or None while the game goes on.

        With a move history the board is rebuilt move by move, so that repetition draws can be
        detected. A history that does not lead to `position` is ignored.
        """
        board = self.from_notation(position)
        move_history = list(move_history)
        if move_history:
            try:
                replayed = self._replay_board(move_history, starting_position)
            except (IllegalMoveError, InvalidPositionError):
                logger.warning("Move history does not replay; judging the position alone.")
            else:
                if replayed.fen() == board.fen():
                    board = replayed

        outcome = board.outcome(claim_draw=True)
        if outcome is None:
            return None
        winner = None
        if outcome.winner is not None:
            winner = Color.WHITE if outcome.winner == chess.WHITE else Color.BLACK
        return Outcome(
            termination=TERMINATIONS[outcome.termination],
            result=outcome.result(),
            winner=winner,
        )

    # --- private helpers ---
    def _replay_board(
        self, move_history: Iterable[str], starting_position: str
    ) -> chess.Board:
        board = self.from_notation(starting_position)
        for san in move_history:
            try:
                board.push_san(san)
            except ValueError as exc:
                raise IllegalMoveError(
                    f"Cannot replay {san!r} at {board.fen()!r}", move=san
                ) from exc
        return board

    def _parse_square(self, square: str) -> chess.Square:
        try:
            return chess.parse_square(square.strip().lower())
        except ValueError as exc:
            raise IllegalMoveError(
                f"Cannot interpret {square!r} as a valid square name."
            ) from exc

    def _promotion_piece(
        self,
        board: chess.Board,
        origin: chess.Square,
        target: chess.Square,
        promotion: Optional[str],
    ) -> Optional[chess.PieceType]:
        """Promotion piece for the move. A pawn reaching the last rank without a choice becomes a queen."""
        if promotion:
            key = promotion.strip().lower()
            if key not in PROMOTION_PIECES:
                raise IllegalMoveError(f"Cannot promote to {promotion!r}.")
            return PROMOTION_PIECES[key]

        piece = board.piece_at(origin)
        if (
            piece is not None
            and piece.piece_type == chess.PAWN
            and chess.square_rank(target) in (0, 7)
        ):
            return chess.QUEEN
        return None
