"""
Type definitions used across layers
"""

from enum import StrEnum


class Color(StrEnum):
    """Side-to-move, encoded the same way as the second FEN field."""

    WHITE = "w"
    BLACK = "b"

    @property
    def opponent(self) -> "Color":
        return Color.BLACK if self == Color.WHITE else Color.WHITE


class GameMode(StrEnum):
    AI = "ai"
    PVP = "pvp"
    LEARNING = "learning"


class SessionStatus(StrEnum):
    WAITING_FOR_OPPONENT = "waiting for opponent"
    IN_PROGRESS = "in progress"
    COMPLETE = "complete"


class Termination(StrEnum):
    CHECKMATE = "checkmate"
    STALEMATE = "stalemate"
    INSUFFICIENT_MATERIAL = "insufficient material"
    SEVENTYFIVE_MOVES = "draw by 75 moves"
    FIVEFOLD_REPETITION = "draw by fivefold repetition"
    FIFTY_MOVES = "draw by 50 moves"
    THREEFOLD_REPETITION = "draw by repetition"


class Difficulty(StrEnum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class PieceType(StrEnum):
    KNIGHT = "knight"
    BISHOP = "bishop"
    ROOK = "rook"
    QUEEN = "queen"
