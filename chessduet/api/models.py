"""Requests and Response models, including the payloads exchanged with the AI capabilities"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chessduet.core.exceptions import InvalidRequestError
from chessduet.core.models import GameSession
from chessduet.core.shared_types import Color, Difficulty, GameMode, PieceType

PlayerName = str

UCI_PATTERN = re.compile(r"\b([a-h][1-8][a-h][1-8][qrbn]?)\b")


def _is_algebraic_notation(value: str) -> bool:
    if len(value) != 2:
        return False
    file, rank = value[0], value[1]
    return file.isalpha() and rank.isnumeric()


# --- REQUEST MODELS ---
class StartSessionRequest(BaseModel):
    player_name: str
    mode: GameMode
    color: Color = Color.WHITE
    difficulty: Difficulty = Difficulty.MEDIUM
    starting_fen: Optional[str] = None

    @field_validator("starting_fen")
    @classmethod
    def validate_starting_fen(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value

        parts = value.strip().split(" ")
        if len(parts) != 6:
            raise InvalidRequestError(
                "FEN string must contain 6 space-separated parts."
            )
        return value.strip()


class JoinSessionRequest(BaseModel):
    session_id: str
    player_name: str


class MoveRequest(BaseModel):
    session_id: str
    player_name: Optional[str] = None
    from_square: str
    to_square: str
    promote_to: Optional[PieceType] = None

    @field_validator(*["from_square", "to_square"])
    @classmethod
    def validate_square(cls, value: str) -> str:
        if not _is_algebraic_notation(value):
            raise InvalidRequestError(
                f"Cannot interpret {value!r} as a valid square name."
            )
        return value.lower()


# --- RESPONSE MODELS ---
class SessionResponse(BaseModel):
    session_id: str
    players: dict[Color, PlayerName]
    mode: GameMode
    status: str
    fen_state: str
    starting_state: str
    turn: Color
    move_history: list[str]
    version: int
    result: Optional[str] = None

    @classmethod
    def from_session(cls, session: GameSession) -> "SessionResponse":
        return cls(
            session_id=session.id,
            players=dict(session.participants),
            mode=session.mode,
            status=session.status.value,
            fen_state=session.position,
            starting_state=session.starting_position,
            turn=session.turn,
            move_history=list(session.move_history),
            version=session.version,
            result=session.result,
        )


# --- AI CAPABILITY PAYLOADS ---
class AiMoveRequest(BaseModel):
    position: str
    difficulty: Difficulty


class AiMoveResponse(BaseModel):
    """
    Move proposed by the AI capability.
    ----
    Generated text is often wrapped in quotes or followed by an explanation. The first token that
    looks like a UCI move is kept; anything without one is rejected as malformed.
    """

    move: str

    @field_validator("move")
    @classmethod
    def sanitize_move(cls, value: str) -> str:
        match = UCI_PATTERN.search(value.strip().lower())
        if match is None:
            raise ValueError(f"No UCI move found in {value!r}")
        return match.group(1)


class GameAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    strengths: str
    weaknesses: str
    overall_assessment: str = Field(alias="overallAssessment")


class MoveFeedback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_legal_move: bool = Field(alias="isLegalMove")
    feedback: str
