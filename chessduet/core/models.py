"""
Boundary layer data model(s).

GameSession is the replicated unit of truth. The services mutate it, the stores persist it,
and the API layer converts it into responses. Stores exchange it as a plain document (dict) so
that the persistence layer does not need to know about enums.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from chessduet.core.exceptions import InvalidPositionError
from chessduet.core.shared_types import (
    Color,
    Difficulty,
    GameMode,
    SessionStatus,
    Termination,
)

STARTING_POSITION = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"

# Type aliases to make GameSession easier to read
SessionId = str
PlayerId = str


def side_to_move(position: str) -> Color:
    """Read the active colour field of a FEN string."""
    parts = position.strip().split(" ")
    if len(parts) < 2 or parts[1] not in (Color.WHITE, Color.BLACK):
        raise InvalidPositionError(
            f"Cannot read side-to-move from position: {position!r}"
        )
    return Color(parts[1])


@dataclass
class GameSession:
    """Replicated session document: board position, history, seats and write-ordering version."""

    id: SessionId
    position: str
    turn: Color
    move_history: list[str]
    participants: dict[Color, PlayerId]
    mode: GameMode
    status: SessionStatus
    version: int = 0
    starting_position: str = STARTING_POSITION
    ai_color: Optional[Color] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    result: Optional[str] = None
    termination: Optional[Termination] = None
    last_writer: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.turn != side_to_move(self.position):
            raise InvalidPositionError(
                f"turn {self.turn!r} does not match side-to-move of {self.position!r}"
            )

    @property
    def player1_id(self) -> Optional[PlayerId]:
        """The identity that created the session (first seat filled)."""
        return next(iter(self.participants.values()), None)

    @property
    def player2_id(self) -> Optional[PlayerId]:
        ids = list(self.participants.values())
        return ids[1] if len(ids) > 1 else None

    @property
    def is_complete(self) -> bool:
        return self.status == SessionStatus.COMPLETE

    @property
    def ply(self) -> int:
        return len(self.move_history)

    def color_of(self, player_id: PlayerId) -> Optional[Color]:
        return next(
            (color for color, name in self.participants.items() if name == player_id),
            None,
        )

    def to_document(self) -> dict[str, Any]:
        """Store representation (JSON-compatible)."""
        return {
            "id": self.id,
            "position": self.position,
            "turn": self.turn.value,
            "move_history": list(self.move_history),
            "participants": {
                color.value: player for color, player in self.participants.items()
            },
            "mode": self.mode.value,
            "status": self.status.value,
            "version": self.version,
            "starting_position": self.starting_position,
            "ai_color": self.ai_color.value if self.ai_color else None,
            "difficulty": self.difficulty.value,
            "result": self.result,
            "termination": self.termination.value if self.termination else None,
            "last_writer": self.last_writer,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "GameSession":
        """Build a GameSession from its store representation."""
        ai_color = document.get("ai_color")
        termination = document.get("termination")
        return cls(
            id=str(document["id"]),
            position=document["position"],
            turn=Color(document["turn"]),
            move_history=list(document.get("move_history", [])),
            participants={
                Color(color): player
                for color, player in dict(document.get("participants", {})).items()
            },
            mode=GameMode(document["mode"]),
            status=SessionStatus(document["status"]),
            version=int(document.get("version", 0)),
            starting_position=document.get("starting_position", STARTING_POSITION),
            ai_color=Color(ai_color) if ai_color else None,
            difficulty=Difficulty(document.get("difficulty", Difficulty.MEDIUM)),
            result=document.get("result"),
            termination=Termination(termination) if termination else None,
            last_writer=document.get("last_writer"),
            metadata=dict(document.get("metadata", {})),
        )
