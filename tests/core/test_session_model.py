"""Unit tests for chessduet/core/models.py"""

import pytest

from chessduet.core.exceptions import InvalidPositionError
from chessduet.core.models import STARTING_POSITION, GameSession, side_to_move
from chessduet.core.shared_types import (
    Color,
    Difficulty,
    GameMode,
    SessionStatus,
    Termination,
)

FOOLS_MATE = "rnb1kbnr/pppp1ppp/8/4p3/6Pq/5P2/PPPPP2P/RNBQKBNR w KQkq - 1 3"


def make_session(**overrides) -> GameSession:
    fields = dict(
        id="session-1",
        position=STARTING_POSITION,
        turn=Color.WHITE,
        move_history=[],
        participants={Color.WHITE: "alice", Color.BLACK: "bob"},
        mode=GameMode.PVP,
        status=SessionStatus.IN_PROGRESS,
    )
    fields.update(overrides)
    return GameSession(**fields)


# --- SIDE TO MOVE ---
@pytest.mark.parametrize(
    "position, expected",
    [
        (STARTING_POSITION, Color.WHITE),
        ("rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1", Color.BLACK),
    ],
)
def test_side_to_move(position: str, expected: Color) -> None:
    assert side_to_move(position) == expected


@pytest.mark.parametrize("position", ["", "8/8/8/8/8/8/8/8", "8/8/8/8/8/8/8/8 x - - 0 1"])
def test_side_to_move_unreadable(position: str) -> None:
    with pytest.raises(InvalidPositionError):
        side_to_move(position)


def test_turn_must_match_position() -> None:
    with pytest.raises(InvalidPositionError):
        make_session(turn=Color.BLACK)


# --- SEATS ---
def test_players_and_colors() -> None:
    session = make_session()
    assert session.player1_id == "alice"
    assert session.player2_id == "bob"
    assert session.color_of("alice") == Color.WHITE
    assert session.color_of("bob") == Color.BLACK
    assert session.color_of("mallory") is None


def test_single_seat_taken() -> None:
    session = make_session(
        participants={Color.BLACK: "bob"}, status=SessionStatus.WAITING_FOR_OPPONENT
    )
    assert session.player1_id == "bob"
    assert session.player2_id is None
    assert not session.is_complete


def test_ply_counts_history() -> None:
    session = make_session(
        position=FOOLS_MATE, move_history=["f3", "e5", "g4", "Qh4#"]
    )
    assert session.ply == 4


# --- DOCUMENT CONVERSION ---
def test_document_is_plain() -> None:
    session = make_session(
        mode=GameMode.AI,
        ai_color=Color.BLACK,
        difficulty=Difficulty.HARD,
        participants={Color.WHITE: "alice"},
    )
    document = session.to_document()

    assert document["turn"] == "w"
    assert document["participants"] == {"w": "alice"}
    assert document["mode"] == "ai"
    assert document["status"] == "in progress"
    assert document["ai_color"] == "b"
    assert document["difficulty"] == "hard"
    assert document["termination"] is None


def test_document_conversion_keeps_every_field() -> None:
    session = make_session(
        position=FOOLS_MATE,
        move_history=["f3", "e5", "g4", "Qh4#"],
        status=SessionStatus.COMPLETE,
        version=7,
        result="0-1",
        termination=Termination.CHECKMATE,
        last_writer="client-a",
        metadata={"opening": "fool's mate"},
    )
    restored = GameSession.from_document(session.to_document())
    assert restored == session
    assert restored.is_complete


def test_from_document_defaults() -> None:
    """Optional fields may be missing in documents written by older clients."""
    session = GameSession.from_document(
        {
            "id": "session-1",
            "position": STARTING_POSITION,
            "turn": "w",
            "mode": "learning",
            "status": "in progress",
        }
    )
    assert session.move_history == []
    assert session.participants == {}
    assert session.version == 0
    assert session.difficulty == Difficulty.MEDIUM
    assert session.starting_position == STARTING_POSITION


def test_opponent_color() -> None:
    assert Color.WHITE.opponent == Color.BLACK
    assert Color.BLACK.opponent == Color.WHITE
