"""Unit tests for chessduet/services/outcome.py"""

import pytest

from chessduet.chess.oracle import ChessRulesOracle
from chessduet.core.events import EventHub, EventType
from chessduet.core.models import STARTING_POSITION, GameSession
from chessduet.core.shared_types import Color, GameMode, SessionStatus, Termination
from chessduet.services.outcome import OutcomeDetector
from conftest import EventRecorder

FOOLS_MATE = "rnb1kbnr/pppp1ppp/8/4p3/6Pq/5P2/PPPPP2P/RNBQKBNR w KQkq - 1 3"
BLACK_IN_CHECK = "rnbqkbnr/ppppp1pp/5p2/7Q/4P3/8/PPPP1PPP/RNB1KBNR b KQkq - 1 2"
BLACK_BLOCKED_CHECK = "rnbqkbnr/ppppp2p/5pp1/7Q/4P3/8/PPPP1PPP/RNB1KBNR w KQkq - 0 3"
STALEMATE = "7k/5Q2/6K1/8/8/8/8/8 b - - 0 1"


def make_session(position: str, turn: Color, **overrides) -> GameSession:
    fields = dict(
        id="session-1",
        position=position,
        turn=turn,
        move_history=[],
        participants={},
        mode=GameMode.LEARNING,
        status=SessionStatus.IN_PROGRESS,
        starting_position=position,
    )
    fields.update(overrides)
    return GameSession(**fields)


@pytest.fixture
def detector(recorder: EventRecorder) -> OutcomeDetector:
    events = EventHub()
    events.add_listener(recorder)
    return OutcomeDetector(ChessRulesOracle(), events)


# --- TERMINAL STATES ---
def test_ongoing_game_is_left_alone(
    detector: OutcomeDetector, recorder: EventRecorder
) -> None:
    session = make_session(STARTING_POSITION, Color.WHITE)
    assert detector.evaluate(session) == session
    assert recorder.events == []
    assert not detector.has_terminated("session-1")


def test_checkmate_completes_session_once(
    detector: OutcomeDetector, recorder: EventRecorder
) -> None:
    session = make_session(
        FOOLS_MATE,
        Color.WHITE,
        move_history=["f3", "e5", "g4", "Qh4#"],
        starting_position=STARTING_POSITION,
    )
    judged = detector.evaluate(session)

    assert judged.status == SessionStatus.COMPLETE
    assert judged.result == "0-1"
    assert judged.termination == Termination.CHECKMATE
    assert detector.has_terminated("session-1")

    # evaluating again (e.g. the same document coming back from the store) changes nothing
    assert detector.evaluate(judged) == judged
    game_over = recorder.of_type(EventType.GAME_OVER)
    assert len(game_over) == 1
    assert game_over[0].payload == {
        "result": "0-1",
        "termination": "checkmate",
        "position": FOOLS_MATE,
    }
    assert game_over[0].ply == 4
    # the mate itself is not reported as a plain check
    assert recorder.of_type(EventType.CHECK) == []


def test_reopened_session_is_judged_again(
    detector: OutcomeDetector, recorder: EventRecorder
) -> None:
    detector.evaluate(make_session(STALEMATE, Color.BLACK))
    assert detector.has_terminated("session-1")

    detector.reopen("session-1")
    assert not detector.has_terminated("session-1")
    judged = detector.evaluate(make_session(BLACK_IN_CHECK, Color.BLACK))
    assert judged.status == SessionStatus.IN_PROGRESS
    assert len(recorder.of_type(EventType.CHECK)) == 1


def test_stalemate_is_a_draw(detector: OutcomeDetector, recorder: EventRecorder) -> None:
    judged = detector.evaluate(make_session(STALEMATE, Color.BLACK))
    assert judged.status == SessionStatus.COMPLETE
    assert judged.result == "1/2-1/2"
    assert judged.termination == Termination.STALEMATE
    assert len(recorder.of_type(EventType.GAME_OVER)) == 1


def test_repetition_is_a_draw(detector: OutcomeDetector) -> None:
    history = ["Nf3", "Nf6", "Ng1", "Ng8"] * 2
    position = ChessRulesOracle().replay(history)
    session = make_session(
        position, Color.WHITE, move_history=history, starting_position=STARTING_POSITION
    )
    judged = detector.evaluate(session)
    assert judged.termination == Termination.THREEFOLD_REPETITION


def test_completed_document_from_store_is_announced(
    detector: OutcomeDetector, recorder: EventRecorder
) -> None:
    """A document another client already marked complete still ends the game here."""
    session = make_session(
        FOOLS_MATE,
        Color.WHITE,
        status=SessionStatus.COMPLETE,
        result="0-1",
        termination=Termination.CHECKMATE,
    )
    assert detector.evaluate(session) == session
    assert detector.has_terminated("session-1")
    assert len(recorder.of_type(EventType.GAME_OVER)) == 1


# --- CHECK NOTICES ---
def test_check_notice_is_edge_triggered(
    detector: OutcomeDetector, recorder: EventRecorder
) -> None:
    in_check = make_session(BLACK_IN_CHECK, Color.BLACK)
    detector.evaluate(in_check)
    detector.evaluate(in_check)

    checks = recorder.of_type(EventType.CHECK)
    assert len(checks) == 1
    assert checks[0].payload == {"color": "b", "position": BLACK_IN_CHECK}

    # out of check, then in check again: a new notice
    detector.evaluate(make_session(BLACK_BLOCKED_CHECK, Color.WHITE))
    detector.evaluate(in_check)
    assert len(recorder.of_type(EventType.CHECK)) == 2
