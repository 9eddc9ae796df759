"""Exceptions raised by the session engine. Everything derives from GameError so callers can catch one type."""

from typing import Any, Optional


class GameError(Exception):
    """Base class for all session engine errors."""

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable error payload."""
        return {"type": self.__class__.__name__, "message": str(self)}


# --- Rejections of the acting user's own action ---
class IllegalMoveError(GameError):
    """The rules oracle rejected the move. No state was mutated."""

    def __init__(self, message: str, move: Optional[str] = None) -> None:
        self.move = move
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.move is not None:
            payload["move"] = self.move
        return payload


class NotYourTurnError(IllegalMoveError):
    """The acting side or identity does not own the side-to-move."""


class TerminalStateViolation(GameError):
    """A move was attempted after the session completed."""


class GameStateError(GameError):
    """Operation not allowed in the current lifecycle state of the session."""


class InvalidPositionError(GameError):
    """Position notation cannot be parsed or does not describe a valid board."""


class InvalidRequestError(GameError):
    """Malformed request payload or settings value."""


class SessionNotFoundError(GameError):
    """No session document with the requested id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session with {session_id=} not found.")


# --- Recovered failures of external collaborators ---
class AiUnavailableError(GameError):
    """The AI move capability could not provide a usable move. Play continues with a fallback."""

    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    MALFORMED = "malformed"
    ILLEGAL = "illegal"

    def __init__(self, reason: str, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = f"AI opponent unavailable ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class PersistenceError(GameError):
    """The session store could not be reached or failed to commit."""


class SyncConflictError(GameError):
    """A conditional write found the stored document at a different version."""

    def __init__(
        self, session_id: str, expected_version: int, actual_version: Optional[int]
    ) -> None:
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version mismatch for session {session_id}: expected {expected_version}, found {actual_version}."
        )

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "session_id": self.session_id,
                "expected_version": self.expected_version,
                "actual_version": self.actual_version,
            }
        )
        return payload
