"""Session event schema. Events are fire-and-forget notices for whoever renders the session."""

import logging
from dataclasses import dataclass
from enum import StrEnum
from time import time
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    MOVE_APPLIED = "move_applied"
    REMOTE_APPLIED = "remote_applied"
    CHECK = "check"
    GAME_OVER = "game_over"
    AI_UNAVAILABLE = "ai_unavailable"
    SYNC_CONFLICT = "sync_conflict"
    PERSISTENCE_FAILED = "persistence_failed"
    MOVE_FEEDBACK = "move_feedback"
    GAME_ANALYSIS = "game_analysis"


@dataclass(frozen=True)
class SessionEvent:
    """Single notice emitted while a session is running."""

    event_type: EventType
    session_id: str
    ply: int
    timestamp_ms: int
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "ply": self.ply,
            "timestamp_ms": self.timestamp_ms,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionEvent":
        return cls(
            event_type=EventType(str(data["event_type"])),
            session_id=str(data["session_id"]),
            ply=int(data["ply"]),
            timestamp_ms=int(data["timestamp_ms"]),
            payload=dict(data.get("payload", {})),
        )

    @classmethod
    def create(
        cls, event_type: EventType, session_id: str, ply: int, payload: dict[str, Any]
    ) -> "SessionEvent":
        """Construct an event stamped with the current wall-clock time."""
        return cls(
            event_type=event_type,
            session_id=session_id,
            ply=ply,
            timestamp_ms=int(time() * 1000),
            payload=payload,
        )


EventListener = Callable[[SessionEvent], None]


class EventHub:
    """Fans session events out to registered listeners. A failing listener never affects play."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(
        self,
        event_type: EventType,
        session_id: str,
        ply: int,
        payload: dict[str, Any] | None = None,
    ) -> SessionEvent:
        event = SessionEvent.create(event_type, session_id, ply, payload or {})
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s event", event_type.value)
        return event
