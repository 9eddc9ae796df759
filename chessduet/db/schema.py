"""Database tables / schema"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class DBSession(Base):
    __tablename__ = "sessions"
    id: Mapped[str] = mapped_column(primary_key=True)
    position: Mapped[str]
    turn: Mapped[str]
    move_history: Mapped[list[str]] = mapped_column(JSON, default=list)
    participants: Mapped[dict[str, str]] = mapped_column(JSON, default=dict)
    mode: Mapped[str]
    status: Mapped[str]
    version: Mapped[int] = mapped_column(default=1)
    starting_position: Mapped[str]
    ai_color: Mapped[Optional[str]]
    difficulty: Mapped[str]
    result: Mapped[Optional[str]]
    termination: Mapped[Optional[str]]
    last_writer: Mapped[Optional[str]]
    # "metadata" is reserved on declarative classes
    session_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)
