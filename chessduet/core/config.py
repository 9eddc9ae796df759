"""Settings for a session context. Values come from keyword arguments or CHESSDUET_* environment variables."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from chessduet.core.exceptions import InvalidRequestError

ENV_PREFIX = "CHESSDUET_"


class SessionSettings(BaseModel):
    database_url: str = "sqlite:///chessduet.db"
    ai_service_url: Optional[str] = None
    ai_timeout_seconds: float = Field(default=10.0, gt=0)

    # persistence retries: delay doubles after every failed attempt, up to the cap
    persistence_max_retries: int = Field(default=5, ge=0)
    persistence_backoff_seconds: float = Field(default=0.5, ge=0)
    persistence_backoff_max_seconds: float = Field(default=8.0, ge=0)

    sync_queue_size: int = Field(default=16, ge=1)
    store_poll_interval_seconds: float = Field(default=1.0, gt=0)
    analyze_on_completion: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SessionSettings":
        """Collect CHESSDUET_<FIELD> variables. Unknown variables are ignored."""
        environ = os.environ if environ is None else environ
        values = {
            name: environ[ENV_PREFIX + name.upper()]
            for name in cls.model_fields
            if ENV_PREFIX + name.upper() in environ
        }
        try:
            return cls(**values)
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid session settings: {exc}") from exc

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(
            self.persistence_backoff_seconds * (2**attempt),
            self.persistence_backoff_max_seconds,
        )
