"""
External AI capabilities: move generation for the AI opponent, move feedback in learning mode and
post-game analysis. The engine only depends on the protocols; HttpAiCapability talks to a JSON
service exposing all three.
"""

import logging
from typing import Any, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from chessduet.api.models import AiMoveRequest, AiMoveResponse, GameAnalysis, MoveFeedback
from chessduet.core.exceptions import AiUnavailableError
from chessduet.core.shared_types import Difficulty

logger = logging.getLogger(__name__)


class AiMoveCapability(Protocol):
    async def request_move(self, position: str, difficulty: Difficulty) -> AiMoveResponse:
        """Propose a move (UCI) for the side to move in `position`."""
        ...


class AiAnalysisCapability(Protocol):
    async def analyze_game(self, move_history: str) -> GameAnalysis: ...


class MoveFeedbackCapability(Protocol):
    async def move_feedback(self, position: str, move: str) -> MoveFeedback: ...


def format_move_history(moves: Sequence[str]) -> str:
    """Numbered move list, e.g. '1. e4 e5 2. Nf3'."""
    pairs = []
    for index in range(0, len(moves), 2):
        pair = " ".join(moves[index : index + 2])
        pairs.append(f"{index // 2 + 1}. {pair}")
    return " ".join(pairs)


class HttpAiCapability:
    """All three capabilities over HTTP: POST /move, /analysis and /feedback."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)

    async def request_move(self, position: str, difficulty: Difficulty) -> AiMoveResponse:
        payload = AiMoveRequest(position=position, difficulty=difficulty)
        data = await self._post("/move", payload.model_dump(mode="json"))
        return self._parse(AiMoveResponse, data)

    async def analyze_game(self, move_history: str) -> GameAnalysis:
        data = await self._post("/analysis", {"moveHistory": move_history})
        return self._parse(GameAnalysis, data)

    async def move_feedback(self, position: str, move: str) -> MoveFeedback:
        data = await self._post("/feedback", {"position": position, "move": move})
        return self._parse(MoveFeedback, data)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # -- Internal helpers --
    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        """POST a JSON payload and decode the JSON response, translating failures into AiUnavailableError."""
        try:
            response = await self.client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            raise AiUnavailableError(AiUnavailableError.TIMEOUT, str(exc)) from exc
        except httpx.HTTPError as exc:
            raise AiUnavailableError(AiUnavailableError.UNAVAILABLE, str(exc)) from exc

        if response.status_code == 429:
            raise AiUnavailableError(AiUnavailableError.RATE_LIMITED, response.text)
        if response.status_code >= 400:
            raise AiUnavailableError(
                AiUnavailableError.UNAVAILABLE, f"HTTP {response.status_code} from {path}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise AiUnavailableError(AiUnavailableError.MALFORMED, response.text) from exc

    def _parse(self, model: Any, data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise AiUnavailableError(AiUnavailableError.MALFORMED, str(exc)) from exc
