"""
Thin async wrapper over the game server's REST API (`/api/v1`).

Every non-2xx response becomes an APIError carrying the server's error code
and a user-facing message; transport failures become NETWORK_ERROR.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

ERROR_MESSAGES: Dict[str, str] = {
    # Room errors
    "ROOM_NOT_FOUND": "Room not found. Check the room code.",
    "ROOM_FULL": "This room is full. Try another room.",
    "GAME_ALREADY_STARTED": "The game has already started.",
    "INVALID_REQUEST": "Invalid request.",
    # Player errors
    "PLAYER_NOT_FOUND": "Player not found.",
    "INVALID_NICKNAME": "Nicknames must be 2 to 20 characters.",
    # Game errors
    "INSUFFICIENT_PLAYERS": "At least 6 players are needed to start.",
    "GAME_NOT_STARTED": "The game has not started.",
    # Generic errors
    "UNKNOWN_ERROR": "Something went wrong.",
    "NETWORK_ERROR": "Check your network connection.",
}


class APIError(Exception):
    def __init__(
        self,
        code: str,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
        status: Optional[int] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message or code)
        self.code = code
        self.message = message
        self.details = details or {}
        self.status = status
        self.user_message = (
            user_message or ERROR_MESSAGES.get(code) or message or ERROR_MESSAGES["UNKNOWN_ERROR"]
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.user_message, "details": self.details}


def _error_from_response(response: httpx.Response) -> APIError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    # Two shapes in the wild: {code, message, details} and {error: "..."}
    code = body.get("code") or ("ROOM_NOT_FOUND" if response.status_code == 404 else "UNKNOWN_ERROR")
    message = body.get("message") or body.get("error") or f"HTTP {response.status_code}: {response.reason_phrase}"
    return APIError(code, message, body.get("details"), status=response.status_code)


class GameApiClient:
    """
    Shared httpx.AsyncClient for pull and action calls.
    Pass `transport` to swap the network layer (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url + API_PREFIX,
            timeout=settings.http_timeout if timeout is None else timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        player_id: Optional[str] = None,
    ) -> Any:
        headers = {"X-Player-ID": player_id} if player_id else None
        try:
            response = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise APIError("NETWORK_ERROR", str(exc)) from exc
        if response.is_error:
            raise _error_from_response(response)
        if not response.content:
            return {}
        return response.json()

    async def get(self, path: str, **kwargs) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> Any:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()


_api_client: Optional[GameApiClient] = None


def get_api_client() -> GameApiClient:
    """Lazy singleton — created on first call, not at import time."""
    global _api_client
    if _api_client is None:
        _api_client = GameApiClient()
    return _api_client


async def close_api_client() -> None:
    global _api_client
    if _api_client is not None:
        await _api_client.aclose()
        _api_client = None
