import logging
from typing import Optional

from pydantic import ValidationError

from models.room import ActiveVoteDoc, RoomSide, RoomSnapshot, RoundStatusDoc
from services.api_client import APIError, GameApiClient, get_api_client

logger = logging.getLogger(__name__)


class SnapshotFetchError(APIError):
    """A pull request failed or returned a document that does not validate."""


class SnapshotFetcher:
    """
    Pulls authoritative documents for one room:
      GET /rooms/{code}                          → RoomSnapshot
      GET /rooms/{code}/rounds/current           → RoundStatusDoc (None if no round)
      GET /rooms/{code}/votes/current?roomColor= → ActiveVoteDoc (None if no vote)
    """

    def __init__(self, room_code: str, api: Optional[GameApiClient] = None):
        self.room_code = room_code
        self.api = api or get_api_client()

    async def fetch_snapshot(self) -> RoomSnapshot:
        try:
            data = await self.api.get(f"/rooms/{self.room_code}")
        except APIError as exc:
            raise SnapshotFetchError(exc.code, exc.message, exc.details, status=exc.status) from exc
        try:
            return RoomSnapshot.model_validate(data)
        except ValidationError as exc:
            raise SnapshotFetchError("INVALID_SNAPSHOT", str(exc)) from exc

    async def fetch_round_status(self) -> Optional[RoundStatusDoc]:
        try:
            data = await self.api.get(f"/rooms/{self.room_code}/rounds/current")
        except APIError as exc:
            # 404 here just means no round is running
            if exc.status == 404:
                return None
            raise SnapshotFetchError(exc.code, exc.message, exc.details, status=exc.status) from exc
        try:
            return RoundStatusDoc.model_validate(data)
        except ValidationError as exc:
            raise SnapshotFetchError("INVALID_ROUND_STATUS", str(exc)) from exc

    async def fetch_vote_status(self, side: RoomSide) -> Optional[ActiveVoteDoc]:
        try:
            data = await self.api.get(
                f"/rooms/{self.room_code}/votes/current", params={"roomColor": side.value}
            )
        except APIError as exc:
            raise SnapshotFetchError(exc.code, exc.message, exc.details, status=exc.status) from exc
        active = (data or {}).get("activeVote")
        if not active:
            return None
        try:
            return ActiveVoteDoc.model_validate(active)
        except ValidationError as exc:
            raise SnapshotFetchError("INVALID_VOTE_STATUS", str(exc)) from exc
