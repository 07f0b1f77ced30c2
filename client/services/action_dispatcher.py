"""
User intents → REST calls.

Routes (all under /api/v1, X-Player-ID header identifies the actor):
  POST   /rooms/{code}/players                      join
  PATCH  /rooms/{code}/players/{id}/nickname        update_nickname
  DELETE /rooms/{code}/players/{id}                 leave
  POST   /rooms/{code}/game/start                   start_game
  POST   /rooms/{code}/game/reset                   reset_game
  POST   /rooms/{code}/hostages/select              select_hostages
  POST   /rooms/{code}/leaders/ready                mark_leader_ready
  POST   /rooms/{code}/leaders/transfer             transfer_leadership
  POST   /rooms/{code}/votes/start                  start_vote
  POST   /rooms/{code}/votes/{voteId}/cast          cast_vote

Outcomes come back as ActionResult; failures are never raised to the caller.
State changes caused by an action arrive later as push events.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from models.room import Player, RoomSide
from services.api_client import APIError, GameApiClient, get_api_client

logger = logging.getLogger(__name__)

MIN_NICKNAME, MAX_NICKNAME = 2, 20


class ActionResult(BaseModel):
    action: str
    ok: bool
    data: Dict[str, Any] = {}
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, action: str, exc: APIError) -> "ActionResult":
        return cls(action=action, ok=False, error=exc.to_dict())


class ActionDispatcher:
    def __init__(self, room_code: str, player_id: Optional[str] = None, api: Optional[GameApiClient] = None):
        self.room_code = room_code
        self.player_id = player_id
        self.api = api or get_api_client()

    async def _call(self, action: str, method: str, path: str, body: Optional[Dict] = None) -> ActionResult:
        try:
            data = await self.api.request(
                method, f"/rooms/{self.room_code}{path}", json=body, player_id=self.player_id
            )
        except APIError as exc:
            logger.warning("[%s] %s failed: %s (%s)", self.room_code, action, exc.code, exc.message)
            return ActionResult.failure(action, exc)
        logger.info("[%s] %s ok", self.room_code, action)
        return ActionResult(action=action, ok=True, data=data if isinstance(data, dict) else {"result": data})

    def _invalid(self, action: str, message: str) -> ActionResult:
        return ActionResult.failure(action, APIError("INVALID_REQUEST", message, user_message=message))

    # ── Lobby ─────────────────────────────────────────────────────────────────

    async def join(self) -> ActionResult:
        """Join as a new anonymous player; on success the dispatcher adopts the new id."""
        result = await self._call("join", "POST", "/players")
        if result.ok:
            try:
                player = Player.model_validate(result.data)
            except ValueError:
                return self._invalid("join", "Join response did not contain a player.")
            self.player_id = player.id
        return result

    async def update_nickname(self, nickname: str) -> ActionResult:
        nickname = (nickname or "").strip()
        if not MIN_NICKNAME <= len(nickname) <= MAX_NICKNAME:
            return ActionResult.failure("update_nickname", APIError("INVALID_NICKNAME"))
        return await self._call(
            "update_nickname", "PATCH", f"/players/{self.player_id}/nickname", {"nickname": nickname}
        )

    async def leave(self) -> ActionResult:
        return await self._call("leave", "DELETE", f"/players/{self.player_id}")

    async def start_game(self) -> ActionResult:
        return await self._call("start_game", "POST", "/game/start")

    async def reset_game(self) -> ActionResult:
        return await self._call("reset_game", "POST", "/game/reset")

    # ── Round ─────────────────────────────────────────────────────────────────

    async def select_hostages(self, hostage_ids: List[str], expected_count: Optional[int] = None) -> ActionResult:
        if self.player_id in hostage_ids:
            return self._invalid("select_hostages", "A leader cannot select themselves as a hostage.")
        if len(set(hostage_ids)) != len(hostage_ids):
            return self._invalid("select_hostages", "Duplicate hostage selected.")
        if expected_count is not None and len(hostage_ids) != expected_count:
            return self._invalid("select_hostages", f"Select exactly {expected_count} hostage(s).")
        return await self._call("select_hostages", "POST", "/hostages/select", {"hostageIds": hostage_ids})

    async def mark_leader_ready(self) -> ActionResult:
        return await self._call("mark_leader_ready", "POST", "/leaders/ready")

    async def transfer_leadership(self, new_leader_id: str) -> ActionResult:
        if new_leader_id == self.player_id:
            return self._invalid("transfer_leadership", "Choose another player.")
        return await self._call(
            "transfer_leadership", "POST", "/leaders/transfer", {"newLeaderId": new_leader_id}
        )

    # ── Votes ─────────────────────────────────────────────────────────────────

    async def start_vote(self, room_side: RoomSide, target_leader_id: str) -> ActionResult:
        return await self._call(
            "start_vote", "POST", "/votes/start",
            {"roomColor": RoomSide(room_side).value, "targetLeaderId": target_leader_id},
        )

    async def cast_vote(self, vote_id: str, vote: str) -> ActionResult:
        # YES/NO for removals, a candidate id for elections
        choice = vote.upper() if vote.upper() in ("YES", "NO") else vote
        return await self._call("cast_vote", "POST", f"/votes/{vote_id}/cast", {"vote": choice})

    # ── Generic entry point (companion HTTP routes) ────────────────────────────

    async def dispatch(self, action: str, params: Optional[Dict[str, Any]] = None) -> ActionResult:
        handler = ACTIONS.get(action)
        if handler is None:
            return self._invalid(action, f"Unknown action: '{action}'")
        try:
            return await handler(self, **(params or {}))
        except (TypeError, ValueError) as exc:
            return self._invalid(action, str(exc))


ACTIONS = {
    "join": ActionDispatcher.join,
    "update_nickname": ActionDispatcher.update_nickname,
    "leave": ActionDispatcher.leave,
    "start_game": ActionDispatcher.start_game,
    "reset_game": ActionDispatcher.reset_game,
    "select_hostages": ActionDispatcher.select_hostages,
    "mark_leader_ready": ActionDispatcher.mark_leader_ready,
    "transfer_leadership": ActionDispatcher.transfer_leadership,
    "start_vote": ActionDispatcher.start_vote,
    "cast_vote": ActionDispatcher.cast_vote,
}
