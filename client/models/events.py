"""
Push-channel message shapes.

Every inbound document is `{ "type": <TAG>, "payload": {...} }`. Each tag maps
to exactly one event class below; `InboundEvent` is the closed union the
reconciler dispatches on. Unknown tags are not an error (newer servers may
emit more), `decode_event` returns None for them.
"""
from pydantic import AliasChoices, BaseModel, Field, TypeAdapter
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from models.room import (
    GameSessionInfo,
    LeaderInfo,
    LeadershipChangeReason,
    Player,
    Role,
    RoomSide,
    RoomSnapshot,
    TeamColor,
    VoteResult,
    VoteType,
    WireModel,
)


# ── Payloads ──────────────────────────────────────────────────────────────────

class PlayerJoinedPayload(WireModel):
    player: Player


class PlayerIdPayload(WireModel):
    player_id: str


class NicknameChangedPayload(WireModel):
    player_id: str
    new_nickname: str


class OwnerChangedPayload(WireModel):
    new_owner: Player


class RoomClosedPayload(WireModel):
    reason: str = ""


class GameStartedPayload(WireModel):
    game_session: Optional[GameSessionInfo] = None


class RoleAssignedPayload(WireModel):
    # Redeliveries may carry only a subset of these
    role: Optional[Role] = None
    team: Optional[TeamColor] = None
    current_room: Optional[RoomSide] = None


class GameResetPayload(WireModel):
    room: Optional[RoomSnapshot] = None


class RoundStartedPayload(WireModel):
    round_number: int
    duration: int = 0
    time_remaining: int = 0
    red_leader: Optional[LeaderInfo] = None
    blue_leader: Optional[LeaderInfo] = None
    hostage_count: int = 0


class TimerTickPayload(WireModel):
    round_number: int
    time_remaining: int


class RoundEndingPayload(WireModel):
    round_number: int
    hostage_count: int = 0


class RoundEndedPayload(WireModel):
    round_number: int
    final_round: bool = False
    next_phase: str = ""


class LeaderReadyPayload(WireModel):
    room_color: RoomSide
    leader_id: str
    both_ready: bool = False


class LeadershipChangedPayload(WireModel):
    room_color: RoomSide
    old_leader: Optional[LeaderInfo] = None
    new_leader: Optional[LeaderInfo] = None
    reason: LeadershipChangeReason
    timestamp: str = ""


class VoteSessionStartedPayload(WireModel):
    vote_id: str = Field(validation_alias=AliasChoices("voteId", "voteID", "vote_id"))
    room_color: RoomSide
    vote_type: Optional[VoteType] = None
    target_leader: Optional[LeaderInfo] = None
    initiator: Optional[LeaderInfo] = None
    candidates: List[str] = []
    total_voters: int = 0
    timeout_seconds: int = 0
    started_at: Optional[str] = None

    @property
    def resolved_type(self) -> VoteType:
        # The server omits voteType on older builds; elections are the ones with candidates
        if self.vote_type is not None:
            return self.vote_type
        return VoteType.ELECTION if self.candidates else VoteType.REMOVAL


class VoteProgressPayload(WireModel):
    vote_id: str = Field(validation_alias=AliasChoices("voteId", "voteID", "vote_id"))
    voted_count: int = 0
    total_voters: int = 0
    time_remaining: int = 0


class VoteCompletedPayload(WireModel):
    vote_id: str = Field(validation_alias=AliasChoices("voteId", "voteID", "vote_id"))
    result: VoteResult
    yes_votes: int = 0
    no_votes: int = 0
    target_leader: Optional[LeaderInfo] = None
    new_leader: Optional[LeaderInfo] = None
    reason: str = ""


class LeaderAnnouncedHostagesPayload(WireModel):
    room_color: RoomSide
    hostages: List[LeaderInfo] = []
    waiting_for_other_leader: bool = False


class ExchangeRecord(WireModel):
    player_id: str
    nickname: str = Field("", validation_alias=AliasChoices("nickname", "playerName"))
    from_room: RoomSide
    to_room: RoomSide
    round_number: Optional[int] = None
    timestamp: Optional[str] = None


class ExchangeCompletePayload(WireModel):
    round_number: int
    exchanges: List[ExchangeRecord] = []
    next_round: Optional[int] = None


class GameRevealingPayload(WireModel):
    message: str = ""


# ── Events (one class per tag) ────────────────────────────────────────────────

class _Event(BaseModel):
    type: str
    payload: Any


class PlayerJoined(_Event):
    type: Literal["PLAYER_JOINED"] = "PLAYER_JOINED"
    payload: PlayerJoinedPayload


class PlayerLeft(_Event):
    type: Literal["PLAYER_LEFT"] = "PLAYER_LEFT"
    payload: PlayerIdPayload


class PlayerDisconnected(_Event):
    type: Literal["PLAYER_DISCONNECTED"] = "PLAYER_DISCONNECTED"
    payload: PlayerIdPayload


class NicknameChanged(_Event):
    type: Literal["NICKNAME_CHANGED"] = "NICKNAME_CHANGED"
    payload: NicknameChangedPayload


class OwnerChanged(_Event):
    type: Literal["OWNER_CHANGED"] = "OWNER_CHANGED"
    payload: OwnerChangedPayload


class RoomClosed(_Event):
    type: Literal["ROOM_CLOSED"] = "ROOM_CLOSED"
    payload: RoomClosedPayload = Field(default_factory=RoomClosedPayload)


class GameStarted(_Event):
    type: Literal["GAME_STARTED"] = "GAME_STARTED"
    payload: GameStartedPayload = Field(default_factory=GameStartedPayload)


class RoleAssigned(_Event):
    type: Literal["ROLE_ASSIGNED"] = "ROLE_ASSIGNED"
    payload: RoleAssignedPayload


class GameReset(_Event):
    type: Literal["GAME_RESET"] = "GAME_RESET"
    payload: GameResetPayload = Field(default_factory=GameResetPayload)


class RoundStarted(_Event):
    type: Literal["ROUND_STARTED"] = "ROUND_STARTED"
    payload: RoundStartedPayload


class TimerTick(_Event):
    type: Literal["TIMER_TICK"] = "TIMER_TICK"
    payload: TimerTickPayload


class RoundEnding(_Event):
    type: Literal["ROUND_ENDING"] = "ROUND_ENDING"
    payload: RoundEndingPayload


class RoundEnded(_Event):
    type: Literal["ROUND_ENDED"] = "ROUND_ENDED"
    payload: RoundEndedPayload


class LeaderReady(_Event):
    type: Literal["LEADER_READY"] = "LEADER_READY"
    payload: LeaderReadyPayload


class LeadershipChanged(_Event):
    type: Literal["LEADERSHIP_CHANGED"] = "LEADERSHIP_CHANGED"
    payload: LeadershipChangedPayload


class VoteSessionStarted(_Event):
    type: Literal["VOTE_SESSION_STARTED"] = "VOTE_SESSION_STARTED"
    payload: VoteSessionStartedPayload


class VoteProgress(_Event):
    type: Literal["VOTE_PROGRESS"] = "VOTE_PROGRESS"
    payload: VoteProgressPayload


class VoteCompleted(_Event):
    type: Literal["VOTE_COMPLETED"] = "VOTE_COMPLETED"
    payload: VoteCompletedPayload


class LeaderAnnouncedHostages(_Event):
    type: Literal["LEADER_ANNOUNCED_HOSTAGES"] = "LEADER_ANNOUNCED_HOSTAGES"
    payload: LeaderAnnouncedHostagesPayload


class ExchangeComplete(_Event):
    type: Literal["EXCHANGE_COMPLETE"] = "EXCHANGE_COMPLETE"
    payload: ExchangeCompletePayload


class GameRevealing(_Event):
    type: Literal["GAME_REVEALING"] = "GAME_REVEALING"
    payload: GameRevealingPayload = Field(default_factory=GameRevealingPayload)


InboundEvent = Annotated[
    Union[
        PlayerJoined,
        PlayerLeft,
        PlayerDisconnected,
        NicknameChanged,
        OwnerChanged,
        RoomClosed,
        GameStarted,
        RoleAssigned,
        GameReset,
        RoundStarted,
        TimerTick,
        RoundEnding,
        RoundEnded,
        LeaderReady,
        LeadershipChanged,
        VoteSessionStarted,
        VoteProgress,
        VoteCompleted,
        LeaderAnnouncedHostages,
        ExchangeComplete,
        GameRevealing,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(InboundEvent)

EVENT_TAGS = frozenset(
    cls.model_fields["type"].default
    for cls in _Event.__subclasses__()
)


def decode_event(document: Dict[str, Any]) -> Optional[InboundEvent]:
    """
    Validate one decoded JSON document into its event class.
    Returns None for unknown tags; raises pydantic.ValidationError for a known
    tag with a malformed payload.
    """
    tag = document.get("type")
    if tag not in EVENT_TAGS:
        return None
    data = dict(document)
    if data.get("payload") is None:
        data.pop("payload", None)
    return _event_adapter.validate_python(data)


# ── Outbound ──────────────────────────────────────────────────────────────────

class OutboundMessage(BaseModel):
    type: str
    payload: Dict[str, Any] = {}

    def to_json(self) -> str:
        return self.model_dump_json()
