from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Tuple
from enum import Enum
from datetime import datetime, timezone


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class RoomStatus(str, Enum):
    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    REVEALING = "REVEALING"
    COMPLETED = "COMPLETED"   # older servers report this instead of REVEALING


class TeamColor(str, Enum):
    RED = "RED"
    BLUE = "BLUE"
    GREY = "GREY"


class RoomSide(str, Enum):
    RED_ROOM = "RED_ROOM"
    BLUE_ROOM = "BLUE_ROOM"


class ViewState(str, Enum):
    LOBBY = "lobby"
    GAME = "game"
    VOTE = "vote"
    REVEAL = "reveal"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    EXHAUSTED = "exhausted"   # retry budget spent; only manual reconnect leaves this


class RoundPhase(str, Enum):
    SETUP = "SETUP"
    ACTIVE = "ACTIVE"
    SELECTING = "SELECTING"
    EXCHANGING = "EXCHANGING"
    COMPLETE = "COMPLETE"


class VoteType(str, Enum):
    REMOVAL = "REMOVAL"
    ELECTION = "ELECTION"


class VoteStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    TIMEOUT = "TIMEOUT"


class VoteResult(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


class LeadershipChangeReason(str, Enum):
    VOLUNTARY_TRANSFER = "VOLUNTARY_TRANSFER"
    DISCONNECTION = "DISCONNECTION"
    VOTE_REMOVAL = "VOTE_REMOVAL"
    VOTE_ELECTION = "VOTE_ELECTION"


VOTE_DRIVEN_REASONS = {LeadershipChangeReason.VOTE_REMOVAL, LeadershipChangeReason.VOTE_ELECTION}


class HistoryKind(str, Enum):
    EXCHANGE = "EXCHANGE"
    LEADERSHIP_CHANGE = "LEADERSHIP_CHANGE"


class WireModel(BaseModel):
    """Base for documents exchanged with the game server (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> Dict:
        return self.model_dump(mode="json", by_alias=True)


class Role(WireModel):
    id: str = ""
    name: str = ""
    description: str = ""
    team: Optional[TeamColor] = None
    is_spy: bool = False
    is_leader: bool = False


class LeaderInfo(WireModel):
    id: str
    nickname: str = ""


class Player(WireModel):
    id: str
    nickname: str = ""
    is_anonymous: bool = True
    is_owner: bool = False
    role: Optional[Role] = None
    team: Optional[TeamColor] = None
    current_room: Optional[RoomSide] = None
    connected_at: Optional[str] = None

    @field_validator("team", "current_room", mode="before")
    @classmethod
    def _unassigned_as_none(cls, value):
        # Lobby players carry "" for both until the game starts
        return value or None


class GameSessionInfo(WireModel):
    id: str = ""
    round_number: int = 0
    red_leader_id: Optional[str] = None
    blue_leader_id: Optional[str] = None
    hostage_count: int = 0
    red_team: List[Player] = []
    blue_team: List[Player] = []
    started_at: Optional[str] = None

    def find_player(self, player_id: str) -> Optional[Player]:
        for p in self.red_team + self.blue_team:
            if p.id == player_id:
                return p
        return None


def normalize_players(players: List[Player]) -> List[Player]:
    """
    Enforce the roster invariants: one entry per id (first occurrence keeps its
    join position, later duplicates are dropped) and at most one owner.
    """
    seen = set()
    owner_seen = False
    result: List[Player] = []
    for p in players:
        if p.id in seen:
            continue
        seen.add(p.id)
        if p.is_owner:
            if owner_seen:
                p = p.model_copy(update={"is_owner": False})
            owner_seen = True
        result.append(p)
    return result


class RoomSnapshot(WireModel):
    code: str
    status: RoomStatus = RoomStatus.WAITING
    players: List[Player] = []
    max_players: int = 0
    game_session: Optional[GameSessionInfo] = None

    def model_post_init(self, __context) -> None:
        self.players = normalize_players(self.players)

    def find_player(self, player_id: Optional[str]) -> Optional[Player]:
        if not player_id:
            return None
        return next((p for p in self.players if p.id == player_id), None)

    @property
    def owner(self) -> Optional[Player]:
        return next((p for p in self.players if p.is_owner), None)


# ── Round / vote / history ─────────────────────────────────────────────────────

class SideRoundState(WireModel):
    leader_id: Optional[str] = None
    leader_name: str = ""
    ready: bool = False
    hostages: List[str] = []
    announced: bool = False


class RoundState(WireModel):
    round_number: int = 0
    duration: int = 0            # total seconds for this round (180/120/60)
    time_remaining: int = 0
    phase: RoundPhase = RoundPhase.ACTIVE
    hostage_count: int = 0
    red: SideRoundState = Field(default_factory=SideRoundState)
    blue: SideRoundState = Field(default_factory=SideRoundState)

    def side(self, room_side: RoomSide) -> SideRoundState:
        return self.red if room_side == RoomSide.RED_ROOM else self.blue

    @computed_field
    @property
    def elapsed(self) -> int:
        return max(0, self.duration - self.time_remaining)


class VoteOutcome(WireModel):
    result: VoteResult
    yes_votes: int = 0
    no_votes: int = 0
    new_leader_id: Optional[str] = None
    new_leader_name: Optional[str] = None


class VoteSession(WireModel):
    vote_id: str
    room_side: RoomSide
    vote_type: VoteType = VoteType.REMOVAL
    target_leader_id: Optional[str] = None
    target_leader_name: str = ""
    candidates: List[str] = []
    total_voters: int = 0
    voted_count: int = 0
    timeout_seconds: int = 0
    expires_at: Optional[datetime] = None
    status: VoteStatus = VoteStatus.ACTIVE
    outcome: Optional[VoteOutcome] = None

    @property
    def is_active(self) -> bool:
        return self.status == VoteStatus.ACTIVE


class HistoryEvent(WireModel):
    kind: HistoryKind
    timestamp: str
    subject_id: str
    subject_name: str = ""
    round_number: Optional[int] = None
    room_side: Optional[RoomSide] = None
    from_room: Optional[RoomSide] = None
    to_room: Optional[RoomSide] = None
    previous_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.kind.value, self.timestamp, self.subject_id)


class ConnectionStatus(WireModel):
    state: ConnectionState = ConnectionState.CLOSED
    attempts: int = 0
    max_attempts: int = 0
    message: Optional[str] = None
    terminal: bool = False     # True → blocking message, no retry scheduled


# ── Merged client state (owned by the reconciler) ─────────────────────────────

class SyncState(WireModel):
    room_code: str
    self_player_id: Optional[str] = None
    is_owner: bool = False
    room: Optional[RoomSnapshot] = None
    view: ViewState = ViewState.LOBBY

    # Own assignment (ROLE_ASSIGNED or extracted from a snapshot)
    role: Optional[Role] = None
    team: Optional[TeamColor] = None
    room_side: Optional[RoomSide] = None
    role_latched: bool = False
    game_instance_id: Optional[str] = None

    round: Optional[RoundState] = None
    votes: Dict[RoomSide, VoteSession] = {}
    history: List[HistoryEvent] = []

    shown_exchange_rounds: List[int] = []
    animations_shown: int = 0
    pending_animation_round: Optional[int] = None

    reveal_message: Optional[str] = None
    closed_reason: Optional[str] = None

    # Bumped by every event that sets room status / touches a vote session;
    # pull responses requested before the bump are stale for those fields
    status_seq: int = 0
    vote_seq: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def has_assignment(self) -> bool:
        return self.role is not None and self.team is not None and self.room_side is not None

    @property
    def active_votes(self) -> List[VoteSession]:
        return [v for v in self.votes.values() if v.is_active]

    def find_vote(self, vote_id: str) -> Optional[VoteSession]:
        return next((v for v in self.votes.values() if v.vote_id == vote_id), None)


# ── Rehydration documents (GET rounds/current, GET votes/current) ──────────────

class RoundStatusDoc(WireModel):
    round_number: int = 0
    time_remaining: int = 0
    duration: int = 0
    status: RoundPhase = RoundPhase.ACTIVE
    red_leader: Optional[str] = None
    blue_leader: Optional[str] = None
    hostage_count: int = 0
    red_hostages_selected: bool = False
    blue_hostages_selected: bool = False


class ActiveVoteDoc(WireModel):
    vote_id: str
    room_color: RoomSide
    vote_type: Optional[VoteType] = None
    target_leader_id: Optional[str] = None
    target_leader_name: str = ""
    candidates: List[str] = []
    total_voters: int = 0
    voted_count: int = 0
    timeout_seconds: int = 0
    time_remaining: int = 0
    started_at: Optional[str] = None
