"""
Reconciliation state machine — the single writer of a room's SyncState.

Inputs (all funnelled through RoomSession's queue, one at a time):
  apply_event(event)          push event from the channel
  merge_snapshot(snapshot)    pull result (initial load, catch-up, periodic poll)
  merge_round_status(doc)     round rehydration after (re)connect
  merge_vote_status(side,doc) vote rehydration after (re)connect
  clear_vote / expire_vote    vote display-window and expiry timers
  ack_animation()             presentation consumed the pending exchange animation

Per event:
  1. dedupe (EventDeduplicator) — a repeat has no effect at all
  2. room roster / status mutation (idempotent by player id on its own)
  3. view transition
  4. round / vote / history mutation

Every input is applied to a deep copy and committed only if the handler
finishes, so a failing input leaves the last-known-good state untouched.

Handlers never await. Work that needs I/O or time (pull a snapshot, run a
vote timer, persist history) is returned as Effects for the session to carry
out; their results come back as new inputs.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from config import settings
from models.events import (
    ExchangeComplete,
    GameReset,
    GameRevealing,
    GameStarted,
    LeaderAnnouncedHostages,
    LeaderReady,
    LeadershipChanged,
    NicknameChanged,
    OwnerChanged,
    PlayerDisconnected,
    PlayerJoined,
    PlayerLeft,
    RoleAssigned,
    RoomClosed,
    RoundEnded,
    RoundEnding,
    RoundStarted,
    TimerTick,
    VoteCompleted,
    VoteProgress,
    VoteSessionStarted,
)
from models.room import (
    VOTE_DRIVEN_REASONS,
    ActiveVoteDoc,
    HistoryEvent,
    HistoryKind,
    Player,
    Role,
    RoomSide,
    RoomSnapshot,
    RoomStatus,
    RoundPhase,
    RoundState,
    RoundStatusDoc,
    SideRoundState,
    SyncState,
    TeamColor,
    ViewState,
    VoteOutcome,
    VoteResult,
    VoteSession,
    VoteStatus,
    VoteType,
    normalize_players,
)
from sync.event_dedup import EventDeduplicator

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """An input is inconsistent with the current state and was not applied."""


class EffectKind(str, Enum):
    FETCH_SNAPSHOT = "fetch_snapshot"
    REHYDRATE_ROUND = "rehydrate_round"
    REHYDRATE_VOTES = "rehydrate_votes"
    SCHEDULE_VOTE_EXPIRY = "schedule_vote_expiry"
    SCHEDULE_VOTE_CLEAR = "schedule_vote_clear"
    CANCEL_TIMERS = "cancel_timers"
    PERSIST = "persist"
    ROOM_CLOSED = "room_closed"


@dataclass
class Effect:
    kind: EffectKind
    reason: str = ""
    room_side: Optional[RoomSide] = None
    vote_id: Optional[str] = None
    delay: float = 0.0


@dataclass
class Outcome:
    applied: bool
    effects: List[Effect] = field(default_factory=list)

    def has(self, kind: EffectKind) -> bool:
        return any(e.kind == kind for e in self.effects)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class Reconciler:
    def __init__(
        self,
        room_code: str,
        self_player_id: Optional[str] = None,
        *,
        dedup: Optional[EventDeduplicator] = None,
        animation_cap: Optional[int] = None,
        vote_result_display: Optional[float] = None,
    ):
        self.state = SyncState(room_code=room_code, self_player_id=self_player_id)
        self.dedup = dedup or EventDeduplicator(room_code)
        self.animation_cap = settings.exchange_animation_cap if animation_cap is None else animation_cap
        self.vote_result_display = (
            settings.vote_result_display if vote_result_display is None else vote_result_display
        )
        self._handlers: Dict[type, Callable] = {
            PlayerJoined: self._on_player_joined,
            PlayerLeft: self._on_player_removed,
            PlayerDisconnected: self._on_player_removed,
            NicknameChanged: self._on_nickname_changed,
            OwnerChanged: self._on_owner_changed,
            RoomClosed: self._on_room_closed,
            GameStarted: self._on_game_started,
            RoleAssigned: self._on_role_assigned,
            GameReset: self._on_game_reset,
            RoundStarted: self._on_round_started,
            TimerTick: self._on_timer_tick,
            RoundEnding: self._on_round_ending,
            RoundEnded: self._on_round_ended,
            LeaderReady: self._on_leader_ready,
            LeadershipChanged: self._on_leadership_changed,
            VoteSessionStarted: self._on_vote_session_started,
            VoteProgress: self._on_vote_progress,
            VoteCompleted: self._on_vote_completed,
            LeaderAnnouncedHostages: self._on_hostages_announced,
            ExchangeComplete: self._on_exchange_complete,
            GameRevealing: self._on_game_revealing,
        }
        # Last applied join/departure per player id
        self._roster_events: Dict[str, object] = {}

    @property
    def room_code(self) -> str:
        return self.state.room_code

    @property
    def handled_types(self) -> List[type]:
        return list(self._handlers)

    @property
    def needs_polling(self) -> bool:
        """Periodic pull runs everywhere except a lobby with no game behind it."""
        room = self.state.room
        in_game = room is not None and (room.status != RoomStatus.WAITING or room.game_session is not None)
        return self.state.view != ViewState.LOBBY or in_game

    def snapshot_view(self) -> SyncState:
        """Read-only copy for presentation."""
        return self.state.model_copy(deep=True)

    # ── Entry points ──────────────────────────────────────────────────────────

    def load(
        self,
        snapshot: RoomSnapshot,
        self_player_id: Optional[str],
        *,
        is_owner: bool = False,
        history: Optional[List[HistoryEvent]] = None,
    ) -> Outcome:
        """Initial load: adopt the snapshot wholesale, restore cached history."""
        def mutate(draft: SyncState, effects: List[Effect]) -> None:
            draft.self_player_id = self_player_id
            draft.is_owner = is_owner
            for entry in history or []:
                self._append_history(draft, entry)
            draft.room = snapshot.model_copy(deep=True)
            self._merge_own_entry(draft, snapshot, effects, stale=False)
            self._view_from_status(draft, snapshot, stale=False)

        return self._commit("load", mutate)

    def apply_event(self, event) -> Outcome:
        if not self.dedup.should_apply(event):
            return Outcome(applied=False)

        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("[%s] No handler for %s", self.room_code, event.type)
            return Outcome(applied=False)

        outcome = self._commit(event.type, lambda draft, effects: handler(draft, event, effects))
        if not outcome.applied:
            self.dedup.forget(event)
        elif isinstance(event, GameReset):
            # A new game may legitimately repeat payloads seen in the previous one
            self.dedup.reset()
            self._roster_events.clear()
        elif isinstance(event, (PlayerJoined, PlayerLeft, PlayerDisconnected)):
            self._recycle_roster_identity(event)
        return outcome

    def merge_snapshot(self, snapshot: RoomSnapshot, requested_seq: Optional[int] = None) -> Outcome:
        """
        Shallow-merge an authoritative snapshot. Status and game session are
        skipped when the request predates the latest status-changing event.
        Never removes history; never moves the view off VOTE or REVEAL except
        VOTE → REVEAL.
        """
        def mutate(draft: SyncState, effects: List[Effect]) -> None:
            stale = requested_seq is not None and requested_seq < draft.status_seq
            if draft.room is None:
                draft.room = snapshot.model_copy(deep=True)
            else:
                room = draft.room
                if not stale:
                    room.status = snapshot.status
                    room.game_session = snapshot.game_session
                    room.players = normalize_players([p.model_copy() for p in snapshot.players])
                else:
                    sides = {p.id: p.current_room for p in snapshot.players if p.current_room}
                    for p in room.players:
                        if p.id in sides:
                            p.current_room = sides[p.id]
                if snapshot.max_players:
                    room.max_players = snapshot.max_players
            self._merge_own_entry(draft, snapshot, effects, stale=stale)
            self._view_from_status(draft, snapshot, stale=stale)

        return self._commit("snapshot", mutate)

    def merge_round_status(self, doc: Optional[RoundStatusDoc]) -> Outcome:
        def mutate(draft: SyncState, effects: List[Effect]) -> None:
            if doc is None or doc.round_number <= 0:
                return
            current = draft.round
            if current is None or doc.round_number > current.round_number:
                draft.round = RoundState(
                    round_number=doc.round_number,
                    duration=doc.duration,
                    time_remaining=doc.time_remaining,
                    phase=doc.status,
                    hostage_count=doc.hostage_count,
                    red=SideRoundState(leader_id=doc.red_leader, announced=doc.red_hostages_selected),
                    blue=SideRoundState(leader_id=doc.blue_leader, announced=doc.blue_hostages_selected),
                )
            elif doc.round_number == current.round_number:
                current.time_remaining = doc.time_remaining
                current.phase = doc.status
                if doc.duration:
                    current.duration = doc.duration
                if not (current.red.announced or current.blue.announced):
                    current.hostage_count = doc.hostage_count
                for side, leader_id in ((current.red, doc.red_leader), (current.blue, doc.blue_leader)):
                    if leader_id and side.leader_id != leader_id:
                        side.leader_id = leader_id
                        side.leader_name = ""
                        side.hostages = [h for h in side.hostages if h != leader_id]

        return self._commit("round_status", mutate)

    def merge_vote_status(
        self, side: RoomSide, doc: Optional[ActiveVoteDoc], requested_seq: Optional[int] = None
    ) -> Outcome:
        def mutate(draft: SyncState, effects: List[Effect]) -> None:
            stale = requested_seq is not None and requested_seq < draft.vote_seq
            existing = draft.votes.get(side)
            if doc is None:
                if stale or existing is None or not existing.is_active:
                    return
                logger.info("[%s] Vote %s no longer active on server — dropping", self.room_code, existing.vote_id)
                del draft.votes[side]
                self._leave_vote_view(draft)
                return
            if existing is not None and existing.vote_id == doc.vote_id:
                if existing.is_active:
                    existing.voted_count = doc.voted_count
                    existing.total_voters = doc.total_voters or existing.total_voters
                return
            if existing is not None and existing.is_active:
                return
            session = VoteSession(
                vote_id=doc.vote_id,
                room_side=side,
                vote_type=doc.vote_type or (VoteType.ELECTION if doc.candidates else VoteType.REMOVAL),
                target_leader_id=doc.target_leader_id,
                target_leader_name=doc.target_leader_name,
                candidates=doc.candidates,
                total_voters=doc.total_voters,
                voted_count=doc.voted_count,
                timeout_seconds=doc.timeout_seconds,
                expires_at=_utcnow() + timedelta(seconds=doc.time_remaining),
            )
            self._install_vote(draft, session, effects)

        return self._commit("vote_status", mutate)

    def clear_vote(self, side: RoomSide, vote_id: str) -> Outcome:
        """Display window over: drop the finished session, leave the vote view if nothing is active."""
        def mutate(draft: SyncState, effects: List[Effect]) -> None:
            session = draft.votes.get(side)
            if session is not None and session.vote_id == vote_id and not session.is_active:
                del draft.votes[side]
            self._leave_vote_view(draft)

        return self._commit("vote_clear", mutate)

    def expire_vote(self, side: RoomSide, vote_id: str) -> Outcome:
        """Client-side expiry for a session whose VOTE_COMPLETED never arrived."""
        def mutate(draft: SyncState, effects: List[Effect]) -> None:
            session = draft.votes.get(side)
            if session is None or session.vote_id != vote_id or not session.is_active:
                return
            logger.info("[%s] Vote %s expired without a result", self.room_code, vote_id)
            session.status = VoteStatus.TIMEOUT
            session.outcome = VoteOutcome(result=VoteResult.TIMEOUT)
            draft.vote_seq += 1
            effects.append(Effect(
                EffectKind.SCHEDULE_VOTE_CLEAR, room_side=side, vote_id=vote_id, delay=self.vote_result_display,
            ))

        return self._commit("vote_expiry", mutate)

    def ack_animation(self) -> Outcome:
        def mutate(draft: SyncState, effects: List[Effect]) -> None:
            draft.pending_animation_round = None

        return self._commit("animation_ack", mutate)

    def set_identity(self, player_id: Optional[str], is_owner: bool = False) -> Outcome:
        def mutate(draft: SyncState, effects: List[Effect]) -> None:
            draft.self_player_id = player_id
            draft.is_owner = is_owner

        return self._commit("identity", mutate)

    # ── Commit ────────────────────────────────────────────────────────────────

    def _commit(self, label: str, mutate: Callable[[SyncState, List[Effect]], None]) -> Outcome:
        draft = self.state.model_copy(deep=True)
        effects: List[Effect] = []
        try:
            mutate(draft, effects)
        except ReconcileError as exc:
            logger.warning("[%s] %s rejected: %s", self.room_code, label, exc)
            return Outcome(applied=False)
        except Exception:
            logger.exception("[%s] %s failed — state left unchanged", self.room_code, label)
            return Outcome(applied=False)
        draft.updated_at = _utcnow()
        self.state = draft
        return Outcome(applied=True, effects=effects)

    # ── Roster handlers ───────────────────────────────────────────────────────

    def _room(self, draft: SyncState) -> RoomSnapshot:
        if draft.room is None:
            draft.room = RoomSnapshot(code=draft.room_code)
        return draft.room

    def _on_player_joined(self, draft: SyncState, event: PlayerJoined, effects: List[Effect]) -> None:
        room = self._room(draft)
        player = event.payload.player
        if room.find_player(player.id):
            return
        owner = room.owner
        if player.is_owner and owner is not None:
            logger.warning(
                "[%s] %s joined flagged as owner while %s owns the room — flag dropped",
                self.room_code, player.id, owner.id,
            )
            player = player.model_copy(update={"is_owner": False})
        room.players.append(player.model_copy(deep=True))

    def _on_player_removed(self, draft: SyncState, event, effects: List[Effect]) -> None:
        room = self._room(draft)
        player_id = event.payload.player_id
        room.players = [p for p in room.players if p.id != player_id]
        if player_id == draft.self_player_id:
            logger.warning("[%s] Server reports this participant as %s", self.room_code, event.type)

    def _on_nickname_changed(self, draft: SyncState, event: NicknameChanged, effects: List[Effect]) -> None:
        player = self._room(draft).find_player(event.payload.player_id)
        if player is not None:
            player.nickname = event.payload.new_nickname
            player.is_anonymous = False

    def _on_owner_changed(self, draft: SyncState, event: OwnerChanged, effects: List[Effect]) -> None:
        room = self._room(draft)
        new_owner = event.payload.new_owner
        if room.find_player(new_owner.id) is None:
            room.players.append(new_owner.model_copy(deep=True))
        for p in room.players:
            p.is_owner = p.id == new_owner.id
        is_me = new_owner.id == draft.self_player_id
        if is_me != draft.is_owner:
            draft.is_owner = is_me
            effects.append(Effect(EffectKind.PERSIST, reason="owner"))

    def _on_room_closed(self, draft: SyncState, event: RoomClosed, effects: List[Effect]) -> None:
        draft.closed_reason = event.payload.reason or "The room was closed."
        effects.append(Effect(EffectKind.CANCEL_TIMERS))
        effects.append(Effect(EffectKind.ROOM_CLOSED, reason=draft.closed_reason))

    # ── Game lifecycle ────────────────────────────────────────────────────────

    def _on_game_started(self, draft: SyncState, event: GameStarted, effects: List[Effect]) -> None:
        room = self._room(draft)
        room.status = RoomStatus.IN_PROGRESS
        draft.status_seq += 1
        session = event.payload.game_session
        if session is not None:
            room.game_session = session.model_copy(deep=True)
            draft.game_instance_id = session.id or draft.game_instance_id
            self._merge_sides(room, session.red_team + session.blue_team)

        if draft.role_latched:
            if draft.view == ViewState.LOBBY:
                draft.view = ViewState.GAME
            return

        me = session.find_player(draft.self_player_id) if session and draft.self_player_id else None
        if me is not None and me.role and me.team and me.current_room:
            self._assign_role(draft, me.role, me.team, me.current_room)
        else:
            # Own role is unicast separately; pull it instead of waiting on the channel
            effects.append(Effect(EffectKind.FETCH_SNAPSHOT, reason="self_role"))

    def _on_role_assigned(self, draft: SyncState, event: RoleAssigned, effects: List[Effect]) -> None:
        if draft.role_latched:
            logger.debug("[%s] ROLE_ASSIGNED already applied for this game — ignored", self.room_code)
            return
        p = event.payload
        role = p.role or draft.role
        team = p.team or (p.role.team if p.role else None) or draft.team
        side = p.current_room or draft.room_side

        room = self._room(draft)
        if room.status == RoomStatus.WAITING:
            room.status = RoomStatus.IN_PROGRESS
            draft.status_seq += 1

        if role and team and side:
            self._assign_role(draft, role, team, side)
            # Everyone else's room side comes with the snapshot
            effects.append(Effect(EffectKind.FETCH_SNAPSHOT, reason="room_sides"))
        else:
            draft.role, draft.team, draft.room_side = role, team, side
            effects.append(Effect(EffectKind.FETCH_SNAPSHOT, reason="self_role"))

    def _on_game_reset(self, draft: SyncState, event: GameReset, effects: List[Effect]) -> None:
        if event.payload.room is not None:
            draft.room = event.payload.room.model_copy(deep=True)
        else:
            room = self._room(draft)
            room.status = RoomStatus.WAITING
            room.game_session = None
            for p in room.players:
                p.role, p.team, p.current_room = None, None, None
        draft.status_seq += 1
        draft.vote_seq += 1
        self._clear_game_state(draft, keep_history=False)
        draft.view = ViewState.LOBBY
        effects.append(Effect(EffectKind.CANCEL_TIMERS))
        effects.append(Effect(EffectKind.PERSIST, reason="reset"))

    def _on_game_revealing(self, draft: SyncState, event: GameRevealing, effects: List[Effect]) -> None:
        draft.reveal_message = event.payload.message or None
        # Status is more reliable pulled than pushed; the snapshot drives REVEAL
        effects.append(Effect(EffectKind.FETCH_SNAPSHOT, reason="reveal"))

    # ── Round handlers ────────────────────────────────────────────────────────

    def _on_round_started(self, draft: SyncState, event: RoundStarted, effects: List[Effect]) -> None:
        p = event.payload
        draft.round = RoundState(
            round_number=p.round_number,
            duration=p.duration or p.time_remaining,
            time_remaining=p.time_remaining or p.duration,
            phase=RoundPhase.ACTIVE,
            hostage_count=p.hostage_count,
            red=SideRoundState(
                leader_id=p.red_leader.id if p.red_leader else None,
                leader_name=p.red_leader.nickname if p.red_leader else "",
            ),
            blue=SideRoundState(
                leader_id=p.blue_leader.id if p.blue_leader else None,
                leader_name=p.blue_leader.nickname if p.blue_leader else "",
            ),
        )
        if draft.room and draft.room.game_session:
            draft.room.game_session.round_number = p.round_number

    def _on_timer_tick(self, draft: SyncState, event: TimerTick, effects: List[Effect]) -> None:
        p = event.payload
        current = draft.round
        if current is None or current.round_number != p.round_number:
            if current is None or p.round_number > current.round_number:
                effects.append(Effect(EffectKind.REHYDRATE_ROUND, reason="tick_for_unknown_round"))
            return
        current.time_remaining = max(0, p.time_remaining)

    def _on_round_ending(self, draft: SyncState, event: RoundEnding, effects: List[Effect]) -> None:
        current = self._current_round(draft, event.payload.round_number, effects)
        if current is None:
            return
        current.phase = RoundPhase.SELECTING
        current.time_remaining = 0
        announced = current.red.announced or current.blue.announced
        if event.payload.hostage_count and not announced:
            current.hostage_count = event.payload.hostage_count

    def _on_round_ended(self, draft: SyncState, event: RoundEnded, effects: List[Effect]) -> None:
        current = self._current_round(draft, event.payload.round_number, effects)
        if current is not None:
            current.phase = RoundPhase.COMPLETE
        if event.payload.final_round:
            effects.append(Effect(EffectKind.FETCH_SNAPSHOT, reason="final_round"))

    def _on_leader_ready(self, draft: SyncState, event: LeaderReady, effects: List[Effect]) -> None:
        p = event.payload
        if draft.round is None:
            effects.append(Effect(EffectKind.REHYDRATE_ROUND, reason="leader_ready"))
            return
        side = draft.round.side(p.room_color)
        if side.leader_id is None:
            side.leader_id = p.leader_id
        side.ready = True
        if p.both_ready:
            draft.round.red.ready = draft.round.blue.ready = True

    def _on_leadership_changed(self, draft: SyncState, event: LeadershipChanged, effects: List[Effect]) -> None:
        p = event.payload
        new_id = p.new_leader.id if p.new_leader else None
        if draft.round is not None:
            side = draft.round.side(p.room_color)
            side.leader_id = new_id
            side.leader_name = p.new_leader.nickname if p.new_leader else ""
            side.ready = False
            if new_id:
                side.hostages = [h for h in side.hostages if h != new_id]

        entry = HistoryEvent(
            kind=HistoryKind.LEADERSHIP_CHANGE,
            timestamp=p.timestamp or self._round_marker(draft),
            subject_id=new_id or p.room_color.value,
            subject_name=p.new_leader.nickname if p.new_leader else "",
            round_number=draft.round.round_number if draft.round else None,
            room_side=p.room_color,
            previous_id=p.old_leader.id if p.old_leader else None,
            reason=p.reason.value,
        )
        if self._append_history(draft, entry):
            effects.append(Effect(EffectKind.PERSIST, reason="history"))

        if p.reason in VOTE_DRIVEN_REASONS:
            session = draft.votes.get(p.room_color)
            if session is not None and not session.is_active:
                del draft.votes[p.room_color]
                draft.vote_seq += 1
            self._leave_vote_view(draft)

    def _on_hostages_announced(
        self, draft: SyncState, event: LeaderAnnouncedHostages, effects: List[Effect]
    ) -> None:
        p = event.payload
        if draft.round is None:
            effects.append(Effect(EffectKind.REHYDRATE_ROUND, reason="hostages"))
            return
        current = draft.round
        side = current.side(p.room_color)
        ids: List[str] = []
        for h in p.hostages:
            if h.id == side.leader_id:
                logger.warning("[%s] Leader %s listed as own hostage — dropped", self.room_code, h.id)
                continue
            if h.id not in ids:
                ids.append(h.id)
        if current.hostage_count and len(ids) > current.hostage_count:
            raise ReconcileError(
                f"{len(ids)} hostages announced for {p.room_color.value}, round allows {current.hostage_count}"
            )
        side.hostages = ids
        side.announced = True
        if current.red.announced and current.blue.announced:
            current.phase = RoundPhase.EXCHANGING

    def _on_exchange_complete(self, draft: SyncState, event: ExchangeComplete, effects: List[Effect]) -> None:
        p = event.payload
        room = self._room(draft)
        history_changed = False
        for record in p.exchanges:
            entry = HistoryEvent(
                kind=HistoryKind.EXCHANGE,
                timestamp=record.timestamp or f"round:{p.round_number}",
                subject_id=record.player_id,
                subject_name=record.nickname,
                round_number=record.round_number or p.round_number,
                from_room=record.from_room,
                to_room=record.to_room,
            )
            history_changed |= self._append_history(draft, entry)
            player = room.find_player(record.player_id)
            if player is not None:
                player.current_room = record.to_room
            if record.player_id == draft.self_player_id:
                draft.room_side = record.to_room

        if draft.round is not None and draft.round.round_number == p.round_number:
            draft.round.phase = RoundPhase.COMPLETE

        if history_changed:
            effects.append(Effect(EffectKind.PERSIST, reason="history"))

        if p.round_number in draft.shown_exchange_rounds:
            logger.debug("[%s] Exchange animation for round %d already shown", self.room_code, p.round_number)
        elif draft.animations_shown >= self.animation_cap:
            logger.debug("[%s] Exchange animation cap (%d) reached", self.room_code, self.animation_cap)
        else:
            draft.pending_animation_round = p.round_number
            draft.shown_exchange_rounds.append(p.round_number)
            draft.animations_shown += 1

    # ── Vote handlers ─────────────────────────────────────────────────────────

    def _on_vote_session_started(
        self, draft: SyncState, event: VoteSessionStarted, effects: List[Effect]
    ) -> None:
        p = event.payload
        existing = draft.votes.get(p.room_color)
        if existing is not None and existing.is_active:
            if existing.vote_id != p.vote_id:
                logger.info(
                    "[%s] Vote %s already active on %s — %s not installed",
                    self.room_code, existing.vote_id, p.room_color.value, p.vote_id,
                )
            draft.view = ViewState.VOTE
            return
        timeout = p.timeout_seconds
        started = _parse_instant(p.started_at) or _utcnow()
        session = VoteSession(
            vote_id=p.vote_id,
            room_side=p.room_color,
            vote_type=p.resolved_type,
            target_leader_id=p.target_leader.id if p.target_leader else None,
            target_leader_name=p.target_leader.nickname if p.target_leader else "",
            candidates=p.candidates,
            total_voters=p.total_voters,
            timeout_seconds=timeout,
            expires_at=started + timedelta(seconds=timeout) if timeout else None,
        )
        self._install_vote(draft, session, effects)

    def _on_vote_progress(self, draft: SyncState, event: VoteProgress, effects: List[Effect]) -> None:
        p = event.payload
        session = draft.find_vote(p.vote_id)
        if session is None or not session.is_active:
            effects.append(Effect(EffectKind.REHYDRATE_VOTES, reason="progress_for_unknown_vote"))
            return
        session.voted_count = p.voted_count
        if p.total_voters:
            session.total_voters = p.total_voters

    def _on_vote_completed(self, draft: SyncState, event: VoteCompleted, effects: List[Effect]) -> None:
        p = event.payload
        session = draft.find_vote(p.vote_id)
        if session is None:
            logger.info("[%s] Result for unknown vote %s", self.room_code, p.vote_id)
            effects.append(Effect(EffectKind.REHYDRATE_VOTES, reason="result_for_unknown_vote"))
            return
        session.status = VoteStatus.TIMEOUT if p.result == VoteResult.TIMEOUT else VoteStatus.COMPLETED
        session.outcome = VoteOutcome(
            result=p.result,
            yes_votes=p.yes_votes,
            no_votes=p.no_votes,
            new_leader_id=p.new_leader.id if p.new_leader else None,
            new_leader_name=p.new_leader.nickname if p.new_leader else None,
        )
        draft.vote_seq += 1
        effects.append(Effect(
            EffectKind.SCHEDULE_VOTE_CLEAR,
            room_side=session.room_side,
            vote_id=session.vote_id,
            delay=self.vote_result_display,
        ))

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _recycle_roster_identity(self, event) -> None:
        """A player may leave and come back with an identical payload; re-arm the opposite event."""
        player_id = event.payload.player.id if isinstance(event, PlayerJoined) else event.payload.player_id
        previous = self._roster_events.pop(player_id, None)
        if previous is not None and isinstance(previous, PlayerJoined) != isinstance(event, PlayerJoined):
            self.dedup.forget(previous)
        self._roster_events[player_id] = event

    def _install_vote(self, draft: SyncState, session: VoteSession, effects: List[Effect]) -> None:
        draft.votes[session.room_side] = session
        draft.vote_seq += 1
        draft.view = ViewState.VOTE
        if session.expires_at is not None:
            delay = max(0.0, (session.expires_at - _utcnow()).total_seconds())
            effects.append(Effect(
                EffectKind.SCHEDULE_VOTE_EXPIRY,
                room_side=session.room_side,
                vote_id=session.vote_id,
                delay=delay,
            ))

    def _leave_vote_view(self, draft: SyncState) -> None:
        if draft.view == ViewState.VOTE and not draft.active_votes:
            draft.view = ViewState.GAME

    def _assign_role(self, draft: SyncState, role: Role, team: TeamColor, side: RoomSide) -> None:
        draft.role, draft.team, draft.room_side = role, team, side
        draft.role_latched = True
        me = draft.room.find_player(draft.self_player_id) if draft.room else None
        if me is not None:
            me.role, me.team, me.current_room = role, team, side
        if draft.view == ViewState.LOBBY:
            draft.view = ViewState.GAME
        logger.info("[%s] Role assigned: %s / %s / %s", self.room_code, role.name or role.id, team.value, side.value)

    def _clear_game_state(self, draft: SyncState, keep_history: bool) -> None:
        draft.role = draft.team = draft.room_side = None
        draft.role_latched = False
        draft.game_instance_id = None
        draft.round = None
        draft.votes = {}
        draft.shown_exchange_rounds = []
        draft.animations_shown = 0
        draft.pending_animation_round = None
        draft.reveal_message = None
        if not keep_history:
            draft.history = []

    def _merge_own_entry(self, draft: SyncState, snapshot: RoomSnapshot, effects: List[Effect], stale: bool) -> None:
        me = snapshot.find_player(draft.self_player_id)
        if me is None:
            return
        if me.is_owner != draft.is_owner:
            draft.is_owner = me.is_owner
            effects.append(Effect(EffectKind.PERSIST, reason="owner"))
        in_game = snapshot.status in (RoomStatus.IN_PROGRESS, RoomStatus.REVEALING, RoomStatus.COMPLETED)
        if draft.role_latched:
            if me.current_room:
                draft.room_side = me.current_room
        elif not stale and in_game and me.role and me.team and me.current_room:
            self._assign_role(draft, me.role, me.team, me.current_room)

    def _view_from_status(self, draft: SyncState, snapshot: RoomSnapshot, stale: bool) -> None:
        if stale:
            return
        status = snapshot.status
        if status in (RoomStatus.REVEALING, RoomStatus.COMPLETED):
            draft.view = ViewState.REVEAL
        elif status == RoomStatus.IN_PROGRESS:
            if draft.view == ViewState.LOBBY and draft.has_assignment:
                draft.view = ViewState.GAME
        elif status == RoomStatus.WAITING:
            if draft.view == ViewState.GAME and draft.role_latched and snapshot.game_session is None:
                # GAME_RESET was missed; snapshots never drop history
                logger.info("[%s] Snapshot shows the game was reset — back to lobby", self.room_code)
                self._clear_game_state(draft, keep_history=True)
                draft.view = ViewState.LOBBY

    @staticmethod
    def _merge_sides(room: RoomSnapshot, players: List[Player]) -> None:
        sides = {p.id: p.current_room for p in players if p.current_room}
        for p in room.players:
            if p.id in sides:
                p.current_room = sides[p.id]

    def _current_round(self, draft: SyncState, round_number: int, effects: List[Effect]) -> Optional[RoundState]:
        if draft.round is None or draft.round.round_number != round_number:
            effects.append(Effect(EffectKind.REHYDRATE_ROUND, reason=f"round {round_number} unknown"))
            return None
        return draft.round

    @staticmethod
    def _round_marker(draft: SyncState) -> str:
        return f"round:{draft.round.round_number}" if draft.round else "round:0"

    @staticmethod
    def _append_history(draft: SyncState, entry: HistoryEvent) -> bool:
        if any(h.key == entry.key for h in draft.history):
            return False
        draft.history.append(entry)
        return True
