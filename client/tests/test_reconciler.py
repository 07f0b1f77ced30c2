import pytest

from conftest import ROOM, ev, lobby_player, player, snapshot_doc
from models.events import _Event
from models.room import (
    ActiveVoteDoc,
    RoomSide,
    RoomSnapshot,
    RoomStatus,
    RoundPhase,
    RoundStatusDoc,
    ViewState,
    VoteStatus,
    VoteType,
)
from sync.reconciler import EffectKind, Reconciler

RED, BLUE = RoomSide.RED_ROOM, RoomSide.BLUE_ROOM

ROLE_ASSIGNED = {
    "role": {"id": "blue_team", "name": "Blue Team", "team": "BLUE"},
    "team": "BLUE",
    "currentRoom": "RED_ROOM",
}
ROUND_1 = {
    "roundNumber": 1,
    "duration": 180,
    "timeRemaining": 180,
    "redLeader": {"id": "p2", "nickname": "P2"},
    "blueLeader": {"id": "p3", "nickname": "P3"},
    "hostageCount": 1,
}


def removal_vote(vote_id="v1", side="RED_ROOM", **extra):
    payload = {
        "voteId": vote_id,
        "roomColor": side,
        "voteType": "REMOVAL",
        "targetLeader": {"id": "p2", "nickname": "P2"},
        "totalVoters": 3,
        "timeoutSeconds": 30,
    }
    payload.update(extra)
    return ev("VOTE_SESSION_STARTED", payload)


def vote_result(vote_id="v1", result="PASSED"):
    return ev("VOTE_COMPLETED", {
        "voteId": vote_id, "result": result, "yesVotes": 3, "noVotes": 0,
        "newLeader": {"id": "p4", "nickname": "P4"},
    })


def exchange(round_number, *records, **extra):
    return ev("EXCHANGE_COMPLETE", dict({"roundNumber": round_number, "exchanges": list(records)}, **extra))


def record(pid, ts, from_room="RED_ROOM", to_room="BLUE_ROOM"):
    return {"playerId": pid, "playerName": pid.upper(), "fromRoom": from_room, "toRoom": to_room, "timestamp": ts}


def loaded(players=None, status="WAITING", **kwargs) -> Reconciler:
    rec = Reconciler(ROOM, "p1", animation_cap=kwargs.pop("animation_cap", 2), vote_result_display=3.0)
    doc = snapshot_doc(
        status=status,
        players=players or [player("p1", owner=True), player("p2"), player("p3"), player("p4")],
    )
    rec.load(RoomSnapshot.model_validate(doc), "p1", is_owner=True)
    return rec


@pytest.fixture()
def rec():
    return loaded()


@pytest.fixture()
def in_game(rec):
    rec.apply_event(ev("ROLE_ASSIGNED", ROLE_ASSIGNED))
    rec.apply_event(ev("ROUND_STARTED", ROUND_1))
    assert rec.state.view == ViewState.GAME
    return rec


def comparable(state):
    return state.model_dump(exclude={"updated_at"})


# ── Dispatch coverage ─────────────────────────────────────────────────────────

def test_every_event_class_has_a_handler(rec):
    assert set(rec.handled_types) == set(_Event.__subclasses__())


# ── Roster ────────────────────────────────────────────────────────────────────

def test_player_joined_twice_leaves_one_entry():
    rec = Reconciler(ROOM, "me")
    assert rec.apply_event(ev("PLAYER_JOINED", {"player": player("p1")})).applied
    assert [p.id for p in rec.state.room.players] == ["p1"]

    assert not rec.apply_event(ev("PLAYER_JOINED", {"player": player("p1")})).applied
    assert [p.id for p in rec.state.room.players] == ["p1"]


def test_join_append_is_idempotent_without_dedup():
    rec = Reconciler(ROOM, "me")
    rec.apply_event(ev("PLAYER_JOINED", {"player": player("p1", nickname="Ann")}))
    # Different payload passes the deduplicator; presence by id still holds
    assert rec.apply_event(ev("PLAYER_JOINED", {"player": player("p1", nickname="Annie")})).applied
    assert [p.id for p in rec.state.room.players] == ["p1"]


def test_second_owner_flag_is_dropped(rec):
    rec.apply_event(ev("PLAYER_JOINED", {"player": player("p9", owner=True)}))
    owners = [p.id for p in rec.state.room.players if p.is_owner]
    assert owners == ["p1"]


def test_snapshot_roster_normalized():
    doc = snapshot_doc(players=[player("a", owner=True), player("b", owner=True), player("a")])
    snap = RoomSnapshot.model_validate(doc)
    assert [p.id for p in snap.players] == ["a", "b"]
    assert [p.id for p in snap.players if p.is_owner] == ["a"]


def test_merge_snapshot_keeps_roster_invariants(in_game):
    doc = snapshot_doc(
        status="IN_PROGRESS",
        players=[player("p1", owner=True), player("p2", owner=True), player("p2"), player("p3")],
    )
    in_game.merge_snapshot(RoomSnapshot.model_validate(doc))
    ids = [p.id for p in in_game.state.room.players]
    assert len(ids) == len(set(ids))
    assert sum(p.is_owner for p in in_game.state.room.players) == 1


def test_player_can_leave_and_rejoin_with_same_payload(rec):
    joined = {"player": player("p9")}
    rec.apply_event(ev("PLAYER_JOINED", joined))
    rec.apply_event(ev("PLAYER_LEFT", {"playerId": "p9"}))
    assert rec.state.room.find_player("p9") is None

    assert rec.apply_event(ev("PLAYER_JOINED", joined)).applied
    assert rec.state.room.find_player("p9") is not None
    assert not rec.apply_event(ev("PLAYER_JOINED", joined)).applied


def test_nickname_changed_clears_anonymity():
    rec = Reconciler(ROOM, "me")
    rec.apply_event(ev("PLAYER_JOINED", {"player": {"id": "p1", "nickname": "", "isAnonymous": True}}))
    rec.apply_event(ev("NICKNAME_CHANGED", {"playerId": "p1", "newNickname": "Ann"}))
    p1 = rec.state.room.find_player("p1")
    assert (p1.nickname, p1.is_anonymous) == ("Ann", False)


def test_owner_changed_moves_the_single_owner_flag(rec):
    outcome = rec.apply_event(ev("OWNER_CHANGED", {"newOwner": player("p2", owner=True)}))
    assert [p.id for p in rec.state.room.players if p.is_owner] == ["p2"]
    assert rec.state.is_owner is False
    assert outcome.has(EffectKind.PERSIST)


def test_lobby_player_documents_reach_the_roster():
    rec = loaded(players=[lobby_player("p1", owner=True), lobby_player("p2")])
    p2 = rec.state.room.find_player("p2")
    assert (p2.team, p2.current_room) == (None, None)

    assert rec.apply_event(ev("PLAYER_JOINED", {"player": lobby_player("p3")})).applied
    assert rec.state.room.find_player("p3").is_anonymous

    assert rec.apply_event(ev("OWNER_CHANGED", {"newOwner": lobby_player("p2", owner=True)})).applied
    assert [p.id for p in rec.state.room.players if p.is_owner] == ["p2"]


def test_room_closed_is_terminal(rec):
    outcome = rec.apply_event(ev("ROOM_CLOSED", {"reason": "Owner left"}))
    assert rec.state.closed_reason == "Owner left"
    assert outcome.has(EffectKind.ROOM_CLOSED)
    assert outcome.has(EffectKind.CANCEL_TIMERS)


# ── Idempotence ───────────────────────────────────────────────────────────────

SEQUENCE = [
    ("PLAYER_JOINED", {"player": player("p5")}),
    ("NICKNAME_CHANGED", {"playerId": "p5", "newNickname": "Eve"}),
    ("ROLE_ASSIGNED", ROLE_ASSIGNED),
    ("ROUND_STARTED", ROUND_1),
    ("TIMER_TICK", {"roundNumber": 1, "timeRemaining": 120}),
    ("LEADER_READY", {"roomColor": "RED_ROOM", "leaderId": "p2"}),
    ("VOTE_SESSION_STARTED", {
        "voteId": "v1", "roomColor": "RED_ROOM", "voteType": "REMOVAL",
        "totalVoters": 3, "timeoutSeconds": 30, "startedAt": "2030-01-01T00:00:00Z",
    }),
    ("VOTE_PROGRESS", {"voteId": "v1", "votedCount": 2, "totalVoters": 3}),
    ("VOTE_COMPLETED", {"voteId": "v1", "result": "PASSED", "newLeader": {"id": "p4"}}),
    ("LEADERSHIP_CHANGED", {
        "roomColor": "RED_ROOM", "newLeader": {"id": "p4", "nickname": "P4"},
        "oldLeader": {"id": "p2"}, "reason": "VOTE_REMOVAL", "timestamp": "2030-01-01T00:01:00Z",
    }),
    ("LEADER_ANNOUNCED_HOSTAGES", {"roomColor": "RED_ROOM", "hostages": [{"id": "p1"}]}),
    ("EXCHANGE_COMPLETE", {"roundNumber": 1, "exchanges": [record("p1", "2030-01-01T00:03:00Z")]}),
    ("PLAYER_DISCONNECTED", {"playerId": "p5"}),
]


def test_applying_every_event_twice_matches_applying_once():
    once, twice = loaded(), loaded()
    for tag, payload in SEQUENCE:
        once.apply_event(ev(tag, payload))
        twice.apply_event(ev(tag, payload))
        twice.apply_event(ev(tag, payload))
    assert comparable(once.state) == comparable(twice.state)


# ── Role assignment / view transitions ────────────────────────────────────────

def test_game_started_without_own_role_pulls_snapshot(rec):
    outcome = rec.apply_event(ev("GAME_STARTED", {"gameSession": {"id": "g1", "roundNumber": 1}}))
    assert rec.state.view == ViewState.LOBBY
    assert [e.reason for e in outcome.effects if e.kind == EffectKind.FETCH_SNAPSHOT] == ["self_role"]

    doc = snapshot_doc(
        status="IN_PROGRESS",
        players=[
            player("p1", owner=True, role={"id": "red_team", "team": "RED"}, team="RED", currentRoom="BLUE_ROOM"),
            player("p2"),
        ],
        game_session={"id": "g1", "roundNumber": 1},
    )
    rec.merge_snapshot(RoomSnapshot.model_validate(doc), requested_seq=rec.state.status_seq)
    assert rec.state.view == ViewState.GAME
    assert rec.state.role_latched
    assert rec.state.room_side == BLUE


def test_game_started_carrying_own_role_goes_straight_to_game(rec):
    session = {
        "id": "g1",
        "redTeam": [player("p1", role={"id": "bomber", "team": "RED"}, team="RED", currentRoom="RED_ROOM")],
    }
    outcome = rec.apply_event(ev("GAME_STARTED", {"gameSession": session}))
    assert rec.state.view == ViewState.GAME
    assert rec.state.role.id == "bomber"
    assert rec.state.game_instance_id == "g1"
    assert not outcome.has(EffectKind.FETCH_SNAPSHOT)


def test_role_assigned_latches_once(rec):
    rec.apply_event(ev("ROLE_ASSIGNED", ROLE_ASSIGNED))
    assert rec.state.view == ViewState.GAME
    assert rec.state.room.status == RoomStatus.IN_PROGRESS

    other = dict(ROLE_ASSIGNED, role={"id": "president", "team": "BLUE"})
    rec.apply_event(ev("ROLE_ASSIGNED", other))
    assert rec.state.role.id == "blue_team"


def test_partial_role_assignment_waits_for_snapshot(rec):
    outcome = rec.apply_event(ev("ROLE_ASSIGNED", {"role": {"id": "blue_team", "team": "BLUE"}}))
    assert rec.state.view == ViewState.LOBBY
    assert not rec.state.role_latched
    assert outcome.has(EffectKind.FETCH_SNAPSHOT)


def _enter_reveal(rec):
    rec.merge_snapshot(RoomSnapshot.model_validate(snapshot_doc(status="REVEALING", players=[player("p1")])))


@pytest.mark.parametrize("prior", ["game", "vote", "reveal"])
def test_game_reset_always_returns_to_lobby(in_game, prior):
    if prior == "vote":
        in_game.apply_event(removal_vote())
    elif prior == "reveal":
        _enter_reveal(in_game)
    assert in_game.state.view.value == prior

    outcome = in_game.apply_event(ev("GAME_RESET", {}))
    state = in_game.state
    assert state.view == ViewState.LOBBY
    assert state.round is None
    assert state.votes == {}
    assert (state.role, state.team, state.room_side) == (None, None, None)
    assert not state.role_latched
    assert state.shown_exchange_rounds == [] and state.animations_shown == 0
    assert outcome.has(EffectKind.CANCEL_TIMERS)


def test_role_latch_rearmed_by_reset(in_game):
    in_game.apply_event(ev("GAME_RESET", {}))
    assert in_game.apply_event(ev("ROLE_ASSIGNED", ROLE_ASSIGNED)).applied
    assert in_game.state.role_latched
    assert in_game.state.view == ViewState.GAME


def test_consecutive_games_can_each_be_reset(in_game):
    in_game.apply_event(ev("GAME_RESET", {}))
    in_game.apply_event(ev("ROLE_ASSIGNED", ROLE_ASSIGNED))
    assert in_game.apply_event(ev("GAME_RESET", {})).applied
    assert in_game.state.view == ViewState.LOBBY


def test_game_reset_carrying_the_lobby_room(in_game):
    room = snapshot_doc(players=[lobby_player("p1", owner=True), lobby_player("p2")])
    outcome = in_game.apply_event(ev("GAME_RESET", {"room": room}))
    assert outcome.applied
    state = in_game.state
    assert state.view == ViewState.LOBBY
    assert state.room.status == RoomStatus.WAITING
    assert all(p.current_room is None for p in state.room.players)


def test_game_revealing_defers_to_snapshot(in_game):
    outcome = in_game.apply_event(ev("GAME_REVEALING", {"message": "Reveal!"}))
    assert in_game.state.view == ViewState.GAME
    assert in_game.state.reveal_message == "Reveal!"
    assert outcome.has(EffectKind.FETCH_SNAPSHOT)
    _enter_reveal(in_game)
    assert in_game.state.view == ViewState.REVEAL


# ── Votes ─────────────────────────────────────────────────────────────────────

def test_vote_session_enters_vote_view(in_game):
    outcome = in_game.apply_event(removal_vote())
    assert in_game.state.view == ViewState.VOTE
    session = in_game.state.votes[RED]
    assert session.status == VoteStatus.ACTIVE
    assert session.vote_type == VoteType.REMOVAL
    expiry = [e for e in outcome.effects if e.kind == EffectKind.SCHEDULE_VOTE_EXPIRY]
    assert len(expiry) == 1 and 29 < expiry[0].delay <= 30


def test_vote_result_then_clear_returns_to_game(in_game):
    in_game.apply_event(removal_vote())
    outcome = in_game.apply_event(vote_result())
    clear = [e for e in outcome.effects if e.kind == EffectKind.SCHEDULE_VOTE_CLEAR]
    assert clear[0].vote_id == "v1" and clear[0].delay == 3.0
    assert in_game.state.view == ViewState.VOTE
    assert in_game.state.votes[RED].outcome.result.value == "PASSED"

    in_game.clear_vote(RED, "v1")
    assert in_game.state.view == ViewState.GAME
    assert in_game.state.votes == {}


def test_election_started_within_display_window_keeps_vote_view(in_game):
    in_game.apply_event(removal_vote())
    in_game.apply_event(vote_result())
    in_game.apply_event(ev("VOTE_SESSION_STARTED", {
        "voteId": "v2", "roomColor": "RED_ROOM", "candidates": ["p3", "p4"], "timeoutSeconds": 30,
    }))
    # Display window for v1 elapses
    in_game.clear_vote(RED, "v1")
    assert in_game.state.view == ViewState.VOTE
    election = in_game.state.votes[RED]
    assert election.vote_id == "v2"
    assert election.vote_type == VoteType.ELECTION
    assert election.is_active


def test_second_session_on_busy_side_is_not_installed(in_game):
    in_game.apply_event(removal_vote("v1"))
    in_game.apply_event(removal_vote("v2"))
    assert in_game.state.votes[RED].vote_id == "v1"


def test_vote_progress_updates_counts(in_game):
    in_game.apply_event(removal_vote())
    in_game.apply_event(ev("VOTE_PROGRESS", {"voteId": "v1", "votedCount": 2, "totalVoters": 3}))
    assert in_game.state.votes[RED].voted_count == 2


def test_expire_vote_marks_timeout(in_game):
    in_game.apply_event(removal_vote())
    outcome = in_game.expire_vote(RED, "v1")
    assert in_game.state.votes[RED].status == VoteStatus.TIMEOUT
    assert outcome.has(EffectKind.SCHEDULE_VOTE_CLEAR)


def test_vote_driven_leadership_change_leaves_stale_vote_view(in_game):
    in_game.apply_event(removal_vote())
    in_game.apply_event(vote_result())
    assert in_game.state.view == ViewState.VOTE

    in_game.apply_event(ev("LEADERSHIP_CHANGED", {
        "roomColor": "RED_ROOM", "oldLeader": {"id": "p2"}, "newLeader": {"id": "p4", "nickname": "P4"},
        "reason": "VOTE_REMOVAL", "timestamp": "2030-01-01T00:01:00Z",
    }))
    state = in_game.state
    assert state.view == ViewState.GAME
    assert state.round.red.leader_id == "p4"
    assert [(h.kind.value, h.subject_id) for h in state.history] == [("LEADERSHIP_CHANGE", "p4")]


def test_voluntary_leadership_change_keeps_active_vote(in_game):
    in_game.apply_event(removal_vote(side="BLUE_ROOM"))
    in_game.apply_event(ev("LEADERSHIP_CHANGED", {
        "roomColor": "RED_ROOM", "newLeader": {"id": "p4"}, "reason": "VOLUNTARY_TRANSFER",
        "timestamp": "2030-01-01T00:02:00Z",
    }))
    assert in_game.state.view == ViewState.VOTE


# ── Round / hostages ──────────────────────────────────────────────────────────

def test_timer_tick_for_unknown_round_requests_rehydration(rec):
    outcome = rec.apply_event(ev("TIMER_TICK", {"roundNumber": 2, "timeRemaining": 50}))
    assert outcome.has(EffectKind.REHYDRATE_ROUND)


def test_round_lifecycle(in_game):
    in_game.apply_event(ev("TIMER_TICK", {"roundNumber": 1, "timeRemaining": 42}))
    assert in_game.state.round.time_remaining == 42
    assert in_game.state.round.to_wire()["elapsed"] == 138
    in_game.apply_event(ev("ROUND_ENDING", {"roundNumber": 1, "hostageCount": 1}))
    assert in_game.state.round.phase == RoundPhase.SELECTING
    in_game.apply_event(ev("LEADER_ANNOUNCED_HOSTAGES", {"roomColor": "RED_ROOM", "hostages": [{"id": "p1"}]}))
    in_game.apply_event(ev("LEADER_ANNOUNCED_HOSTAGES", {"roomColor": "BLUE_ROOM", "hostages": [{"id": "p4"}]}))
    assert in_game.state.round.phase == RoundPhase.EXCHANGING
    in_game.apply_event(ev("ROUND_ENDED", {"roundNumber": 1}))
    assert in_game.state.round.phase == RoundPhase.COMPLETE


def test_leader_is_never_its_own_hostage(in_game):
    in_game.apply_event(ev("LEADER_ANNOUNCED_HOSTAGES", {
        "roomColor": "RED_ROOM", "hostages": [{"id": "p2"}, {"id": "p1"}],
    }))
    assert in_game.state.round.red.hostages == ["p1"]


def test_too_many_hostages_rejected_without_partial_mutation(in_game):
    before = comparable(in_game.state)
    outcome = in_game.apply_event(ev("LEADER_ANNOUNCED_HOSTAGES", {
        "roomColor": "RED_ROOM", "hostages": [{"id": "p1"}, {"id": "p4"}],
    }))
    assert not outcome.applied
    assert comparable(in_game.state) == before


def test_hostage_count_fixed_once_announced(in_game):
    in_game.apply_event(ev("LEADER_ANNOUNCED_HOSTAGES", {"roomColor": "RED_ROOM", "hostages": [{"id": "p1"}]}))
    in_game.apply_event(ev("ROUND_ENDING", {"roundNumber": 1, "hostageCount": 3}))
    assert in_game.state.round.hostage_count == 1


# ── Exchanges / animation cap ─────────────────────────────────────────────────

def test_repeated_exchange_for_same_round_marks_one_animation(in_game):
    in_game.apply_event(exchange(1, record("p1", "t1")))
    in_game.ack_animation()
    in_game.apply_event(exchange(1, record("p4", "t2", "BLUE_ROOM", "RED_ROOM")))
    in_game.apply_event(exchange(1, record("p4", "t2", "BLUE_ROOM", "RED_ROOM"), nextRound=2))
    assert in_game.state.pending_animation_round is None
    assert in_game.state.animations_shown == 1
    assert len(in_game.state.history) == 2


def test_animation_cap_spans_the_session():
    rec = loaded(animation_cap=2)
    rec.apply_event(ev("ROLE_ASSIGNED", ROLE_ASSIGNED))
    for n in (1, 2, 3):
        rec.apply_event(exchange(n, record("p2", f"t{n}")))
        if rec.state.pending_animation_round == n:
            rec.ack_animation()
    assert rec.state.animations_shown == 2
    assert rec.state.shown_exchange_rounds == [1, 2]
    assert rec.state.pending_animation_round is None


def test_animation_cap_is_configurable():
    rec = loaded(animation_cap=0)
    rec.apply_event(exchange(1, record("p2", "t1")))
    assert rec.state.pending_animation_round is None


def test_exchange_moves_players_and_me(in_game):
    in_game.apply_event(exchange(1, record("p1", "t1", "RED_ROOM", "BLUE_ROOM")))
    assert in_game.state.room_side == BLUE
    assert in_game.state.room.find_player("p1").current_room == BLUE
    assert in_game.state.pending_animation_round == 1


# ── Snapshot merge rules ──────────────────────────────────────────────────────

def test_snapshot_never_removes_history(in_game):
    in_game.apply_event(exchange(1, record("p1", "t1")))
    in_game.merge_snapshot(RoomSnapshot.model_validate(snapshot_doc(status="IN_PROGRESS", players=[player("p1")])))
    assert len(in_game.state.history) == 1


def test_snapshot_does_not_leave_vote_view(in_game):
    in_game.apply_event(removal_vote())
    in_game.merge_snapshot(RoomSnapshot.model_validate(snapshot_doc(status="IN_PROGRESS", players=[player("p1")])))
    assert in_game.state.view == ViewState.VOTE


def test_reveal_is_sticky(in_game):
    _enter_reveal(in_game)
    in_game.merge_snapshot(RoomSnapshot.model_validate(snapshot_doc(status="IN_PROGRESS", players=[player("p1")])))
    assert in_game.state.view == ViewState.REVEAL


def test_stale_snapshot_status_ignored(rec):
    requested = rec.state.status_seq
    rec.apply_event(ev("ROLE_ASSIGNED", ROLE_ASSIGNED))
    # Snapshot was requested before the game started
    rec.merge_snapshot(RoomSnapshot.model_validate(snapshot_doc(status="WAITING", players=[player("p1")])), requested)
    assert rec.state.room.status == RoomStatus.IN_PROGRESS
    assert rec.state.view == ViewState.GAME


def test_missed_reset_detected_from_snapshot(in_game):
    in_game.apply_event(exchange(1, record("p1", "t1")))
    in_game.merge_snapshot(
        RoomSnapshot.model_validate(snapshot_doc(status="WAITING", players=[player("p1", owner=True)])),
        in_game.state.status_seq,
    )
    assert in_game.state.view == ViewState.LOBBY
    assert not in_game.state.role_latched
    assert len(in_game.state.history) == 1


def test_snapshot_updates_owner_flag(rec):
    outcome = rec.merge_snapshot(RoomSnapshot.model_validate(snapshot_doc(players=[player("p2", owner=True), player("p1")])))
    assert rec.state.is_owner is False
    assert outcome.has(EffectKind.PERSIST)


def test_needs_polling():
    rec = loaded()
    assert not rec.needs_polling
    rec.apply_event(ev("ROLE_ASSIGNED", ROLE_ASSIGNED))
    assert rec.needs_polling


# ── Rehydration ───────────────────────────────────────────────────────────────

def test_round_status_rehydrates_missing_round(rec):
    doc = RoundStatusDoc.model_validate({
        "roundNumber": 2, "timeRemaining": 60, "duration": 120, "status": "ACTIVE",
        "redLeader": "p2", "blueLeader": "p3", "hostageCount": 1,
    })
    rec.merge_round_status(doc)
    assert rec.state.round.round_number == 2
    assert rec.state.round.red.leader_id == "p2"

    older = doc.model_copy(update={"round_number": 1, "time_remaining": 5})
    rec.merge_round_status(older)
    assert rec.state.round.round_number == 2
    assert rec.state.round.time_remaining == 60


def test_vote_status_rehydrates_missing_session(in_game):
    doc = ActiveVoteDoc.model_validate({
        "voteId": "v7", "roomColor": "BLUE_ROOM", "voteType": "REMOVAL",
        "targetLeaderId": "p3", "totalVoters": 4, "votedCount": 1, "timeRemaining": 20,
    })
    outcome = in_game.merge_vote_status(BLUE, doc, in_game.state.vote_seq)
    assert in_game.state.view == ViewState.VOTE
    assert in_game.state.votes[BLUE].voted_count == 1
    assert outcome.has(EffectKind.SCHEDULE_VOTE_EXPIRY)


def test_empty_vote_status_drops_session_unless_stale(in_game):
    requested = in_game.state.vote_seq
    in_game.apply_event(removal_vote())
    in_game.merge_vote_status(RED, None, requested)
    assert RED in in_game.state.votes

    in_game.merge_vote_status(RED, None, in_game.state.vote_seq)
    assert RED not in in_game.state.votes
    assert in_game.state.view == ViewState.GAME
