import asyncio
import json
import os
import sys

import httpx
import pytest

# Ensure the client source root (config.py, models/, sync/ ...) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
CLIENT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if CLIENT_ROOT not in sys.path:
    sys.path.insert(0, CLIENT_ROOT)

from models.events import decode_event
from services.api_client import GameApiClient

ROOM = "ABC123"


def player(pid, nickname=None, owner=False, **extra):
    doc = {"id": pid, "nickname": nickname or pid.upper(), "isAnonymous": False, "isOwner": owner}
    doc.update(extra)
    return doc


def lobby_player(pid, nickname=None, owner=False):
    """A player document exactly as the server sends it before the game starts."""
    return {
        "id": pid,
        "nickname": nickname or f"Player {pid}",
        "isAnonymous": nickname is None,
        "roomCode": ROOM,
        "isOwner": owner,
        "role": None,
        "team": "",
        "currentRoom": "",
        "connectedAt": "2030-01-01T00:00:00Z",
    }


def snapshot_doc(status="WAITING", players=None, game_session=None, code=ROOM):
    return {
        "code": code,
        "status": status,
        "players": players if players is not None else [],
        "maxPlayers": 30,
        "gameSession": game_session,
    }


def ev(tag, payload=None):
    """Decode a wire document the same way the channel does."""
    return decode_event({"type": tag, "payload": payload})


def frame(*docs):
    return "\n".join(json.dumps(d) for d in docs)


async def wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ── Fake push channel ─────────────────────────────────────────────────────────

class FakeConnection:
    """Stands in for a websockets client connection."""

    def __init__(self, messages=(), close_code=1006, hold=False):
        self._messages = list(messages)
        self.close_code = close_code
        self.hold = hold
        self.sent = []
        self.closed = False
        self._closed_event = asyncio.Event()

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self._messages:
            yield message
        if self.hold:
            await self._closed_event.wait()

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        self._closed_event.set()


class FakeConnector:
    """Returns (or raises) queued outcomes, one per handshake; refuses once drained."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def calls(self):
        return len(self.urls)


# ── Fake game server (REST) ───────────────────────────────────────────────────

class FakeGameServer:
    """
    Minimal in-memory stand-in for the game server's REST API, mounted
    through httpx.MockTransport.
    """

    def __init__(self, snapshot=None):
        self.snapshot = snapshot or snapshot_doc(players=[player("p1", owner=True)])
        self.round_status = None
        self.votes = {"RED_ROOM": None, "BLUE_ROOM": None}
        self.requests = []
        self.fail_snapshot = 0
        self.next_player_id = "p-new"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        prefix = f"/api/v1/rooms/{ROOM}"
        if request.method == "GET" and path == prefix:
            if self.fail_snapshot:
                self.fail_snapshot -= 1
                return httpx.Response(503, json={"error": "unavailable"})
            return httpx.Response(200, json=self.snapshot)
        if request.method == "GET" and path == f"{prefix}/rounds/current":
            if self.round_status is None:
                return httpx.Response(404, json={"error": "no active round"})
            return httpx.Response(200, json=self.round_status)
        if request.method == "GET" and path == f"{prefix}/votes/current":
            side = request.url.params.get("roomColor")
            return httpx.Response(200, json={"activeVote": self.votes.get(side)})
        if request.method == "POST" and path == f"{prefix}/players":
            joined = lobby_player(self.next_player_id)
            self.snapshot["players"].append(joined)
            return httpx.Response(201, json=joined)
        if request.method in ("POST", "PATCH", "DELETE"):
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"code": "ROOM_NOT_FOUND", "message": "Room not found"})

    def client(self) -> GameApiClient:
        return GameApiClient(base_url="http://server.test", transport=httpx.MockTransport(self.handler))


@pytest.fixture()
def server():
    return FakeGameServer()


@pytest.fixture()
def api(server):
    return server.client()
