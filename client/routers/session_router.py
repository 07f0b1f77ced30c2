"""
Companion HTTP endpoints — the presentation layer's window onto room sessions.

Routes:
  POST   /api/sessions                          — Open a session (initial load, join, connect)
  GET    /api/sessions/{code}                   — Merged view-state + connection status
  POST   /api/sessions/{code}/reconnect         — Manual reconnect (resets retry counter)
  POST   /api/sessions/{code}/reload            — Retry a failed initial load
  POST   /api/sessions/{code}/animation/ack     — Pending exchange animation was shown
  POST   /api/sessions/{code}/actions/{action}  — Forward a user intent to the game server
  DELETE /api/sessions/{code}                   — Leave: tear the session down
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from sync.channel_manager import is_valid_room_code
from sync.room_session import InitialLoadError, RoomSession, session_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


class OpenSessionRequest(BaseModel):
    room_code: str
    player_id: Optional[str] = None


def _require(room_code: str) -> RoomSession:
    session = session_manager.get(room_code)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for room {room_code.upper()}")
    return session


def _load_failed(session: RoomSession, exc: InitialLoadError) -> JSONResponse:
    status = 404 if exc.cause.code == "ROOM_NOT_FOUND" else 502
    return JSONResponse(status_code=status, content=session.view())


@router.post("/sessions", status_code=201)
async def open_session(req: OpenSessionRequest):
    code = req.room_code.strip().upper()
    if not is_valid_room_code(code):
        raise HTTPException(status_code=400, detail="Invalid room code")
    try:
        session = await session_manager.open(code, req.player_id)
    except InitialLoadError as exc:
        return _load_failed(session_manager.get(code), exc)
    return session.view()


@router.get("/sessions/{room_code}")
async def get_session(room_code: str):
    return _require(room_code).view()


@router.post("/sessions/{room_code}/reconnect")
async def reconnect(room_code: str):
    session = _require(room_code)
    if session.channel is None:
        raise HTTPException(status_code=409, detail="Session has not finished loading")
    status = await session.manual_reconnect()
    return status.to_wire()


@router.post("/sessions/{room_code}/reload")
async def reload_session(room_code: str):
    session = _require(room_code)
    try:
        await session.retry_load()
    except InitialLoadError as exc:
        return _load_failed(session, exc)
    return session.view()


@router.post("/sessions/{room_code}/animation/ack")
async def ack_animation(room_code: str):
    session = _require(room_code)
    await session.ack_animation()
    return session.view()


@router.post("/sessions/{room_code}/actions/{action}")
async def perform_action(room_code: str, action: str, params: Optional[Dict[str, Any]] = Body(default=None)):
    session = _require(room_code)
    if not session.loaded:
        raise HTTPException(status_code=409, detail="Session has not finished loading")
    result = await session.perform(action, params)
    if result.ok and action == "leave":
        await session_manager.close(room_code)
    return result.model_dump()


@router.delete("/sessions/{room_code}")
async def close_session(room_code: str):
    if not await session_manager.close(room_code):
        raise HTTPException(status_code=404, detail=f"No session for room {room_code.upper()}")
    return {"status": "closed", "roomCode": room_code.upper()}
