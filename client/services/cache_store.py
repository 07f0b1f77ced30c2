"""
Cross-reload cache, scoped by room code.

Holds the participant's own id, owner flag and the append-only history list.
Read once when a session opens, written whenever history changes.
"""
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ValidationError

from config import settings
from models.room import HistoryEvent

logger = logging.getLogger(__name__)


class CachedRoom(BaseModel):
    player_id: Optional[str] = None
    is_owner: bool = False
    history: List[HistoryEvent] = []


class MemoryCacheStore:
    """Dictionary-backed store suitable for tests."""

    def __init__(self):
        self._rooms: Dict[str, str] = {}

    def load(self, room_code: str) -> CachedRoom:
        raw = self._rooms.get(room_code.upper())
        return CachedRoom.model_validate_json(raw) if raw else CachedRoom()

    def save(self, room_code: str, entry: CachedRoom) -> None:
        # Serialized so callers cannot mutate the stored value
        self._rooms[room_code.upper()] = entry.model_dump_json()

    def clear(self, room_code: str) -> None:
        self._rooms.pop(room_code.upper(), None)


class JsonFileCacheStore:
    """One JSON document per room under `cache_dir`."""

    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = Path(cache_dir or settings.cache_dir)

    def _path(self, room_code: str) -> Path:
        return self.cache_dir / f"room_{room_code.upper()}.json"

    def load(self, room_code: str) -> CachedRoom:
        path = self._path(room_code)
        if not path.exists():
            return CachedRoom()
        try:
            return CachedRoom.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError):
            logger.warning("[%s] Ignoring unreadable cache file %s", room_code, path, exc_info=True)
            return CachedRoom()

    def save(self, room_code: str, entry: CachedRoom) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(room_code)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(entry.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def clear(self, room_code: str) -> None:
        self._path(room_code).unlink(missing_ok=True)
