"""
Room session — wires channel, pull, reconciler, cache and actions for one room.

Startup:
  1. Read the room's cache entry (participant id, owner flag, history)
  2. Pull the initial snapshot; on failure keep an InitialLoadError around
     and let retry_load() try again
  3. Join as a new participant when the cached id is missing from the roster
  4. Load the reconciler, open the push channel, start the poller

Everything that mutates SyncState goes through one asyncio.Queue drained by
a single worker task: channel events, snapshot/round/vote pull results,
vote timers and animation acks. Reconciler effects are executed by the
worker right after the input that produced them.

stop() cancels every timer and background task, closes the channel
intentionally and flushes the cache.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from config import settings
from models.room import ConnectionStatus, RoomSide, SyncState
from services.action_dispatcher import ActionDispatcher, ActionResult
from services.api_client import APIError, GameApiClient, get_api_client
from services.cache_store import CachedRoom, JsonFileCacheStore
from services.snapshot_fetcher import SnapshotFetcher, SnapshotFetchError
from sync.channel_manager import ChannelManager, Connector
from sync.reconciler import Effect, EffectKind, Outcome, Reconciler

logger = logging.getLogger(__name__)


class InitialLoadError(Exception):
    """The first snapshot (or the join that precedes it) could not be obtained."""

    def __init__(self, room_code: str, cause: APIError):
        super().__init__(f"[{room_code}] initial load failed: {cause.code}")
        self.room_code = room_code
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {**self.cause.to_dict(), "retryable": self.cause.code != "ROOM_NOT_FOUND"}


@dataclass
class _Input:
    label: str
    apply: Callable[[], Outcome]
    done: Optional[asyncio.Future] = None


class RoomSession:
    def __init__(
        self,
        room_code: str,
        player_id: Optional[str] = None,
        *,
        api: Optional[GameApiClient] = None,
        cache=None,
        connector: Optional[Connector] = None,
        poll_interval: Optional[float] = None,
        animation_cap: Optional[int] = None,
        vote_result_display: Optional[float] = None,
        auto_join: bool = True,
        on_change: Optional[Callable[[SyncState], None]] = None,
    ):
        self.room_code = room_code.upper()
        self.api = api or get_api_client()
        self.cache = cache if cache is not None else JsonFileCacheStore()
        self.poll_interval = settings.poll_interval if poll_interval is None else poll_interval
        self.auto_join = auto_join
        self._on_change = on_change
        self._connector = connector

        self.fetcher = SnapshotFetcher(self.room_code, self.api)
        self.dispatcher = ActionDispatcher(self.room_code, player_id, self.api)
        self.reconciler = Reconciler(
            self.room_code,
            player_id,
            animation_cap=animation_cap,
            vote_result_display=vote_result_display,
        )
        self.channel: Optional[ChannelManager] = None
        self.load_error: Optional[InitialLoadError] = None
        self.loaded = False
        self.closed = False

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._poller: Optional[asyncio.Task] = None
        self._timers: Dict[Tuple[str, RoomSide], asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ── Read side ─────────────────────────────────────────────────────────────

    @property
    def player_id(self) -> Optional[str]:
        return self.reconciler.state.self_player_id or self.dispatcher.player_id

    @property
    def state(self) -> SyncState:
        return self.reconciler.snapshot_view()

    @property
    def connection(self) -> ConnectionStatus:
        return self.channel.status if self.channel else ConnectionStatus()

    def view(self) -> Dict[str, Any]:
        """Everything the presentation layer renders, as one JSON-ready document."""
        return {
            "roomCode": self.room_code,
            "loaded": self.loaded,
            "loadError": self.load_error.to_dict() if self.load_error else None,
            "state": self.state.to_wire(),
            "connection": self.connection.to_wire(),
        }

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initial load then go live. Raises InitialLoadError; retry_load() resumes."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._work(), name=f"session-{self.room_code}")
        await self._load()
        self._go_live()

    async def retry_load(self) -> None:
        if self.loaded:
            return
        logger.info("[%s] Retrying initial load", self.room_code)
        await self.start()

    async def stop(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._cancel_timers()
        for task in [self._poller, *self._tasks]:
            if task and not task.done():
                task.cancel()
        if self.channel:
            await self.channel.close()
        if self._worker and not self._worker.done():
            self._worker.cancel()
        pending = [t for t in [self._poller, self._worker, *self._tasks] if t]
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._discard_queued()
        if self.loaded:
            self._persist()
        logger.info("[%s] Session stopped", self.room_code)

    async def manual_reconnect(self) -> ConnectionStatus:
        if self.channel is None:
            raise RuntimeError("session is not live")
        return await self.channel.manual_reconnect()

    async def drain(self) -> None:
        """Wait until every queued input has been applied."""
        await self._queue.join()

    async def _load(self) -> None:
        cached = self.cache.load(self.room_code)
        player_id = self.dispatcher.player_id or cached.player_id
        is_owner = cached.is_owner if player_id == cached.player_id else False
        try:
            snapshot = await self.fetcher.fetch_snapshot()
            me = snapshot.find_player(player_id)
            if me is None and self.auto_join:
                if player_id:
                    logger.info("[%s] Cached participant %s not in room — joining again", self.room_code, player_id)
                joined = await self.dispatcher.join()
                if not joined.ok:
                    raise APIError(joined.error["code"], joined.error["message"], joined.error.get("details"))
                player_id = self.dispatcher.player_id
                is_owner = bool(joined.data.get("isOwner"))
                snapshot = await self.fetcher.fetch_snapshot()
            elif me is not None:
                is_owner = me.is_owner
        except APIError as exc:
            self.load_error = InitialLoadError(self.room_code, exc)
            logger.warning("[%s] Initial load failed: %s", self.room_code, exc.code)
            raise self.load_error from exc

        self.dispatcher.player_id = player_id
        history = cached.history if player_id == cached.player_id else []
        outcome = await self._submit(
            "load",
            lambda: self.reconciler.load(snapshot, player_id, is_owner=is_owner, history=history),
        )
        if not outcome.applied:
            self.load_error = InitialLoadError(self.room_code, APIError("INVALID_SNAPSHOT"))
            raise self.load_error
        self.load_error = None
        self.loaded = True
        self._persist()
        logger.info("[%s] Loaded as %s (owner=%s)", self.room_code, player_id, is_owner)

    def _go_live(self) -> None:
        if self.channel is None:
            kwargs = {"connector": self._connector} if self._connector else {}
            self.channel = ChannelManager(
                self.room_code,
                self.player_id,
                self._on_event,
                on_open=self._on_channel_open,
                **kwargs,
            )
        self.channel.connect()
        if self._poller is None or self._poller.done():
            self._poller = asyncio.create_task(self._poll_loop(), name=f"poll-{self.room_code}")

    # ── Actions ───────────────────────────────────────────────────────────────

    async def perform(self, action: str, params: Optional[Dict[str, Any]] = None) -> ActionResult:
        params = dict(params or {})
        current = self.reconciler.state.round
        if action == "select_hostages" and "expected_count" not in params and current and current.hostage_count:
            params["expected_count"] = current.hostage_count
        return await self.dispatcher.dispatch(action, params)

    async def ack_animation(self) -> None:
        await self._submit("animation_ack", self.reconciler.ack_animation)

    # ── Input queue ───────────────────────────────────────────────────────────

    def _enqueue(self, label: str, apply: Callable[[], Outcome], done: Optional[asyncio.Future] = None) -> None:
        if self.closed:
            return
        self._queue.put_nowait(_Input(label, apply, done))

    async def _submit(self, label: str, apply: Callable[[], Outcome]) -> Outcome:
        done = asyncio.get_running_loop().create_future()
        self._enqueue(label, apply, done)
        if self.closed:
            return Outcome(applied=False)
        return await done

    def _on_event(self, event) -> None:
        self._enqueue(event.type, lambda: self.reconciler.apply_event(event))

    async def _work(self) -> None:
        while True:
            item: _Input = await self._queue.get()
            try:
                outcome = item.apply()
                self._run_effects(outcome.effects)
                if outcome.applied and self._on_change:
                    self._on_change(self.reconciler.snapshot_view())
                if item.done and not item.done.done():
                    item.done.set_result(outcome)
            except Exception as exc:
                logger.exception("[%s] Input %s failed", self.room_code, item.label)
                if item.done and not item.done.done():
                    item.done.set_exception(exc)
            finally:
                self._queue.task_done()

    # ── Effects ───────────────────────────────────────────────────────────────

    def _run_effects(self, effects: List[Effect]) -> None:
        for effect in effects:
            kind = effect.kind
            if kind == EffectKind.FETCH_SNAPSHOT:
                self._spawn(self._pull_snapshot(effect.reason))
            elif kind == EffectKind.REHYDRATE_ROUND:
                self._spawn(self._rehydrate_round())
            elif kind == EffectKind.REHYDRATE_VOTES:
                self._spawn(self._rehydrate_votes())
            elif kind == EffectKind.SCHEDULE_VOTE_EXPIRY:
                side, vote_id = effect.room_side, effect.vote_id
                self._schedule(
                    ("expiry", side), effect.delay, "vote_expiry",
                    lambda side=side, vote_id=vote_id: self.reconciler.expire_vote(side, vote_id),
                )
            elif kind == EffectKind.SCHEDULE_VOTE_CLEAR:
                side, vote_id = effect.room_side, effect.vote_id
                self._cancel_timer(("expiry", side))
                self._schedule(
                    ("clear", side), effect.delay, "vote_clear",
                    lambda side=side, vote_id=vote_id: self.reconciler.clear_vote(side, vote_id),
                )
            elif kind == EffectKind.CANCEL_TIMERS:
                self._cancel_timers()
            elif kind == EffectKind.PERSIST:
                self._persist()
            elif kind == EffectKind.ROOM_CLOSED:
                self._spawn(self._close_room(effect.reason))

    def _persist(self) -> None:
        state = self.reconciler.state
        entry = CachedRoom(player_id=state.self_player_id, is_owner=state.is_owner, history=state.history)
        try:
            self.cache.save(self.room_code, entry)
        except OSError:
            logger.warning("[%s] Could not write cache", self.room_code, exc_info=True)

    async def _close_room(self, reason: str) -> None:
        logger.warning("[%s] Room closed: %s", self.room_code, reason)
        if self._poller and not self._poller.done():
            self._poller.cancel()
        if self.channel:
            await self.channel.close()

    # ── Pull ──────────────────────────────────────────────────────────────────

    async def _pull_snapshot(self, reason: str) -> None:
        requested_seq = self.reconciler.state.status_seq
        try:
            snapshot = await self.fetcher.fetch_snapshot()
        except SnapshotFetchError as exc:
            # State is kept as-is; the next tick tries again
            logger.warning("[%s] Snapshot pull (%s) failed: %s", self.room_code, reason, exc.code)
            return
        logger.debug("[%s] Snapshot pulled (%s)", self.room_code, reason)
        self._enqueue("snapshot", lambda: self.reconciler.merge_snapshot(snapshot, requested_seq))

    async def _rehydrate_round(self) -> None:
        try:
            doc = await self.fetcher.fetch_round_status()
        except SnapshotFetchError as exc:
            logger.warning("[%s] Round status pull failed: %s", self.room_code, exc.code)
            return
        self._enqueue("round_status", lambda: self.reconciler.merge_round_status(doc))

    async def _rehydrate_votes(self) -> None:
        for side in RoomSide:
            requested_seq = self.reconciler.state.vote_seq
            try:
                doc = await self.fetcher.fetch_vote_status(side)
            except SnapshotFetchError as exc:
                logger.warning("[%s] Vote status pull (%s) failed: %s", self.room_code, side.value, exc.code)
                continue
            self._enqueue(
                "vote_status",
                lambda side=side, doc=doc, seq=requested_seq: self.reconciler.merge_vote_status(side, doc, seq),
            )

    def _on_channel_open(self) -> None:
        # Events may have been missed while disconnected
        self._spawn(self._pull_snapshot("reconnect"))
        if self.reconciler.state.role_latched:
            self._spawn(self._rehydrate_round())
            self._spawn(self._rehydrate_votes())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if self.reconciler.needs_polling:
                await self._pull_snapshot("poll")

    # ── Tasks & timers ────────────────────────────────────────────────────────

    def _spawn(self, coro) -> None:
        if self.closed:
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule(self, key: Tuple[str, RoomSide], delay: float, label: str, apply: Callable[[], Outcome]) -> None:
        self._cancel_timer(key)

        async def fire() -> None:
            await asyncio.sleep(delay)
            self._timers.pop(key, None)
            self._enqueue(label, apply)

        self._timers[key] = asyncio.create_task(fire(), name=f"{label}-{self.room_code}")

    def _cancel_timer(self, key: Tuple[str, RoomSide]) -> None:
        task = self._timers.pop(key, None)
        if task and not task.done():
            task.cancel()

    def _cancel_timers(self) -> None:
        for key in list(self._timers):
            self._cancel_timer(key)

    def _discard_queued(self) -> None:
        while not self._queue.empty():
            item: _Input = self._queue.get_nowait()
            if item.done and not item.done.done():
                item.done.cancel()
            self._queue.task_done()


class SessionManager:
    """Registry of live RoomSessions, keyed by room code."""

    def __init__(self, factory: Optional[Callable[..., RoomSession]] = None):
        self._factory = factory or RoomSession
        self._sessions: Dict[str, RoomSession] = {}

    def get(self, room_code: str) -> Optional[RoomSession]:
        return self._sessions.get(room_code.upper())

    async def open(self, room_code: str, player_id: Optional[str] = None) -> RoomSession:
        """
        Create and start a session. A session whose initial load fails stays
        registered so it can be retried; the InitialLoadError propagates.
        """
        code = room_code.upper()
        existing = self._sessions.get(code)
        if existing is not None:
            await existing.stop()

        session = self._factory(code, player_id)
        self._sessions[code] = session
        await session.start()
        logger.info("[%s] Session manager: session started", code)
        return session

    async def close(self, room_code: str) -> bool:
        session = self._sessions.pop(room_code.upper(), None)
        if session is None:
            return False
        await session.stop()
        logger.info("[%s] Session manager: session stopped", room_code.upper())
        return True

    async def close_all(self) -> None:
        for code in list(self._sessions):
            await self.close(code)


session_manager = SessionManager()
