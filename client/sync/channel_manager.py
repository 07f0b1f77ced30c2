"""
Push channel — one websocket per room subscription.

URL: {ws_base_url}/ws/{room_code}?playerId={participant_id}

Lifecycle:
  CONNECTING → OPEN (handshake done, or first data received)
  OPEN → CLOSED (any termination)
  CLOSED → CONNECTING (automatic retry after reconnect_interval)
  … → EXHAUSTED once max_reconnect_attempts consecutive retries failed

EXHAUSTED, the terminal close codes (1008 room not found, 1003 unsupported
payload) and a 404 handshake stop the retry loop; only manual_reconnect()
starts it again.
close() is the intentional teardown: it cancels any pending retry and closes
the socket once, and no retry fires afterwards.

The manager knows nothing about game semantics. It splits each delivery into
records, drops records addressed to another room, decodes the rest into
events and hands them to `on_event` one by one.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Union
from urllib.parse import quote

from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus

from config import settings
from models.events import OutboundMessage, decode_event
from models.room import ConnectionState, ConnectionStatus
from utils.framing import document_room_code, parse_records

logger = logging.getLogger(__name__)

# Close codes that mean "retrying will not help"
TERMINAL_CLOSE_CODES: Dict[int, str] = {
    1008: "Room not found.",
    1003: "The server does not support this client.",
}

# Handshake rejections that mean the same; the server answers an unknown room with 404
TERMINAL_HANDSHAKE_STATUSES: Dict[int, str] = {
    404: "Room not found.",
}

Connector = Callable[[str], Awaitable]


def is_valid_room_code(room_code: Optional[str], min_length: Optional[int] = None) -> bool:
    min_length = settings.room_code_length if min_length is None else min_length
    return bool(room_code) and len(room_code) >= min_length and room_code.isalnum()


class ChannelManager:
    """
    Owns the push connection for one room and its ConnectionStatus.
    Retry counters live on the instance; create one per room subscription and
    close() it on leave.
    """

    def __init__(
        self,
        room_code: str,
        participant_id: Optional[str],
        on_event: Callable,
        *,
        on_open: Optional[Callable[[], None]] = None,
        on_status: Optional[Callable[[ConnectionStatus], None]] = None,
        connector: Optional[Connector] = None,
        base_url: Optional[str] = None,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ):
        self.room_code = room_code
        self.participant_id = participant_id
        self._on_event = on_event
        self._on_open = on_open
        self._on_status = on_status
        self._connector: Connector = connector or ws_connect
        self.base_url = (base_url or settings.ws_base_url).rstrip("/")
        self.max_attempts = settings.max_reconnect_attempts if max_attempts is None else max_attempts
        self.interval = settings.reconnect_interval if interval is None else interval

        self.status = ConnectionStatus(max_attempts=self.max_attempts)
        self.last_event = None
        self._conn = None
        self._task: Optional[asyncio.Task] = None
        self._intentional_close = False

    @property
    def url(self) -> str:
        return f"{self.base_url}/ws/{self.room_code}?playerId={quote(self.participant_id or '')}"

    @property
    def is_open(self) -> bool:
        return self.status.state == ConnectionState.OPEN

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    def connect(self) -> ConnectionStatus:
        """Start the connection loop. Invalid room/participant → terminal status, no-op."""
        if not is_valid_room_code(self.room_code):
            logger.warning("Channel not opened: invalid room code %r", self.room_code)
            self._set_status(ConnectionState.CLOSED, message="Invalid room code.", terminal=True)
            return self.status
        if not self.participant_id:
            logger.warning("[%s] Channel not opened: no participant id yet", self.room_code)
            self._set_status(ConnectionState.CLOSED, message="Join the room before connecting.", terminal=True)
            return self.status
        if self._task and not self._task.done():
            return self.status

        self._intentional_close = False
        self._task = asyncio.create_task(self._run(), name=f"channel-{self.room_code}")
        return self.status

    async def manual_reconnect(self) -> ConnectionStatus:
        """Drop whatever is in flight, reset the retry counter and connect again."""
        await self._stop()
        self._set_status(ConnectionState.CLOSED, attempts=0, message=None, terminal=False)
        logger.info("[%s] Manual reconnect requested", self.room_code)
        return self.connect()

    async def close(self) -> None:
        """Intentional teardown: cancel pending retry, close the socket once."""
        self._intentional_close = True
        await self._stop()
        self._set_status(ConnectionState.CLOSED, message=None, terminal=False)
        logger.debug("[%s] Channel closed intentionally", self.room_code)

    async def wait_stopped(self) -> None:
        """Wait for the connection loop to end on its own (terminal close or exhaustion)."""
        task = self._task
        if task is not None:
            await asyncio.shield(task)

    async def _stop(self) -> None:
        conn, self._conn = self._conn, None
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if conn is not None:
            try:
                await conn.close()
            except Exception as exc:
                logger.debug("[%s] Error while closing channel: %s", self.room_code, exc)

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send(self, message: Union[OutboundMessage, Dict]) -> bool:
        """Send one JSON document. Returns False (and logs) when the channel is not open."""
        if isinstance(message, dict):
            message = OutboundMessage(**message)
        conn = self._conn
        if not self.is_open or conn is None:
            logger.warning(
                "[%s] Dropping outbound %s: channel is %s",
                self.room_code, message.type, self.status.state.value,
            )
            return False
        try:
            await conn.send(message.to_json())
        except Exception as exc:
            logger.warning("[%s] send %s failed: %s", self.room_code, message.type, exc)
            return False
        return True

    # ── Receiving ──────────────────────────────────────────────────────────────

    def receive(self, raw: Union[str, bytes]) -> int:
        """
        Process one delivery. Returns the number of events handed to on_event.
        A delivery while not marked open proves liveness and flips state to OPEN.
        """
        if self.status.state != ConnectionState.OPEN:
            logger.info("[%s] Data received before open signal — marking channel open", self.room_code)
            self._mark_open()

        documents, _ = parse_records(raw)
        delivered = 0
        for doc in documents:
            code = document_room_code(doc)
            if code and code.upper() != self.room_code.upper():
                logger.warning(
                    "[%s] Rejected %s addressed to room %s", self.room_code, doc.get("type"), code
                )
                continue
            try:
                event = decode_event(doc)
            except ValidationError as exc:
                logger.warning(
                    "[%s] Skipping malformed %s: %s", self.room_code, doc.get("type"), exc.errors()[:1]
                )
                continue
            if event is None:
                logger.debug("[%s] Ignoring unknown event type %r", self.room_code, doc.get("type"))
                continue
            self.last_event = event
            try:
                self._on_event(event)
            except Exception:
                logger.exception("[%s] on_event failed for %s", self.room_code, event.type)
                continue
            delivered += 1
        return delivered

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _run(self) -> None:
        while not self._intentional_close:
            self._set_status(ConnectionState.CONNECTING)
            close_code: Optional[int] = None
            try:
                conn = await self._connector(self.url)
            except asyncio.CancelledError:
                raise
            except InvalidStatus as exc:
                status_code = exc.response.status_code
                if status_code in TERMINAL_HANDSHAKE_STATUSES:
                    logger.error("[%s] Channel handshake rejected with HTTP %d", self.room_code, status_code)
                    self._set_status(
                        ConnectionState.CLOSED, message=TERMINAL_HANDSHAKE_STATUSES[status_code], terminal=True
                    )
                    return
                logger.warning(
                    "[%s] Channel handshake rejected with HTTP %d (attempt %d/%d)",
                    self.room_code, status_code, self.status.attempts, self.max_attempts,
                )
            except Exception as exc:
                logger.warning(
                    "[%s] Channel handshake failed (attempt %d/%d): %s",
                    self.room_code, self.status.attempts, self.max_attempts, exc,
                )
            else:
                self._conn = conn
                if self.status.state != ConnectionState.OPEN:
                    self._mark_open()
                close_code = await self._pump(conn)
                self._conn = None

            if self._intentional_close:
                break

            if close_code in TERMINAL_CLOSE_CODES:
                logger.error("[%s] Channel closed with terminal code %d", self.room_code, close_code)
                self._set_status(
                    ConnectionState.CLOSED, message=TERMINAL_CLOSE_CODES[close_code], terminal=True
                )
                return

            if self.status.attempts >= self.max_attempts:
                logger.error(
                    "[%s] Channel giving up after %d reconnect attempts", self.room_code, self.max_attempts
                )
                self._set_status(
                    ConnectionState.EXHAUSTED,
                    message="Unable to reconnect. Retry manually or reload the page.",
                    terminal=True,
                )
                return

            attempts = self.status.attempts + 1
            message = f"Connection lost. Reconnecting... ({attempts}/{self.max_attempts})"
            self._set_status(ConnectionState.CLOSED, attempts=attempts, message=message)
            self._set_status(ConnectionState.CONNECTING)
            await asyncio.sleep(self.interval)

    async def _pump(self, conn) -> Optional[int]:
        """Feed deliveries to receive() until the socket ends; returns its close code."""
        try:
            async for raw in conn:
                self.receive(raw)
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                return exc.rcvd.code
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[%s] Channel error: %s", self.room_code, exc)
        return getattr(conn, "close_code", None)

    def _mark_open(self) -> None:
        was_retry = self.status.attempts > 0
        self._set_status(ConnectionState.OPEN, attempts=0, message=None, terminal=False)
        logger.info("[%s] Channel open%s", self.room_code, " (reconnected)" if was_retry else "")
        if self._on_open:
            try:
                self._on_open()
            except Exception:
                logger.exception("[%s] on_open callback failed", self.room_code)

    def _set_status(self, state: ConnectionState, **updates) -> None:
        self.status = self.status.model_copy(update={"state": state, **updates})
        if self._on_status:
            try:
                self._on_status(self.status)
            except Exception:
                logger.exception("[%s] on_status callback failed", self.room_code)
