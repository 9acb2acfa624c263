"""EventSub WebSocket session connector.

Keeps one logical EventSub session alive across physical connections:

    CONNECTING -> OPEN -> WELCOMED -> DRAINING -> CLOSED

A ``session_reconnect`` opens the new connection while the old one keeps
delivering (DRAINING); the old one is closed once the new one is
welcomed. An unexpected close of the active connection reconnects to the
default URL with exponential backoff.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import aiohttp
from aiohttp import WSMsgType
from cachetools import TTLCache  # type: ignore[import-untyped]

from shared.models.segments import utcnow
from tracker.errors import ProtocolError
from tracker.eventsub.dispatcher import EventDispatcher
from tracker.eventsub.messages import (
    NOTIFICATION,
    REVOCATION,
    SESSION_KEEPALIVE,
    SESSION_RECONNECT,
    SESSION_WELCOME,
    EventSubMessage,
    decode_notification,
)
from tracker.eventsub.recorder import EventRecorder

LOGGER = logging.getLogger("Tracker.EventSub")

BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 30.0
BACKOFF_MAX_EXPONENT = 5

_CLOSING_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR)

WebSocketFactory = Callable[[str], Awaitable[Any]]


def backoff_delay(
    attempts: int,
    base: float = BACKOFF_BASE_SECONDS,
    cap: float = BACKOFF_CAP_SECONDS,
) -> float:
    """Delay before reconnect attempt number *attempts* (1-based)."""
    exponent = min(max(attempts, 1) - 1, BACKOFF_MAX_EXPONENT)
    return min(cap, base * 2**exponent)


async def aiohttp_ws_connect(session: aiohttp.ClientSession, url: str) -> aiohttp.ClientWebSocketResponse:
    return await session.ws_connect(url, autoping=True)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    WELCOMED = "welcomed"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One physical WebSocket connection."""

    number: int
    url: str
    migrated: bool
    state: ConnectionState = ConnectionState.CONNECTING
    ws: Any = None
    session_id: str | None = None
    keepalive_timeout: float | None = None
    task: asyncio.Task | None = None


class SessionConnector:
    """Owns the EventSub connections and which one is authoritative."""

    def __init__(
        self,
        *,
        url: str,
        ws_connect: WebSocketFactory,
        dispatcher: EventDispatcher,
        on_welcome: Callable[[str], Awaitable[Any]] | None = None,
        recorder: EventRecorder | None = None,
        connect_timeout: float = 10.0,
        keepalive_grace: float = 5.0,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_cap: float = BACKOFF_CAP_SECONDS,
        suppress_duplicates: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.url = url
        self._ws_connect = ws_connect
        self.dispatcher = dispatcher
        self._welcome_callback = on_welcome
        self.recorder = recorder
        self.connect_timeout = connect_timeout
        self.keepalive_grace = keepalive_grace
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.suppress_duplicates = suppress_duplicates
        self._clock = clock

        self._numbers = itertools.count(1)
        self._connections: list[Connection] = []
        self._active: Connection | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._seen_messages: TTLCache = TTLCache(maxsize=2048, ttl=600)
        self._stopping = False

        self.session_id: str | None = None
        self.reconnect_attempts = 0
        self.notifications_failed = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def active(self) -> Connection | None:
        return self._active

    @property
    def connections(self) -> tuple[Connection, ...]:
        return tuple(self._connections)

    @property
    def state(self) -> ConnectionState:
        return self._active.state if self._active else ConnectionState.CLOSED

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "session_id": self.session_id,
            "reconnect_attempts": self.reconnect_attempts,
            "connections": [
                {"number": c.number, "state": c.state.value, "migrated": c.migrated}
                for c in self._connections
            ],
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._stopping = False
        if self._active is None:
            self._open(self.url, migrated=False)

    async def stop(self) -> None:
        """Close every connection and stop reconnecting."""
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        connections = list(self._connections)
        for conn in connections:
            await self._close_ws(conn)
        tasks = [c.task for c in connections if c.task is not None]
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._connections.clear()
        self._background.clear()
        self._active = None
        LOGGER.info("EventSub connector stopped")

    def _open(self, url: str, *, migrated: bool) -> Connection:
        conn = Connection(number=next(self._numbers), url=url, migrated=migrated)
        self._connections.append(conn)
        self._active = conn
        conn.task = asyncio.create_task(self._run(conn), name=f"eventsub-conn-{conn.number}")
        LOGGER.info(f"Opening connection #{conn.number}{' (migration)' if migrated else ''}")
        return conn

    async def _run(self, conn: Connection) -> None:
        try:
            conn.ws = await asyncio.wait_for(self._ws_connect(conn.url), self.connect_timeout)
            if conn.state is ConnectionState.CONNECTING:
                conn.state = ConnectionState.OPEN
            LOGGER.debug(f"Connection #{conn.number} open")

            while True:
                msg = await asyncio.wait_for(conn.ws.receive(), self._receive_timeout(conn))
                if msg.type == WSMsgType.TEXT:
                    await self._handle_text(conn, msg.data)
                elif msg.type in _CLOSING_TYPES:
                    break
                else:
                    LOGGER.debug(f"Connection #{conn.number}: ignoring {msg.type} frame")

        except asyncio.CancelledError:
            raise
        except ProtocolError as e:
            LOGGER.error(f"Connection #{conn.number} protocol error: {e}")
        except asyncio.TimeoutError:
            LOGGER.warning(f"Connection #{conn.number} timed out ({conn.state.value})")
        except (aiohttp.ClientError, OSError) as e:
            LOGGER.warning(f"Connection #{conn.number} transport error: {type(e).__name__}: {e}")
        finally:
            await self._finish(conn)

    def _receive_timeout(self, conn: Connection) -> float | None:
        if conn.keepalive_timeout is not None:
            return conn.keepalive_timeout + self.keepalive_grace
        if conn.state is ConnectionState.OPEN:
            # Waiting for the welcome
            return self.connect_timeout
        return None

    async def _finish(self, conn: Connection) -> None:
        previous = conn.state
        conn.state = ConnectionState.CLOSED
        await self._close_ws(conn)
        if conn in self._connections:
            self._connections.remove(conn)

        if self._stopping:
            return
        if conn is self._active and previous is not ConnectionState.DRAINING:
            self._active = None
            if self.session_id is not None and conn.session_id == self.session_id:
                self.session_id = None
            self._schedule_reconnect()
        else:
            LOGGER.info(f"Connection #{conn.number} closed ({previous.value})")

    async def _close_ws(self, conn: Connection) -> None:
        ws = conn.ws
        if ws is None or ws.closed:
            return
        try:
            await ws.close()
        except (aiohttp.ClientError, OSError) as e:
            LOGGER.debug(f"Error closing connection #{conn.number}: {e}")

    def _schedule_reconnect(self) -> None:
        self.reconnect_attempts += 1
        delay = backoff_delay(self.reconnect_attempts, self.backoff_base, self.backoff_cap)
        LOGGER.warning(
            f"EventSub connection lost, reconnecting in {delay:.0f}s "
            f"(attempt {self.reconnect_attempts})"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if not self._stopping and self._active is None:
            self._open(self.url, migrated=False)

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(f"{task.get_name()} failed: {type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _handle_text(self, conn: Connection, text: str) -> None:
        received_at = self._clock()
        try:
            message = EventSubMessage.parse(text)
        except ProtocolError:
            self._record("invalid", {"text": text})
            raise
        # Record first, interpret second
        self._record(message.message_type, message.raw)

        kind = message.message_type
        if kind == NOTIFICATION:
            await self._on_notification(conn, message, received_at)
        elif kind == SESSION_KEEPALIVE:
            return
        elif kind == SESSION_WELCOME:
            await self._on_welcome(conn, message)
        elif kind == SESSION_RECONNECT:
            self._on_reconnect(conn, message)
        elif kind == REVOCATION:
            LOGGER.warning(
                f"Subscription revoked: {message.subscription_type} "
                f"({message.payload.get('subscription', {}).get('status')})"
            )
        else:
            LOGGER.debug(f"Connection #{conn.number}: unhandled message type {kind}")

    def _record(self, kind: str, payload: dict[str, Any]) -> None:
        if self.recorder is not None:
            self.recorder.record(kind, payload)

    async def _on_welcome(self, conn: Connection, message: EventSubMessage) -> None:
        session_id = message.session_id()
        conn.session_id = session_id
        conn.keepalive_timeout = message.keepalive_timeout()

        if conn is not self._active:
            LOGGER.info(f"Welcome on superseded connection #{conn.number}, ignored")
            return

        conn.state = ConnectionState.WELCOMED
        self.session_id = session_id
        if not conn.migrated:
            self.reconnect_attempts = 0
        LOGGER.info(
            f"Session {session_id} welcomed on connection #{conn.number}"
            f"{' (migrated)' if conn.migrated else ''}"
        )

        for other in list(self._connections):
            if other is not conn and other.state in (
                ConnectionState.DRAINING,
                ConnectionState.WELCOMED,
            ):
                other.state = ConnectionState.DRAINING
                LOGGER.info(f"Closing drained connection #{other.number}")
                await self._close_ws(other)

        if self._welcome_callback is not None:
            self._spawn(self._welcome_callback(session_id), f"subscribe-{session_id}")

    def _on_reconnect(self, conn: Connection, message: EventSubMessage) -> None:
        url = message.reconnect_url()
        if conn is not self._active:
            LOGGER.warning(f"Reconnect request on superseded connection #{conn.number}, ignored")
            return
        conn.state = ConnectionState.DRAINING
        LOGGER.info(f"Server requested reconnect; connection #{conn.number} draining")
        self._open(url, migrated=True)

    async def _on_notification(
        self, conn: Connection, message: EventSubMessage, received_at: datetime
    ) -> None:
        if message.message_id:
            if message.message_id in self._seen_messages:
                LOGGER.info(
                    f"Duplicate notification {message.message_id} on connection #{conn.number}"
                )
                if self.suppress_duplicates:
                    return
            self._seen_messages[message.message_id] = True

        # A failed notification is dropped; the connection stays up
        try:
            event = decode_notification(message, received_at)
            if event is not None:
                await self.dispatcher.dispatch(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.notifications_failed += 1
            LOGGER.exception(
                f"Failed to handle {message.subscription_type} notification {message.message_id}"
            )
