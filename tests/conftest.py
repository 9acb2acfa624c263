"""Shared test fixtures for the broadcast tracker.

EventSub frames follow the shapes Twitch documents for the WebSocket
transport (session_welcome, session_reconnect, notification, ...).
"""

import asyncio
import copy
import itertools
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import aiohttp
import pytest
from aiohttp import WSMsgType

from shared.models.segments import (
    BroadcastSession,
    Category,
    CategorySegment,
    LiveStatus,
    duration_seconds,
)


T0 = datetime(2026, 3, 14, 18, 0, 0, tzinfo=timezone.utc)
BROADCASTER = "123456"


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


# -- In-memory segment store -------------------------------------------------


class MemorySegmentStore:
    """Segment store kept in dicts, with the same rules the SQL schema enforces.

    ``atomic`` snapshots the state and restores it if the block raises.
    """

    def __init__(self):
        self.sessions: dict[str, BroadcastSession] = {}
        self.segments: list[CategorySegment] = []
        self._ids = itertools.count(1)
        self.transactions = 0
        self.rollbacks = 0
        self.fail_on: str | None = None

    def _maybe_fail(self, op: str) -> None:
        if self.fail_on == op:
            raise OSError(f"store unavailable during {op}")

    @asynccontextmanager
    async def atomic(self):
        snapshot = copy.deepcopy((self.sessions, self.segments))
        self.transactions += 1
        try:
            yield self
        except BaseException:
            self.sessions, self.segments = snapshot
            self.rollbacks += 1
            raise

    # Sessions

    async def get_active_session(self, broadcaster_id):
        active = [
            s for s in self.sessions.values()
            if s.broadcaster_id == broadcaster_id and s.ended_at is None
        ]
        active.sort(key=lambda s: s.started_at, reverse=True)
        return copy.copy(active[0]) if active else None

    async def get_session(self, session_id):
        session = self.sessions.get(session_id)
        return copy.copy(session) if session else None

    async def upsert_session_start(self, session_id, broadcaster_id, broadcaster_name, started_at):
        self._maybe_fail("upsert_session_start")
        existing = self.sessions.get(session_id)
        if existing is None:
            if any(
                s.broadcaster_id == broadcaster_id and s.ended_at is None
                for s in self.sessions.values()
            ):
                raise AssertionError("second active session for one broadcaster")
            self.sessions[session_id] = BroadcastSession(
                session_id, broadcaster_id, broadcaster_name, started_at
            )
            return
        existing.broadcaster_id = broadcaster_id
        existing.broadcaster_name = broadcaster_name
        existing.started_at = min(existing.started_at, started_at)

    async def close_session(self, session_id, ended_at, reason):
        self._maybe_fail("close_session")
        session = self.sessions.get(session_id)
        if session is not None and session.ended_at is None:
            session.ended_at = ended_at
            session.end_reason = reason

    # Segments

    def _for_session(self, session_id):
        return sorted(
            (s for s in self.segments if s.session_id == session_id),
            key=lambda s: (s.started_at, s.id),
        )

    async def get_open_segment(self, session_id):
        open_segments = [s for s in self._for_session(session_id) if s.ended_at is None]
        return copy.copy(open_segments[-1]) if open_segments else None

    async def list_segments(self, session_id):
        return [copy.copy(s) for s in self._for_session(session_id)]

    async def open_segment(self, session_id, category, started_at):
        self._maybe_fail("open_segment")
        segments = self._for_session(session_id)
        if any(s.key == (session_id, started_at, category.name) for s in segments):
            return
        if any(s.ended_at is None for s in segments):
            raise AssertionError("second open segment in one session")
        self.segments.append(
            CategorySegment(
                session_id=session_id,
                category_name=category.name,
                category_id=category.id,
                started_at=started_at,
                id=next(self._ids),
            )
        )

    async def close_segment(self, segment, ended_at):
        self._maybe_fail("close_segment")
        closed = segment.closed_at(ended_at)
        for stored in self.segments:
            if stored.key == segment.key and stored.ended_at is None:
                stored.ended_at = closed.ended_at
                stored.duration_seconds = closed.duration_seconds
        return closed

    async def rewind_segment_start(self, segment, started_at):
        for stored in self.segments:
            if stored.key == segment.key and started_at < stored.started_at:
                stored.started_at = started_at
                if stored.ended_at is not None:
                    stored.duration_seconds = duration_seconds(started_at, stored.ended_at)


@pytest.fixture
def store():
    return MemorySegmentStore()


# -- Live status ---------------------------------------------------------------


class FakeStatusSource:
    """Stands in for the Helix client's ``get_live_status``."""

    def __init__(self, status: LiveStatus | None = None):
        self.status = status
        self.calls = 0
        self.error: Exception | None = None

    async def get_live_status(self, broadcaster_id):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.status


@pytest.fixture
def offline_source():
    return FakeStatusSource(LiveStatus(is_live=False))


def live_status(category="Chess", category_id="743", stream_id="s1", started_at=T0):
    return LiveStatus(
        is_live=True,
        stream_id=stream_id,
        started_at=started_at,
        category_id=category_id,
        category_name=category,
        broadcaster_name="tracked",
    )


# -- WebSocket fakes -----------------------------------------------------------


class FakeWebSocket:
    """Minimal stand-in for ``aiohttp.ClientWebSocketResponse``."""

    def __init__(self, url: str):
        self.url = url
        self.closed = False
        self.close_calls = 0
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, frame) -> None:
        text = frame if isinstance(frame, str) else json.dumps(frame)
        self._inbox.put_nowait(SimpleNamespace(type=WSMsgType.TEXT, data=text, extra=None))

    def server_close(self) -> None:
        self._inbox.put_nowait(SimpleNamespace(type=WSMsgType.CLOSE, data=1000, extra=None))

    async def receive(self):
        return await self._inbox.get()

    async def close(self) -> bool:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(SimpleNamespace(type=WSMsgType.CLOSED, data=None, extra=None))
        return True


class FakeConnector:
    """``ws_connect`` factory recording every URL it was asked to open."""

    def __init__(self):
        self.sockets: list[FakeWebSocket] = []
        self.urls: list[str] = []
        self.failures = 0

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise aiohttp.ClientConnectionError(f"cannot connect to {url}")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws


@pytest.fixture
def ws_factory():
    return FakeConnector()


# -- Canned EventSub frames ----------------------------------------------------

_message_ids = itertools.count(1)


def _metadata(message_type, message_id=None, timestamp=None, **extra):
    metadata = {
        "message_id": message_id or f"msg-{next(_message_ids)}",
        "message_type": message_type,
        "message_timestamp": (timestamp or T0).isoformat().replace("+00:00", "Z"),
    }
    metadata.update(extra)
    return metadata


def welcome_frame(session_id="AQoQexAWVYKSTIu4ec_2VAxyuhAB", keepalive=10):
    return {
        "metadata": _metadata("session_welcome"),
        "payload": {
            "session": {
                "id": session_id,
                "status": "connected",
                "connected_at": "2026-03-14T18:00:00.123456789Z",
                "keepalive_timeout_seconds": keepalive,
                "reconnect_url": None,
            }
        },
    }


def keepalive_frame():
    return {"metadata": _metadata("session_keepalive"), "payload": {}}


def reconnect_frame(url, session_id="AQoQexAWVYKSTIu4ec_2VAxyuhAB"):
    return {
        "metadata": _metadata("session_reconnect"),
        "payload": {
            "session": {
                "id": session_id,
                "status": "reconnecting",
                "keepalive_timeout_seconds": None,
                "reconnect_url": url,
                "connected_at": "2026-03-14T17:55:00.000000000Z",
            }
        },
    }


def notification_frame(sub_type, event, *, message_id=None, timestamp=None, version="1"):
    return {
        "metadata": _metadata(
            "notification",
            message_id=message_id,
            timestamp=timestamp,
            subscription_type=sub_type,
            subscription_version=version,
        ),
        "payload": {
            "subscription": {
                "id": "f1c2a387-161a-49f9-a165-0f21d7a4e1c4",
                "type": sub_type,
                "version": version,
                "status": "enabled",
                "condition": {"broadcaster_user_id": BROADCASTER},
                "transport": {"method": "websocket", "session_id": "AQoQexAWVYKSTIu4ec_2VAxyuhAB"},
            },
            "event": event,
        },
    }


def online_frame(stream_id="s1", started_at="2026-03-14T18:00:00.123456789Z", **kwargs):
    return notification_frame(
        "stream.online",
        {
            "id": stream_id,
            "broadcaster_user_id": BROADCASTER,
            "broadcaster_user_login": "tracked",
            "broadcaster_user_name": "Tracked",
            "type": "live",
            "started_at": started_at,
        },
        **kwargs,
    )


def update_frame(category_name="Poker", category_id="488190", **kwargs):
    return notification_frame(
        "channel.update",
        {
            "broadcaster_user_id": BROADCASTER,
            "broadcaster_user_login": "tracked",
            "broadcaster_user_name": "Tracked",
            "title": "late night",
            "language": "en",
            "category_id": category_id,
            "category_name": category_name,
            "content_classification_labels": [],
        },
        version="2",
        **kwargs,
    )


def offline_frame(**kwargs):
    return notification_frame(
        "stream.offline",
        {
            "broadcaster_user_id": BROADCASTER,
            "broadcaster_user_login": "tracked",
            "broadcaster_user_name": "Tracked",
        },
        **kwargs,
    )


CHESS = Category("Chess", "743")
POKER = Category("Poker", "488190")
