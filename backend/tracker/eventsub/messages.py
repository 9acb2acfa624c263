"""EventSub WebSocket frames and their decoding into domain events."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from shared.models.segments import Category, EndReason
from tracker.errors import ProtocolError
from tracker.events import CategoryChanged, DomainEvent, WentLive, WentOffline

logger = logging.getLogger(__name__)

SESSION_WELCOME = "session_welcome"
SESSION_KEEPALIVE = "session_keepalive"
SESSION_RECONNECT = "session_reconnect"
NOTIFICATION = "notification"
REVOCATION = "revocation"

STREAM_ONLINE = "stream.online"
STREAM_OFFLINE = "stream.offline"
CHANNEL_UPDATE = "channel.update"

# Twitch sends nanosecond precision; datetime holds microseconds
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:?\d{2})?$"
)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC3339 timestamp from Twitch into an aware UTC datetime."""
    if not value or not isinstance(value, str):
        return None
    m = _TIMESTAMP_RE.match(value.strip())
    if not m:
        logger.debug(f"Unparseable timestamp: {value!r}")
        return None
    frac = (m.group("frac") or "")[:6].ljust(6, "0")
    tz = m.group("tz") or "Z"
    if tz == "Z":
        tz = "+00:00"
    elif ":" not in tz:
        tz = f"{tz[:3]}:{tz[3:]}"
    parsed = datetime.fromisoformat(f"{m.group('base')}.{frac}{tz}")
    return parsed.astimezone(timezone.utc)


@dataclass
class EventSubMessage:
    """One inbound EventSub WebSocket frame."""

    message_id: str
    message_type: str
    timestamp: datetime | None
    payload: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, text: str) -> EventSubMessage:
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Frame is not JSON: {e}") from e
        if not isinstance(raw, dict) or not isinstance(raw.get("metadata"), dict):
            raise ProtocolError("Frame has no metadata")

        metadata = raw["metadata"]
        payload = raw.get("payload")
        return cls(
            message_id=str(metadata.get("message_id") or ""),
            message_type=str(metadata.get("message_type") or "unknown"),
            timestamp=parse_timestamp(metadata.get("message_timestamp")),
            payload=payload if isinstance(payload, dict) else {},
            raw=raw,
        )

    @property
    def session(self) -> dict[str, Any]:
        session = self.payload.get("session")
        return session if isinstance(session, dict) else {}

    def session_id(self) -> str:
        session_id = self.session.get("id")
        if not session_id:
            raise ProtocolError(f"{self.message_type} without a session id")
        return str(session_id)

    def reconnect_url(self) -> str:
        url = self.session.get("reconnect_url")
        if not url:
            raise ProtocolError("session_reconnect without a reconnect_url")
        return str(url)

    def keepalive_timeout(self) -> float | None:
        value = self.session.get("keepalive_timeout_seconds")
        try:
            return float(value) if value else None
        except (TypeError, ValueError):
            return None

    @property
    def subscription_type(self) -> str | None:
        subscription = self.payload.get("subscription")
        if isinstance(subscription, dict):
            return subscription.get("type")
        return None

    @property
    def event(self) -> dict[str, Any]:
        event = self.payload.get("event")
        return event if isinstance(event, dict) else {}


def decode_notification(
    message: EventSubMessage, received_at: datetime
) -> DomainEvent | None:
    """Turn a ``notification`` frame into a domain event.

    Boundary times come from the upstream event or message timestamp and
    fall back to *received_at* only when neither is present.
    Returns None for subscription types the tracker does not handle.
    """
    event = message.event
    sub_type = message.subscription_type
    broadcaster_id = event.get("broadcaster_user_id")
    if sub_type in (STREAM_ONLINE, STREAM_OFFLINE, CHANNEL_UPDATE) and not broadcaster_id:
        raise ValueError(f"{sub_type} notification without broadcaster_user_id")

    upstream_at = message.timestamp or received_at

    if sub_type == STREAM_ONLINE:
        return WentLive(
            broadcaster_id=str(broadcaster_id),
            started_at=parse_timestamp(event.get("started_at")) or upstream_at,
            session_id_hint=str(event["id"]) if event.get("id") else None,
            category=None,
            broadcaster_name=str(event.get("broadcaster_user_login") or ""),
        )

    if sub_type == CHANNEL_UPDATE:
        return CategoryChanged(
            broadcaster_id=str(broadcaster_id),
            category=Category.from_fields(event.get("category_id"), event.get("category_name")),
            at=upstream_at,
        )

    if sub_type == STREAM_OFFLINE:
        return WentOffline(
            broadcaster_id=str(broadcaster_id),
            at=upstream_at,
            reason=EndReason.EVENT_NOTIFIED,
        )

    logger.debug(f"Ignoring notification type: {sub_type}")
    return None
