"""Data models for broadcast sessions, category segments and aggregates."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum

UNKNOWN_CATEGORY = "Unknown"
PLACEHOLDER_PREFIX = "local_"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def duration_seconds(started_at: datetime, ended_at: datetime) -> int:
    """Whole seconds between two instants, floored and clamped at zero."""
    return max(0, math.floor((ended_at - started_at).total_seconds()))


class EndReason(str, Enum):
    """Why a broadcast session was closed."""

    EVENT_NOTIFIED = "event-notified"
    RECOVERED = "recovered-by-reconciliation"


@dataclass(frozen=True)
class Category:
    """A category (game) as reported by Twitch."""

    name: str = UNKNOWN_CATEGORY
    id: str | None = None

    @classmethod
    def from_fields(cls, category_id: object, category_name: object) -> Category:
        """Build from raw payload fields; empty values become ``None``/``Unknown``."""
        return cls(
            name=str(category_name) if category_name else UNKNOWN_CATEGORY,
            id=str(category_id) if category_id else None,
        )

    def matches(self, other: Category) -> bool:
        # Ids win when both sides carry one; names are the fallback.
        if self.id is not None and other.id is not None:
            return self.id == other.id
        return self.name == other.name


@dataclass
class BroadcastSession:
    """One continuous live interval of the tracked broadcaster."""

    session_id: str
    broadcaster_id: str
    broadcaster_name: str
    started_at: datetime
    ended_at: datetime | None = None
    end_reason: EndReason | None = None

    @property
    def active(self) -> bool:
        return self.ended_at is None

    @property
    def is_placeholder(self) -> bool:
        return self.session_id.startswith(PLACEHOLDER_PREFIX)


@dataclass
class CategorySegment:
    """A sub-interval of a session during which one category was active.

    ``(session_id, started_at, category_name)`` is the natural key.
    """

    session_id: str
    category_name: str
    started_at: datetime
    category_id: str | None = None
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    id: int | None = None

    @property
    def category(self) -> Category:
        return Category(name=self.category_name, id=self.category_id)

    @property
    def key(self) -> tuple[str, datetime, str]:
        return (self.session_id, self.started_at, self.category_name)

    def closed_at(self, ended_at: datetime) -> CategorySegment:
        """Return a closed copy of this segment."""
        return replace(
            self,
            ended_at=ended_at,
            duration_seconds=duration_seconds(self.started_at, ended_at),
        )


@dataclass
class LiveStatus:
    """Current live state of a broadcaster as reported by Helix ``streams``."""

    is_live: bool
    stream_id: str | None = None
    started_at: datetime | None = None
    category_id: str | None = None
    category_name: str | None = None
    broadcaster_name: str | None = None

    @property
    def category(self) -> Category:
        return Category.from_fields(self.category_id, self.category_name)


@dataclass
class BaselineGame:
    """Manually inserted baseline total for a game."""

    game_name: str
    total_hours: float | None = None
    last_seen_date: date | None = None
    inserted_at: datetime | None = None


@dataclass
class GameAggregate:
    """Accumulated time per game, derived from closed segments (+ baseline)."""

    game: str
    duration_seconds: int
    last_stream_date: datetime | date | None = None
