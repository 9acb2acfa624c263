"""Domain events consumed by the segmentation engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from shared.models.segments import Category, EndReason


@dataclass(frozen=True)
class WentLive:
    broadcaster_id: str
    started_at: datetime
    session_id_hint: str | None = None
    # None means "not known yet"; the dispatcher looks it up before the engine runs
    category: Category | None = None
    broadcaster_name: str = ""


@dataclass(frozen=True)
class CategoryChanged:
    broadcaster_id: str
    category: Category
    at: datetime


@dataclass(frozen=True)
class WentOffline:
    broadcaster_id: str
    at: datetime
    reason: EndReason = EndReason.EVENT_NOTIFIED


DomainEvent = WentLive | CategoryChanged | WentOffline
