"""Shared data models for the broadcast segment tracker."""

from .segments import (
    UNKNOWN_CATEGORY,
    BaselineGame,
    BroadcastSession,
    Category,
    CategorySegment,
    EndReason,
    GameAggregate,
    LiveStatus,
    duration_seconds,
    utcnow,
)

__all__ = [
    "UNKNOWN_CATEGORY",
    "BaselineGame",
    "BroadcastSession",
    "Category",
    "CategorySegment",
    "EndReason",
    "GameAggregate",
    "LiveStatus",
    "duration_seconds",
    "utcnow",
]
