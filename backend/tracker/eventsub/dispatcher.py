"""Routes decoded domain events to the segmentation engine."""

from __future__ import annotations

import logging
from typing import Protocol

from shared.models.segments import Category, LiveStatus
from tracker.events import CategoryChanged, DomainEvent, WentLive, WentOffline
from tracker.services.segment_service import SegmentationEngine

LOGGER = logging.getLogger("Tracker.Dispatcher")


class LiveStatusSource(Protocol):
    async def get_live_status(self, broadcaster_id: str) -> LiveStatus | None: ...


class EventDispatcher:
    """Hands events to the engine, enriching went-live with the current category.

    Errors propagate; the connector decides what to do with them.
    """

    def __init__(self, engine: SegmentationEngine, status_source: LiveStatusSource) -> None:
        self.engine = engine
        self.status_source = status_source
        self.dispatched = 0

    async def dispatch(self, event: DomainEvent) -> None:
        if isinstance(event, WentLive):
            category = event.category or await self._current_category(event.broadcaster_id)
            await self.engine.on_went_live(
                event.broadcaster_id,
                event.session_id_hint,
                event.started_at,
                category,
                event.broadcaster_name,
            )
        elif isinstance(event, CategoryChanged):
            await self.engine.on_category_changed(event.broadcaster_id, event.category, event.at)
        elif isinstance(event, WentOffline):
            await self.engine.on_went_offline(event.broadcaster_id, event.at, event.reason)
        else:
            raise TypeError(f"Unsupported event: {type(event).__name__}")
        self.dispatched += 1

    async def _current_category(self, broadcaster_id: str) -> Category:
        # Runs before the engine's critical section
        status = await self.status_source.get_live_status(broadcaster_id)
        if status is None or not status.is_live:
            LOGGER.debug(f"No live category for {broadcaster_id}, using Unknown")
            return Category()
        return status.category
