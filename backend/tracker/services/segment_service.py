"""Segmentation engine: turns went-live / category / went-offline signals
into sessions and category segments.

All four entry points are idempotent under replays and run one at a time
per broadcaster, each inside a single store transaction. They never call
Twitch; anything that needs enrichment is resolved by the caller first.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from shared.models.segments import (
    PLACEHOLDER_PREFIX,
    BroadcastSession,
    Category,
    CategorySegment,
    EndReason,
    LiveStatus,
    utcnow,
)
from shared.repositories.segments import SegmentStore

LOGGER = logging.getLogger("Tracker.Engine")


class ReconcileOutcome(str, Enum):
    NOOP = "noop"
    OPENED = "opened"
    CLOSED = "closed"
    REPLACED = "replaced"
    ROTATED = "rotated"


def placeholder_session_id(started_at: datetime) -> str:
    """Deterministic local id for a session upstream gave no id for."""
    return f"{PLACEHOLDER_PREFIX}{int(started_at.timestamp() * 1000)}"


class SegmentationEngine:
    """State machine over the segment store, serialized per broadcaster."""

    def __init__(
        self,
        store: SegmentStore,
        *,
        on_session_closed: Callable[[BroadcastSession], None] | None = None,
    ) -> None:
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}
        self._on_session_closed = on_session_closed

    def _lock_for(self, broadcaster_id: str) -> asyncio.Lock:
        lock = self._locks.get(broadcaster_id)
        if lock is None:
            lock = self._locks[broadcaster_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def on_went_live(
        self,
        broadcaster_id: str,
        session_id_hint: str | None,
        started_at: datetime,
        initial_category: Category | None,
        broadcaster_name: str = "",
    ) -> BroadcastSession | None:
        async with self._lock_for(broadcaster_id):
            async with self.store.atomic() as tx:
                return await self._went_live(
                    tx,
                    broadcaster_id,
                    session_id_hint,
                    started_at,
                    initial_category or Category(),
                    broadcaster_name,
                )

    async def on_category_changed(
        self, broadcaster_id: str, new_category: Category, at: datetime
    ) -> CategorySegment | None:
        async with self._lock_for(broadcaster_id):
            async with self.store.atomic() as tx:
                active = await tx.get_active_session(broadcaster_id)
                if active is None:
                    # Cannot be attributed to a session; left for product review
                    # whether this should count as an implicit went-live.
                    LOGGER.info(
                        f"Category change to '{new_category.name}' with no active session "
                        f"for {broadcaster_id}, dropped"
                    )
                    return None
                return await self._rotate(tx, active, new_category, at)

    async def on_went_offline(
        self, broadcaster_id: str, at: datetime, reason: EndReason
    ) -> BroadcastSession | None:
        async with self._lock_for(broadcaster_id):
            async with self.store.atomic() as tx:
                closed = await self._went_offline(tx, broadcaster_id, at, reason)
        if closed is not None and self._on_session_closed is not None:
            self._on_session_closed(closed)
        return closed

    async def reconcile(
        self,
        broadcaster_id: str,
        status: LiveStatus,
        now: datetime | None = None,
        broadcaster_name: str = "",
        settle: timedelta = timedelta(0),
    ) -> ReconcileOutcome:
        """Correct local state against the authoritative upstream status.

        A category mismatch rotates the open segment only when that segment
        is at least *settle* old.
        """
        now = now or utcnow()
        closed: BroadcastSession | None = None

        async with self._lock_for(broadcaster_id):
            async with self.store.atomic() as tx:
                active = await tx.get_active_session(broadcaster_id)
                name = status.broadcaster_name or broadcaster_name

                if not status.is_live:
                    if active is None:
                        outcome = ReconcileOutcome.NOOP
                    else:
                        LOGGER.warning(
                            f"Session {active.session_id} is open but {broadcaster_id} "
                            f"is offline upstream, closing"
                        )
                        closed = await self._went_offline(
                            tx, broadcaster_id, now, EndReason.RECOVERED
                        )
                        outcome = ReconcileOutcome.CLOSED

                elif active is None:
                    LOGGER.warning(f"{broadcaster_id} is live upstream with no local session")
                    await self._went_live(
                        tx,
                        broadcaster_id,
                        status.stream_id,
                        status.started_at or now,
                        status.category,
                        name,
                    )
                    outcome = ReconcileOutcome.OPENED

                elif (
                    status.stream_id
                    and not active.is_placeholder
                    and status.stream_id != active.session_id
                ):
                    # A broadcast ended and another began while nobody was listening
                    boundary = status.started_at or now
                    LOGGER.warning(
                        f"Session {active.session_id} superseded upstream by "
                        f"{status.stream_id}, replacing"
                    )
                    closed = await self._went_offline(
                        tx, broadcaster_id, boundary, EndReason.RECOVERED
                    )
                    await self._went_live(
                        tx, broadcaster_id, status.stream_id, boundary, status.category, name
                    )
                    outcome = ReconcileOutcome.REPLACED

                else:
                    open_segment = await tx.get_open_segment(active.session_id)
                    if open_segment is not None and open_segment.category.matches(
                        status.category
                    ):
                        outcome = ReconcileOutcome.NOOP
                    elif open_segment is not None and now - open_segment.started_at < settle:
                        LOGGER.debug(
                            f"Category drift on {active.session_id} ignored, open segment "
                            f"started {open_segment.started_at.isoformat()}"
                        )
                        outcome = ReconcileOutcome.NOOP
                    else:
                        await self._rotate(tx, active, status.category, now)
                        outcome = ReconcileOutcome.ROTATED

        if closed is not None and self._on_session_closed is not None:
            self._on_session_closed(closed)
        if outcome is not ReconcileOutcome.NOOP:
            LOGGER.info(f"Reconcile {broadcaster_id}: {outcome.value}")
        return outcome

    # ------------------------------------------------------------------
    # Transitions (caller holds the broadcaster lock and a transaction)
    # ------------------------------------------------------------------

    async def _went_live(
        self,
        tx: SegmentStore,
        broadcaster_id: str,
        session_id_hint: str | None,
        started_at: datetime,
        category: Category,
        broadcaster_name: str,
    ) -> BroadcastSession | None:
        active = await tx.get_active_session(broadcaster_id)
        if active is not None:
            if started_at < active.started_at:
                await self._rewind_start(tx, active, started_at)
                LOGGER.info(
                    f"Session {active.session_id} start moved earlier to {started_at.isoformat()}"
                )
            else:
                LOGGER.debug(f"Duplicate went-live for {active.session_id}, ignored")
            return await tx.get_session(active.session_id)

        session_id = session_id_hint or placeholder_session_id(started_at)
        existing = await tx.get_session(session_id)
        if existing is not None and not existing.active:
            LOGGER.info(f"Went-live for already closed session {session_id}, ignored")
            return existing

        await tx.upsert_session_start(
            session_id, broadcaster_id, broadcaster_name or broadcaster_id, started_at
        )
        await tx.open_segment(session_id, category, started_at)
        LOGGER.info(f"Session {session_id} started at {started_at.isoformat()} ({category.name})")
        return await tx.get_session(session_id)

    async def _rewind_start(
        self, tx: SegmentStore, active: BroadcastSession, started_at: datetime
    ) -> None:
        await tx.upsert_session_start(
            active.session_id, active.broadcaster_id, active.broadcaster_name, started_at
        )
        segments = await tx.list_segments(active.session_id)
        if segments and started_at < segments[0].started_at:
            await tx.rewind_segment_start(segments[0], started_at)

    async def _rotate(
        self,
        tx: SegmentStore,
        active: BroadcastSession,
        category: Category,
        at: datetime,
    ) -> CategorySegment | None:
        open_segment = await tx.get_open_segment(active.session_id)
        if open_segment is not None and open_segment.category.matches(category):
            LOGGER.debug(f"Category '{category.name}' unchanged for {active.session_id}")
            return open_segment

        if open_segment is not None:
            if at < open_segment.started_at:
                # Older than the open segment: a late redelivery
                LOGGER.info(
                    f"Stale category change to '{category.name}' at {at.isoformat()} "
                    f"for {active.session_id}, ignored"
                )
                return open_segment
            await tx.close_segment(open_segment, at)

        await tx.open_segment(active.session_id, category, at)
        LOGGER.info(
            f"Session {active.session_id}: "
            f"{open_segment.category_name if open_segment else '-'} -> {category.name}"
        )
        return await tx.get_open_segment(active.session_id)

    async def _went_offline(
        self,
        tx: SegmentStore,
        broadcaster_id: str,
        at: datetime,
        reason: EndReason,
    ) -> BroadcastSession | None:
        active = await tx.get_active_session(broadcaster_id)
        if active is None:
            LOGGER.debug(f"Went-offline for {broadcaster_id} with no active session, ignored")
            return None

        open_segment = await tx.get_open_segment(active.session_id)
        if open_segment is not None:
            await tx.close_segment(open_segment, at)
        await tx.close_session(active.session_id, at, reason)
        LOGGER.info(f"Session {active.session_id} ended at {at.isoformat()} ({reason.value})")
        return await tx.get_session(active.session_id)
