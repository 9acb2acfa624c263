"""Periodic reconciliation against the upstream live status."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from shared.models.segments import utcnow
from tracker.eventsub.dispatcher import LiveStatusSource
from tracker.services.segment_service import ReconcileOutcome, SegmentationEngine

LOGGER = logging.getLogger("Tracker.Sweeper")


class ReconciliationSweeper:
    """Polls Helix for the broadcaster's live status and reconciles.

    The only way a missed offline (process down during the broadcast end)
    or a broadcast that began before the connector was listening gets
    recorded. Runs once on start, then every *interval* seconds.
    """

    def __init__(
        self,
        engine: SegmentationEngine,
        status_source: LiveStatusSource,
        broadcaster_id: str,
        *,
        interval: float = 300.0,
        broadcaster_name: str = "",
    ) -> None:
        self.engine = engine
        self.status_source = status_source
        self.broadcaster_id = broadcaster_id
        self.broadcaster_name = broadcaster_name
        self.interval = interval
        self._task: asyncio.Task | None = None
        self.last_outcome: ReconcileOutcome | None = None
        self.last_run_at: datetime | None = None
        self.skipped = 0

    async def start(self) -> None:
        if self._task is not None:
            return
        await self.sweep_once()
        self._task = asyncio.create_task(self._loop(), name="reconcile-sweeper")
        LOGGER.info(f"Reconciliation sweeper started (every {self.interval:.0f}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        LOGGER.info("Reconciliation sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.sweep_once()

    async def sweep_once(self, now: datetime | None = None) -> ReconcileOutcome | None:
        """One reconcile pass. Returns None when the tick was skipped."""
        try:
            status = await self.status_source.get_live_status(self.broadcaster_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.skipped += 1
            LOGGER.exception(f"Live status query for {self.broadcaster_id} failed, skipping sweep")
            return None
        if status is None:
            # Unknown is not offline
            self.skipped += 1
            LOGGER.warning(f"Live status for {self.broadcaster_id} unavailable, skipping sweep")
            return None

        try:
            outcome = await self.engine.reconcile(
                self.broadcaster_id,
                status,
                now=now or utcnow(),
                broadcaster_name=self.broadcaster_name,
                settle=timedelta(seconds=self.interval),
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception(f"Reconcile failed for {self.broadcaster_id}")
            return None

        self.last_outcome = outcome
        self.last_run_at = utcnow()
        LOGGER.debug(f"Sweep {self.broadcaster_id}: {outcome.value}")
        return outcome
