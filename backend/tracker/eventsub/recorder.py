"""Append-only raw message log, written off the message-handling path."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

LOGGER = logging.getLogger("Tracker.Recorder")


class RawEventSink(Protocol):
    async def append_many(self, rows: list[tuple[str, str, dict[str, Any]]]) -> None: ...


class EventRecorder:
    """Queues raw frames and flushes them to the event log in batches.

    ``record`` never awaits, so a slow or failing database cannot hold up
    message processing.
    """

    def __init__(
        self,
        sink: RawEventSink,
        *,
        source: str = "eventsub_ws",
        batch_size: int = 100,
        maxsize: int = 10_000,
    ) -> None:
        self.sink = sink
        self.source = source
        self.batch_size = batch_size
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]] | None] = asyncio.Queue(
            maxsize=maxsize
        )
        self._task: asyncio.Task | None = None
        self.written = 0
        self.dropped = 0

    def record(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((event_type, payload))
        except asyncio.QueueFull:
            self.dropped += 1
            LOGGER.warning(f"Raw event queue full, dropped {event_type} (total {self.dropped})")

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Flush what is queued, then stop the writer."""
        if self._task is None:
            return
        await self._queue.put(None)
        await self._task
        self._task = None

    async def _run(self) -> None:
        stopping = False
        while not stopping:
            item = await self._queue.get()
            batch: list[tuple[str, str, dict[str, Any]]] = []
            while True:
                if item is None:
                    stopping = True
                else:
                    batch.append((self.source, item[0], item[1]))
                if stopping or len(batch) >= self.batch_size or self._queue.empty():
                    break
                item = self._queue.get_nowait()
            await self._flush(batch)

    async def _flush(self, batch: list[tuple[str, str, dict[str, Any]]]) -> None:
        if not batch:
            return
        try:
            await self.sink.append_many(batch)
            self.written += len(batch)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.error(f"Failed to write {len(batch)} raw event(s): {type(e).__name__}: {e}")
