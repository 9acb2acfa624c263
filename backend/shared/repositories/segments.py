"""Repository for broadcast_sessions and category_segments tables."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Protocol

import asyncpg

from shared.models.segments import (
    BroadcastSession,
    Category,
    CategorySegment,
    EndReason,
)

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = (
    "session_id, broadcaster_id, broadcaster_name, started_at, ended_at, end_reason"
)
_SEGMENT_COLUMNS = (
    "id, session_id, category_id, category_name, started_at, ended_at, duration_seconds"
)


class SegmentStore(Protocol):
    """Durable state the segmentation engine reads and mutates."""

    def atomic(self) -> AbstractAsyncContextManager[SegmentStore]: ...

    async def get_active_session(self, broadcaster_id: str) -> BroadcastSession | None: ...

    async def get_session(self, session_id: str) -> BroadcastSession | None: ...

    async def upsert_session_start(
        self,
        session_id: str,
        broadcaster_id: str,
        broadcaster_name: str,
        started_at: datetime,
    ) -> None: ...

    async def close_session(
        self, session_id: str, ended_at: datetime, reason: EndReason
    ) -> None: ...

    async def get_open_segment(self, session_id: str) -> CategorySegment | None: ...

    async def list_segments(self, session_id: str) -> list[CategorySegment]: ...

    async def open_segment(
        self, session_id: str, category: Category, started_at: datetime
    ) -> None: ...

    async def close_segment(
        self, segment: CategorySegment, ended_at: datetime
    ) -> CategorySegment: ...

    async def rewind_segment_start(
        self, segment: CategorySegment, started_at: datetime
    ) -> None: ...


def _session_from_row(row: asyncpg.Record) -> BroadcastSession:
    reason = row["end_reason"]
    return BroadcastSession(
        session_id=row["session_id"],
        broadcaster_id=row["broadcaster_id"],
        broadcaster_name=row["broadcaster_name"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        end_reason=EndReason(reason) if reason else None,
    )


def _segment_from_row(row: asyncpg.Record) -> CategorySegment:
    duration = row["duration_seconds"]
    return CategorySegment(
        id=row["id"],
        session_id=row["session_id"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        duration_seconds=int(duration) if duration is not None else None,
    )


class SegmentRepository:
    """SQL implementation of the segment store.

    Outside of :meth:`atomic` each call borrows its own pooled connection.
    Inside it, every call runs on one connection within one transaction.
    """

    def __init__(self, pool: asyncpg.Pool, conn: asyncpg.Connection | None = None) -> None:
        self.pool = pool
        self._conn = conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        if self._conn is not None:
            yield self._conn
        else:
            async with self.pool.acquire() as conn:
                yield conn

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[SegmentRepository]:
        """Bind a repository to a single transaction."""
        if self._conn is not None:
            yield self
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield SegmentRepository(self.pool, conn=conn)

    # ==================== Sessions ====================

    async def get_active_session(self, broadcaster_id: str) -> BroadcastSession | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM broadcast_sessions
                WHERE broadcaster_id = $1 AND ended_at IS NULL
                ORDER BY started_at DESC
                LIMIT 1
                """,
                broadcaster_id,
            )
            return _session_from_row(row) if row else None

    async def get_session(self, session_id: str) -> BroadcastSession | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SESSION_COLUMNS} FROM broadcast_sessions WHERE session_id = $1",
                session_id,
            )
            return _session_from_row(row) if row else None

    async def upsert_session_start(
        self,
        session_id: str,
        broadcaster_id: str,
        broadcaster_name: str,
        started_at: datetime,
    ) -> None:
        """Insert a session, or move an existing one's start earlier (never later)."""
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO broadcast_sessions
                    (session_id, broadcaster_id, broadcaster_name, started_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (session_id) DO UPDATE SET
                    broadcaster_id   = EXCLUDED.broadcaster_id,
                    broadcaster_name = EXCLUDED.broadcaster_name,
                    started_at       = LEAST(broadcast_sessions.started_at, EXCLUDED.started_at)
                """,
                session_id,
                broadcaster_id,
                broadcaster_name,
                started_at,
            )

    async def close_session(
        self, session_id: str, ended_at: datetime, reason: EndReason
    ) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE broadcast_sessions
                SET ended_at = $2, end_reason = $3
                WHERE session_id = $1 AND ended_at IS NULL
                """,
                session_id,
                ended_at,
                reason.value,
            )

    # ==================== Segments ====================

    async def get_open_segment(self, session_id: str) -> CategorySegment | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_SEGMENT_COLUMNS}
                FROM category_segments
                WHERE session_id = $1 AND ended_at IS NULL
                ORDER BY started_at DESC
                LIMIT 1
                """,
                session_id,
            )
            return _segment_from_row(row) if row else None

    async def list_segments(self, session_id: str) -> list[CategorySegment]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SEGMENT_COLUMNS}
                FROM category_segments
                WHERE session_id = $1
                ORDER BY started_at ASC, id ASC
                """,
                session_id,
            )
            return [_segment_from_row(r) for r in rows]

    async def open_segment(
        self, session_id: str, category: Category, started_at: datetime
    ) -> None:
        """Open a segment; replays of the same natural key are ignored."""
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO category_segments
                    (session_id, category_id, category_name, started_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (session_id, started_at, category_name) DO NOTHING
                """,
                session_id,
                category.id,
                category.name,
                started_at,
            )

    async def close_segment(
        self, segment: CategorySegment, ended_at: datetime
    ) -> CategorySegment:
        closed = segment.closed_at(ended_at)
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE category_segments
                SET ended_at = $4, duration_seconds = $5
                WHERE session_id = $1 AND started_at = $2 AND category_name = $3
                  AND ended_at IS NULL
                """,
                segment.session_id,
                segment.started_at,
                segment.category_name,
                closed.ended_at,
                closed.duration_seconds,
            )
        return closed

    async def rewind_segment_start(
        self, segment: CategorySegment, started_at: datetime
    ) -> None:
        """Move a segment's start earlier, recomputing duration if it is closed."""
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE category_segments
                SET started_at = $4,
                    duration_seconds = CASE
                        WHEN ended_at IS NULL THEN NULL
                        ELSE GREATEST(0, FLOOR(EXTRACT(EPOCH FROM (ended_at - $4))))::BIGINT
                    END
                WHERE session_id = $1 AND started_at = $2 AND category_name = $3
                  AND $4 < started_at
                """,
                segment.session_id,
                segment.started_at,
                segment.category_name,
                started_at,
            )
