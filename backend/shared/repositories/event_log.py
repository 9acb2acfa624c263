"""Repository for the append-only events_raw table."""

from __future__ import annotations

import json
from typing import Any

import asyncpg


class EventLogRepository:
    """Append-only storage for raw inbound messages."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def append_many(self, rows: list[tuple[str, str, dict[str, Any]]]) -> None:
        """Insert ``(source, event_type, payload)`` rows in one round trip."""
        if not rows:
            return
        async with self.pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO events_raw (source, event_type, payload)
                VALUES ($1, $2, $3::jsonb)
                """,
                [(source, event_type, json.dumps(payload)) for source, event_type, payload in rows],
            )

    async def count_by_type(self, event_type: str) -> int:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT COUNT(*) FROM events_raw WHERE event_type = $1", event_type
            )
            return int(value or 0)
