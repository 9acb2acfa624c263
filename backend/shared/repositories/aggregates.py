"""Read-only queries over closed segments and the manual baseline."""

from __future__ import annotations

import asyncpg

from shared.models.segments import BaselineGame, GameAggregate


class AggregateRepository:
    """Pure SQL reads used to build per-game totals."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def session_totals(self, session_id: str) -> list[GameAggregate]:
        """Closed segment totals for one session, grouped by category name."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT category_name,
                       MAX(ended_at)         AS last_seen,
                       SUM(duration_seconds) AS total_seconds
                FROM category_segments
                WHERE session_id = $1 AND duration_seconds IS NOT NULL
                GROUP BY category_name
                ORDER BY total_seconds DESC, category_name ASC
                """,
                session_id,
            )
            return [
                GameAggregate(
                    game=row["category_name"],
                    duration_seconds=int(row["total_seconds"] or 0),
                    last_stream_date=row["last_seen"],
                )
                for row in rows
            ]

    async def all_totals(self) -> list[GameAggregate]:
        """Closed segment totals across every session."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT category_name,
                       MAX(ended_at)         AS last_seen,
                       SUM(duration_seconds) AS total_seconds
                FROM category_segments
                WHERE duration_seconds IS NOT NULL
                GROUP BY category_name
                """
            )
            return [
                GameAggregate(
                    game=row["category_name"],
                    duration_seconds=int(row["total_seconds"] or 0),
                    last_stream_date=row["last_seen"],
                )
                for row in rows
            ]

    async def latest_baseline(self) -> list[BaselineGame]:
        """Latest baseline row per game, keyed case-insensitively."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT ON (LOWER(TRIM(game_name)))
                       game_name, total_hours, last_seen_date, inserted_at
                FROM baseline_games
                ORDER BY LOWER(TRIM(game_name)), inserted_at DESC, id DESC
                """
            )
            return [
                BaselineGame(
                    game_name=row["game_name"],
                    total_hours=float(row["total_hours"]) if row["total_hours"] is not None else None,
                    last_seen_date=row["last_seen_date"],
                    inserted_at=row["inserted_at"],
                )
                for row in rows
            ]
