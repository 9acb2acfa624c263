"""Per-game totals over closed segments, merged with the manual baseline."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

import asyncpg

from shared.cache import AsyncTTLCache, cached
from shared.models.segments import BaselineGame, BroadcastSession, GameAggregate
from shared.repositories.aggregates import AggregateRepository

logger = logging.getLogger(__name__)

# Totals only change when a session closes; invalidated from the engine hook.
_totals_cache = AsyncTTLCache(maxsize=64, ttl=900)

_TRANSIENT_DB_ERRORS = (OSError, asyncio.TimeoutError, asyncpg.PostgresConnectionError)


def game_key(name: str) -> str:
    return name.strip().lower()


def _sort(aggregates: Iterable[GameAggregate]) -> list[GameAggregate]:
    return sorted(aggregates, key=lambda a: (-a.duration_seconds, a.game))


def merge_game_totals(
    segment_totals: Iterable[GameAggregate],
    baseline: Iterable[BaselineGame],
) -> list[GameAggregate]:
    """Add segment seconds on top of the baseline hours, per game.

    Games are matched case-insensitively. A segment name wins over the
    baseline spelling, and so does the segment's last end time.
    """
    merged: dict[str, GameAggregate] = {}

    for row in baseline:
        key = game_key(row.game_name)
        if not key:
            continue
        merged[key] = GameAggregate(
            game=row.game_name.strip(),
            duration_seconds=int(round((row.total_hours or 0) * 3600)),
            last_stream_date=row.last_seen_date,
        )

    for agg in segment_totals:
        key = game_key(agg.game)
        existing = merged.get(key)
        if existing is None:
            merged[key] = GameAggregate(agg.game, agg.duration_seconds, agg.last_stream_date)
            continue
        existing.game = agg.game
        existing.duration_seconds += agg.duration_seconds
        if agg.last_stream_date is not None:
            existing.last_stream_date = agg.last_stream_date

    return _sort(merged.values())


def _combine(totals: Iterable[GameAggregate]) -> list[GameAggregate]:
    """Fold rows that differ only by name casing."""
    merged: dict[str, GameAggregate] = {}
    for agg in totals:
        key = game_key(agg.game)
        existing = merged.get(key)
        if existing is None:
            merged[key] = GameAggregate(agg.game, agg.duration_seconds, agg.last_stream_date)
            continue
        existing.duration_seconds += agg.duration_seconds
        if agg.last_stream_date is not None and (
            existing.last_stream_date is None or agg.last_stream_date > existing.last_stream_date
        ):
            existing.last_stream_date = agg.last_stream_date
            existing.game = agg.game
    return _sort(merged.values())


class AggregateService:
    """Pull-only read API producing ``GameAggregate`` sequences."""

    def __init__(self, repository: AggregateRepository) -> None:
        self.repository = repository

    @cached(
        cache=_totals_cache,
        key_func=lambda self, session_id: f"session_totals:{session_id}",
        retry_on=_TRANSIENT_DB_ERRORS,
    )
    async def session_totals(self, session_id: str) -> list[GameAggregate]:
        return _combine(await self.repository.session_totals(session_id))

    @cached(
        cache=_totals_cache,
        key_func=lambda self: "global_totals",
        retry_on=_TRANSIENT_DB_ERRORS,
    )
    async def global_totals(self) -> list[GameAggregate]:
        """All closed segments plus the latest baseline row per game."""
        segment_totals = _combine(await self.repository.all_totals())
        baseline = await self.repository.latest_baseline()
        return merge_game_totals(segment_totals, baseline)

    def invalidate(self, session: BroadcastSession | None = None) -> None:
        _totals_cache.invalidate("global_totals")
        if session is not None:
            _totals_cache.invalidate(f"session_totals:{session.session_id}")
            logger.debug(f"Aggregates invalidated after session {session.session_id} closed")
