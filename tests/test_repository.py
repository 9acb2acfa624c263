"""Tests for the asyncpg repositories and migration runner, against a fake pool."""

from contextlib import asynccontextmanager
from datetime import date

import pytest

from conftest import T0, at
from shared.migrations.runner import VERSIONS_DIR, MigrationRunner
from shared.models.segments import Category, CategorySegment, EndReason
from shared.repositories import AggregateRepository, EventLogRepository, SegmentRepository


def normalize(sql: str) -> str:
    return " ".join(sql.split())


class FakeConnection:
    def __init__(self):
        self.calls: list[tuple[str, str, tuple]] = []
        self.fetchrow_result = None
        self.fetch_result: list = []
        self.fetchval_result = None
        self.transactions = 0
        self.rolled_back = 0

    async def execute(self, sql, *args):
        self.calls.append(("execute", normalize(sql), args))

    async def executemany(self, sql, rows):
        self.calls.append(("executemany", normalize(sql), tuple(rows)))

    async def fetchrow(self, sql, *args):
        self.calls.append(("fetchrow", normalize(sql), args))
        return self.fetchrow_result

    async def fetch(self, sql, *args):
        self.calls.append(("fetch", normalize(sql), args))
        return self.fetch_result

    async def fetchval(self, sql, *args):
        self.calls.append(("fetchval", normalize(sql), args))
        return self.fetchval_result

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        try:
            yield
        except BaseException:
            self.rolled_back += 1
            raise


class FakePool:
    def __init__(self, conn=None):
        self.conn = conn or FakeConnection()
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self, timeout=None):
        self.acquired += 1
        yield self.conn


@pytest.fixture
def pool():
    return FakePool()


# -- Segment repository --------------------------------------------------------


class TestSegmentRepository:
    @pytest.mark.asyncio
    async def test_upsert_never_moves_start_later(self, pool):
        await SegmentRepository(pool).upsert_session_start("s1", "123", "tracked", T0)

        kind, sql, args = pool.conn.calls[-1]
        assert "ON CONFLICT (session_id) DO UPDATE" in sql
        assert "LEAST(broadcast_sessions.started_at, EXCLUDED.started_at)" in sql
        assert args == ("s1", "123", "tracked", T0)

    @pytest.mark.asyncio
    async def test_open_segment_is_idempotent_on_natural_key(self, pool):
        await SegmentRepository(pool).open_segment("s1", Category(), T0)

        _, sql, args = pool.conn.calls[-1]
        assert "ON CONFLICT (session_id, started_at, category_name) DO NOTHING" in sql
        assert args == ("s1", None, "Unknown", T0)

    @pytest.mark.asyncio
    async def test_close_segment_floors_duration(self, pool):
        segment = CategorySegment("s1", "Chess", T0, category_id="743")

        closed = await SegmentRepository(pool).close_segment(segment, at(90.7))

        assert closed.duration_seconds == 90
        _, sql, args = pool.conn.calls[-1]
        assert "AND ended_at IS NULL" in sql
        assert args == ("s1", T0, "Chess", at(90.7), 90)

    @pytest.mark.asyncio
    async def test_close_session_only_once(self, pool):
        await SegmentRepository(pool).close_session("s1", at(60), EndReason.RECOVERED)

        _, sql, args = pool.conn.calls[-1]
        assert "WHERE session_id = $1 AND ended_at IS NULL" in sql
        assert args == ("s1", at(60), "recovered-by-reconciliation")

    @pytest.mark.asyncio
    async def test_get_active_session_maps_row(self, pool):
        pool.conn.fetchrow_result = {
            "session_id": "s1",
            "broadcaster_id": "123",
            "broadcaster_name": "tracked",
            "started_at": T0,
            "ended_at": at(60),
            "end_reason": "event-notified",
        }

        session = await SegmentRepository(pool).get_active_session("123")

        assert session.session_id == "s1"
        assert session.end_reason is EndReason.EVENT_NOTIFIED

    @pytest.mark.asyncio
    async def test_missing_rows_are_none(self, pool):
        repo = SegmentRepository(pool)
        assert await repo.get_active_session("123") is None
        assert await repo.get_open_segment("s1") is None

    @pytest.mark.asyncio
    async def test_atomic_shares_one_connection_and_transaction(self, pool):
        repo = SegmentRepository(pool)

        async with repo.atomic() as tx:
            await tx.get_active_session("123")
            await tx.open_segment("s1", Category("Chess"), T0)
            async with tx.atomic() as nested:
                await nested.get_open_segment("s1")

        assert pool.acquired == 1
        assert pool.conn.transactions == 1
        assert len(pool.conn.calls) == 3

    @pytest.mark.asyncio
    async def test_atomic_rolls_back_on_error(self, pool):
        with pytest.raises(RuntimeError):
            async with SegmentRepository(pool).atomic() as tx:
                await tx.open_segment("s1", Category("Chess"), T0)
                raise RuntimeError("boom")

        assert pool.conn.rolled_back == 1


# -- Event log -----------------------------------------------------------------


class TestEventLogRepository:
    @pytest.mark.asyncio
    async def test_append_many_serializes_payloads(self, pool):
        await EventLogRepository(pool).append_many(
            [("eventsub_ws", "notification", {"metadata": {"message_id": "m1"}})]
        )

        kind, sql, rows = pool.conn.calls[-1]
        assert kind == "executemany"
        assert "$3::jsonb" in sql
        assert rows == (("eventsub_ws", "notification", '{"metadata": {"message_id": "m1"}}'),)

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, pool):
        await EventLogRepository(pool).append_many([])
        assert pool.acquired == 0

    @pytest.mark.asyncio
    async def test_count_by_type(self, pool):
        pool.conn.fetchval_result = 7
        assert await EventLogRepository(pool).count_by_type("notification") == 7


# -- Aggregates ----------------------------------------------------------------


class TestAggregateRepository:
    @pytest.mark.asyncio
    async def test_session_totals_only_closed_segments(self, pool):
        pool.conn.fetch_result = [
            {"category_name": "Chess", "last_seen": at(600), "total_seconds": 600}
        ]

        totals = await AggregateRepository(pool).session_totals("s1")

        assert totals[0].game == "Chess"
        assert totals[0].duration_seconds == 600
        _, sql, args = pool.conn.calls[-1]
        assert "duration_seconds IS NOT NULL" in sql
        assert args == ("s1",)

    @pytest.mark.asyncio
    async def test_latest_baseline_per_game(self, pool):
        pool.conn.fetch_result = [
            {
                "game_name": "Chess",
                "total_hours": 12.5,
                "last_seen_date": date(2025, 12, 1),
                "inserted_at": T0,
            }
        ]

        (baseline,) = await AggregateRepository(pool).latest_baseline()

        assert baseline.total_hours == 12.5
        _, sql, _ = pool.conn.calls[-1]
        assert "DISTINCT ON (LOWER(TRIM(game_name)))" in sql
        assert "inserted_at DESC" in sql


# -- Migrations ----------------------------------------------------------------


class TestMigrationRunner:
    def test_ships_segment_schema(self):
        names = [p.name for p in MigrationRunner(FakePool()).discover()]
        assert "001_segments.sql" in names
        assert VERSIONS_DIR.is_dir()

    @pytest.mark.asyncio
    async def test_applies_pending_in_order(self, pool, tmp_path):
        (tmp_path / "002_more.sql").write_text("SELECT 2;")
        (tmp_path / "001_init.sql").write_text("SELECT 1;")
        pool.conn.fetch_result = []

        applied = await MigrationRunner(pool, tmp_path).run_pending()

        assert applied == ["001_init", "002_more"]
        assert pool.conn.transactions == 2
        executed = [sql for kind, sql, _ in pool.conn.calls if kind == "execute"]
        assert executed.index("SELECT 1;") < executed.index("SELECT 2;")

    @pytest.mark.asyncio
    async def test_skips_applied(self, pool, tmp_path):
        (tmp_path / "001_init.sql").write_text("SELECT 1;")
        pool.conn.fetch_result = [{"version": "001_init"}]

        assert await MigrationRunner(pool, tmp_path).run_pending() == []
        assert await MigrationRunner(pool, tmp_path).pending() == []
