"""Print accumulated time per game.

Usage:
    python game_report.py                  # All sessions merged with the baseline
    python game_report.py --session <id>   # One session only
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from shared.database import DatabaseManager, PoolConfig
from shared.models.segments import GameAggregate
from shared.repositories import AggregateRepository
from tracker.services.aggregate_service import AggregateService

load_dotenv(Path(__file__).resolve().parent.parent / "tracker" / ".env")

console = Console()


def format_duration(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    return f"{hours}h {rest // 60:02d}m"


def render(title: str, aggregates: list[GameAggregate]) -> Table:
    table = Table(title=title)
    table.add_column("Game")
    table.add_column("Time", justify="right")
    table.add_column("Hours", justify="right")
    table.add_column("Last streamed")
    for agg in aggregates:
        last = agg.last_stream_date.isoformat() if agg.last_stream_date else "-"
        table.add_row(
            agg.game,
            format_duration(agg.duration_seconds),
            f"{agg.duration_seconds / 3600:.2f}",
            last,
        )
    return table


async def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--session", help="Limit the report to one broadcast session id")
    args = parser.parse_args()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        console.print("[red]ERROR:[/red] DATABASE_URL not set")
        sys.exit(1)

    database = DatabaseManager(database_url, PoolConfig.for_service("scripts"))
    await database.connect()
    try:
        service = AggregateService(AggregateRepository(database.pool))
        if args.session:
            aggregates = await service.session_totals(args.session)
            title = f"Session {args.session}"
        else:
            aggregates = await service.global_totals()
            title = "All sessions (with baseline)"
    finally:
        await database.disconnect()

    if not aggregates:
        console.print("No closed segments yet.")
        return
    console.print(render(title, aggregates))


if __name__ == "__main__":
    asyncio.run(main())
