"""Run database migrations using shared.migrations.runner.

Usage:
    python db_migrate.py          # Run all pending migrations
    python db_migrate.py --dry    # Show pending migrations without applying
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

# Ensure backend/ is on sys.path so shared.* is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

from shared.database import DatabaseManager, PoolConfig
from shared.migrations.runner import MigrationRunner

# The tracker's .env has DATABASE_URL
load_dotenv(Path(__file__).resolve().parent.parent / "tracker" / ".env")

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")


async def main() -> None:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL not set. Check tracker/.env or environment variables.")
        sys.exit(1)

    database = DatabaseManager(database_url, PoolConfig.for_service("scripts"))
    await database.connect()

    try:
        runner = MigrationRunner(database.pool)

        if "--dry" in sys.argv:
            pending = await runner.pending()
            applied = await runner.get_applied()

            print(f"Applied: {len(applied)} | Pending: {len(pending)}")
            for v in pending:
                print(f"  -> {v}")
            if not pending:
                print("Database is up to date.")
        else:
            newly_applied = await runner.run_pending()
            if not newly_applied:
                print("No pending migrations.")
            else:
                print(f"Applied {len(newly_applied)} migration(s).")
    finally:
        await database.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
