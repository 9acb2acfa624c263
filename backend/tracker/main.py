import asyncio
import functools
import logging
import signal

import aiohttp
from pydantic import ValidationError

from shared.database import DatabaseManager, PoolConfig
from shared.migrations.runner import MigrationRunner
from shared.repositories import EventLogRepository, SegmentRepository
from tracker.core.config import TrackerSettings, get_settings
from tracker.core.health_server import HealthCheckServer
from tracker.core.logging import setup_logging
from tracker.errors import TrackerError
from tracker.eventsub.connector import SessionConnector, aiohttp_ws_connect
from tracker.eventsub.dispatcher import EventDispatcher
from tracker.eventsub.recorder import EventRecorder
from tracker.eventsub.subscriptions import SubscriptionManager
from tracker.services.reconcile_service import ReconciliationSweeper
from tracker.services.segment_service import SegmentationEngine
from tracker.services.twitch_api import TwitchAPIClient

LOGGER: logging.Logger = logging.getLogger("Tracker")


class TrackerService:
    """Wires the tracker together; started and stopped as one unit."""

    def __init__(self, settings: TrackerSettings) -> None:
        self.settings = settings
        self.database = DatabaseManager(
            settings.database_url,
            PoolConfig.for_service("tracker", ssl=settings.database_ssl or None),
        )
        self.twitch = TwitchAPIClient(
            settings.client_id,
            settings.client_secret,
            timeout=settings.http_timeout_seconds,
        )
        self.http_session: aiohttp.ClientSession | None = None
        self.recorder: EventRecorder | None = None
        self.sweeper: ReconciliationSweeper | None = None
        self.connector: SessionConnector | None = None
        self.health: HealthCheckServer | None = None

    async def _resolve_broadcaster(self) -> dict[str, str]:
        user = await self.twitch.get_user_by_login(self.settings.broadcaster_login)
        if user is None:
            raise TrackerError(
                f"Cannot resolve broadcaster '{self.settings.broadcaster_login}'"
            )
        LOGGER.info(f"Tracking {user['display_name']} (ID: {user['id']})")
        return user

    async def start(self) -> None:
        settings = self.settings

        await self.database.connect()
        await MigrationRunner(self.database.pool).run_pending()

        broadcaster = await self._resolve_broadcaster()

        engine = SegmentationEngine(SegmentRepository(self.database.pool))

        if settings.record_raw_events:
            self.recorder = EventRecorder(EventLogRepository(self.database.pool))
            await self.recorder.start()

        self.sweeper = ReconciliationSweeper(
            engine,
            self.twitch,
            broadcaster["id"],
            interval=settings.reconcile_interval_seconds,
            broadcaster_name=broadcaster["login"],
        )
        await self.sweeper.start()

        subscriptions = SubscriptionManager(
            self.twitch,
            broadcaster["id"],
            user_token=settings.broadcaster_access_token,
        )
        self.http_session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(sock_connect=settings.connect_timeout_seconds)
        )
        self.connector = SessionConnector(
            url=settings.eventsub_url,
            ws_connect=functools.partial(aiohttp_ws_connect, self.http_session),
            dispatcher=EventDispatcher(engine, self.twitch),
            on_welcome=subscriptions.ensure,
            recorder=self.recorder,
            connect_timeout=settings.connect_timeout_seconds,
            keepalive_grace=settings.keepalive_grace_seconds,
            suppress_duplicates=settings.suppress_duplicate_messages,
        )
        await self.connector.start()

        self.health = HealthCheckServer(
            connector=self.connector,
            sweeper=self.sweeper,
            database=self.database,
            recorder=self.recorder,
            port=settings.health_port,
        )
        await self.health.start()

    async def stop(self) -> None:
        """Reverse of ``start``; safe after a partial start."""
        if self.health:
            await self.health.stop()
        if self.connector:
            await self.connector.stop()
        if self.http_session:
            await self.http_session.close()
        if self.sweeper:
            await self.sweeper.stop()
        if self.recorder:
            await self.recorder.stop()
        await self.twitch.close()
        await self.database.disconnect()
        LOGGER.info("Tracker stopped")


async def run(settings: TrackerSettings) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    service = TrackerService(settings)
    try:
        await service.start()
        LOGGER.info("Tracker running")
        await stop_event.wait()
        LOGGER.info("Shutdown signal received")
    finally:
        await service.stop()


def main() -> None:
    setup_logging()
    try:
        settings = get_settings()
    except ValidationError as e:
        LOGGER.error(f"Invalid configuration:\n{e}")
        raise

    setup_logging(settings.log_level)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        LOGGER.warning("Shutting down due to KeyboardInterrupt...")


if __name__ == "__main__":
    main()
