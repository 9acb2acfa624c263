"""HTTP health check server"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from shared.database import DatabaseManager
    from tracker.eventsub.connector import SessionConnector
    from tracker.eventsub.recorder import EventRecorder
    from tracker.services.reconcile_service import ReconciliationSweeper

logger = logging.getLogger("Tracker.Health")


class HealthCheckServer:
    """HTTP health check server"""

    def __init__(
        self,
        *,
        connector: "SessionConnector | None" = None,
        sweeper: "ReconciliationSweeper | None" = None,
        database: "DatabaseManager | None" = None,
        recorder: "EventRecorder | None" = None,
        host: str = "0.0.0.0",
        port: int = 4344,
        heartbeat_interval: float = 300.0,
    ):
        self.connector = connector
        self.sweeper = sweeper
        self.database = database
        self.recorder = recorder
        self.host = host
        self.port = port
        self.heartbeat_interval = heartbeat_interval
        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self._start_time: float = time.time()
        self._heartbeat_task: asyncio.Task | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/", self.handle_root)
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_get("/status", self.handle_status)
        self.app.router.add_get("/ping", self.handle_ping)

    @property
    def ready(self) -> bool:
        return self.connector is not None and self.connector.session_id is not None

    async def handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({"service": "broadcast-tracker", "status": "running"})

    async def handle_health(self, request: web.Request) -> web.Response:
        """Liveness: always 200, with readiness and database reachability."""
        database_ok = await self.database.check_health() if self.database else False
        return web.json_response(
            {
                "status": "healthy" if self.ready else "starting",
                "ready": self.ready,
                "database": database_ok,
            }
        )

    async def handle_status(self, request: web.Request) -> web.Response:
        sweeper = self.sweeper
        return web.json_response(
            {
                "service": "broadcast-tracker",
                "uptime_seconds": int(time.time() - self._start_time),
                "eventsub": self.connector.snapshot() if self.connector else None,
                "reconcile": {
                    "last_outcome": (
                        sweeper.last_outcome.value if sweeper and sweeper.last_outcome else None
                    ),
                    "last_run_at": (
                        sweeper.last_run_at.isoformat() if sweeper and sweeper.last_run_at else None
                    ),
                    "skipped": sweeper.skipped if sweeper else 0,
                },
                "raw_events": {
                    "written": self.recorder.written if self.recorder else 0,
                    "dropped": self.recorder.dropped if self.recorder else 0,
                },
            }
        )

    async def handle_ping(self, request: web.Request) -> web.Response:
        return web.Response(text="pong")

    async def _heartbeat(self) -> None:
        """Periodic heartbeat: uptime and connection state"""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            uptime = int(time.time() - self._start_time)
            state = self.connector.state.value if self.connector else "-"
            logger.info(f"Heartbeat: uptime={uptime}s, ready={self.ready}, eventsub={state}")

    async def start(self) -> None:
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            site = web.TCPSite(self.runner, self.host, self.port)
            await site.start()

            self._heartbeat_task = asyncio.create_task(self._heartbeat())

            logger.info(f"Health server started on {self.host}:{self.port}")
            logger.info(f"  GET http://{self.host}:{self.port}/health - Health check")
            logger.info(f"  GET http://{self.host}:{self.port}/status - Detailed status")

        except Exception as e:
            logger.exception(f"Failed to start health server: {e}")
            raise

    async def stop(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        if self.runner:
            try:
                await self.runner.cleanup()
                logger.info("Health server stopped")
            except Exception as e:
                logger.exception(f"Error stopping health server: {e}")
