"""Main application entry point."""

import asyncio
import signal
import sys
from typing import Optional
from aiohttp import web, web_runner
from datetime import datetime, timezone

from .config.settings import get_settings
from .utils.logging import setup_logging, get_logger
from .database import init_database, close_database
from .database.service import CacheStore
from .core.sync_engine import MembersSyncEngine, InvalidSyncModeError, parse_mode
from .scheduler.sync_scheduler import SyncScheduler


SYNC_ROUTE = "/api/caspio/members-cache/sync"
CALLER_ID_HEADER = "X-Caller-Id"


class MembersSyncApp:
    """Members cache sync service: HTTP trigger plus scheduled runs."""

    def __init__(
        self,
        engine: Optional[MembersSyncEngine] = None,
        store: Optional[CacheStore] = None,
        scheduler: Optional[SyncScheduler] = None
    ):
        """Initialize the application.

        Collaborators left as None are built during startup.
        """
        self.settings = get_settings()
        self.logger = get_logger("MembersSync")
        self.running = False
        self._stop_requested = asyncio.Event()
        self.started_at: Optional[datetime] = None
        self.web_app: Optional[web.Application] = None
        self.web_runner: Optional[web_runner.AppRunner] = None
        self.store = store
        self.engine = engine
        self.scheduler = scheduler

    async def startup(self):
        """Application startup."""
        self.logger.info(
            "Starting members sync service",
            version=self.settings.version,
            environment=self.settings.environment
        )

        if self.store is None:
            init_database(create_tables=True)
            self.store = CacheStore()
        if self.engine is None:
            self.engine = MembersSyncEngine(store=self.store)

        if self.scheduler is None and self.settings.scheduling.enabled:
            self.scheduler = SyncScheduler(
                self.engine,
                interval_minutes=self.settings.scheduling.sync_interval_minutes,
                full_sync_cron=self.settings.scheduling.full_sync_cron
            )
        if self.scheduler:
            await self.scheduler.start()

        await self._setup_web_server()

        self.running = True
        self.started_at = datetime.now(timezone.utc)
        self.logger.info("Members sync service started successfully")

    async def shutdown(self):
        """Application shutdown."""
        self.logger.info("Shutting down members sync service")
        self.running = False

        if self.scheduler and self.scheduler.running:
            await self.scheduler.stop()

        await self._stop_web_server()
        close_database()

        self.logger.info("Members sync service stopped")

    def request_stop(self):
        """Ask ``run`` to shut the service down."""
        self.logger.info("Shutdown requested")
        self._stop_requested.set()

    async def run(self):
        """Serve until ``request_stop`` is called, then shut down."""
        await self.startup()
        try:
            await self._stop_requested.wait()
        finally:
            await self.shutdown()

    def build_web_app(self) -> web.Application:
        """Create the aiohttp application with all routes."""
        app = web.Application()
        app.router.add_get('/health', self._health_handler)
        app.router.add_get('/status', self._status_handler)
        app.router.add_post(SYNC_ROUTE, self._sync_handler)
        return app

    async def _setup_web_server(self):
        """Set up web server for the sync trigger, health checks and status."""
        self.web_app = self.build_web_app()

        self.web_runner = web_runner.AppRunner(self.web_app)
        await self.web_runner.setup()

        site = web_runner.TCPSite(self.web_runner, self.settings.host, self.settings.port)
        await site.start()

        self.logger.info("Web server started", host=self.settings.host, port=self.settings.port)

    async def _stop_web_server(self):
        """Stop web server."""
        if self.web_runner:
            await self.web_runner.cleanup()
            self.web_runner = None
            self.logger.info("Web server stopped")

    async def _sync_handler(self, request: web.Request) -> web.Response:
        """Trigger a sync run.

        The caller is authenticated upstream and identified by the
        ``X-Caller-Id`` header.
        """
        body = {}
        if request.can_read_body:
            try:
                body = await request.json()
            except ValueError:
                return web.json_response({"success": False, "error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"success": False, "error": "Request body must be an object"}, status=400)

        try:
            mode = parse_mode(body.get("mode"))
        except InvalidSyncModeError as e:
            return web.json_response({"success": False, "error": str(e)}, status=400)

        caller_id = request.headers.get(CALLER_ID_HEADER)
        self.logger.info("Sync requested", mode=mode.value, caller_id=caller_id)

        result = await self.engine.run(mode, caller_id=caller_id)
        return web.json_response(result.to_response(), status=200 if result.success else 500)

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds() if self.started_at else 0
        health_data = {
            "status": "healthy" if self.running else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": self.settings.version,
            "environment": self.settings.environment,
            "uptime_seconds": uptime
        }

        status_code = 200 if self.running else 503
        return web.json_response(health_data, status=status_code)

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Sync state, recent runs and scheduler jobs."""
        state = self.store.get_sync_state() if self.store else None
        history = self.store.get_sync_history(limit=10) if self.store else []

        status_data = {
            "application": {
                "name": self.settings.name,
                "version": self.settings.version,
                "environment": self.settings.environment,
                "running": self.running,
                "timestamp": datetime.now(timezone.utc).isoformat()
            },
            "sync_state": state.model_dump(mode="json") if state else None,
            "cached_members": self.store.count_members() if self.store else 0,
            "recent_runs": [run.model_dump(mode="json") for run in history],
            "scheduler": {
                "running": bool(self.scheduler and self.scheduler.running),
                "jobs": [
                    {key: value.isoformat() if isinstance(value, datetime) else value
                     for key, value in job.items()}
                    for job in (self.scheduler.get_job_statuses() if self.scheduler else [])
                ]
            }
        }

        return web.json_response(status_data)


def setup_signal_handlers(app: MembersSyncApp):
    """Stop the service on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, app.request_stop)


async def main():
    """Main entry point."""
    setup_logging()

    logger = get_logger("main")
    logger.info("Initializing members sync application")

    app = MembersSyncApp()
    setup_signal_handlers(app)

    await app.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        print(f"Application failed with error: {e}")
        sys.exit(1)
