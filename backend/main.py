"""
X Digest Backend - Main FastAPI Application

Run with:
    uvicorn main:app --port 8000
    python main.py --config config.json

Or run a single sync and exit (for cron or other external schedulers):
    python main.py --once
"""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from adapter.errors import HarvestError
from adapter.rate_limiter import create_x_api_limiter
from adapter.x import XAdapter
from api import router, set_dependencies
from archive import SqliteArchiveStore
from core import SyncEngine, SyncScheduler
from digest import EmailDigestSender
from monitoring import SystemMonitor
from settings import Settings

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

CONFIG_FILE = os.environ.get("X_DIGEST_CONFIG", "config.json")


def build_engine(settings: Settings, monitor: SystemMonitor) -> tuple[SyncEngine, XAdapter, SqliteArchiveStore]:
    """Wire the engine and its collaborators from settings."""
    x_adapter = XAdapter(
        access_token=settings.x_access_token,
        user_id=settings.x_user_id,
        page_size=settings.feed_page_size,
        rate_limiter=create_x_api_limiter(),
        monitor=monitor,
    )
    store = SqliteArchiveStore(settings.archive_db_path)
    sender = EmailDigestSender(
        recipient=settings.digest_recipient,
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        from_email=settings.smtp_from_email,
    )

    monitor.set_component_status(
        "x_adapter",
        "healthy" if x_adapter.is_configured else "warning",
        {"configured": x_adapter.is_configured}
    )
    monitor.set_component_status("archive", "healthy", {"path": str(store.db_path)})
    monitor.set_component_status(
        "digest",
        "healthy" if sender.enabled else "warning",
        {"enabled": sender.enabled}
    )

    engine = SyncEngine(store, x_adapter, sender, tz=settings.tzinfo, monitor=monitor)
    return engine, x_adapter, store


class RequestMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware to count API requests per endpoint."""

    def __init__(self, app, monitor: SystemMonitor):
        super().__init__(app)
        self.monitor = monitor

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in ["/", "/docs", "/redoc", "/openapi.json"]:
            return await call_next(request)

        endpoint = request.url.path.replace("/api/v1", "") or "/"
        try:
            response = await call_next(request)
        except Exception:
            self.monitor.metrics.record_request(endpoint, error=True)
            raise

        self.monitor.metrics.record_request(endpoint, error=response.status_code >= 500)
        return response


def create_app(settings: Settings = None) -> FastAPI:
    """Create the FastAPI app; settings are loaded at startup when not given."""
    monitor = SystemMonitor()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan - setup and teardown.
        """
        app_settings = settings or Settings.load(CONFIG_FILE)
        logger.info("Starting X Digest backend...")

        engine, x_adapter, store = build_engine(app_settings, monitor)
        if x_adapter.is_configured:
            logger.info("✓ X Adapter configured")
        else:
            logger.warning("⚠ X Adapter not configured - set X_ACCESS_TOKEN")

        scheduler = SyncScheduler(engine, interval=app_settings.sync_interval)
        set_dependencies(scheduler, store, monitor, x_adapter)

        if app_settings.auto_sync:
            await scheduler.start()
            monitor.set_component_status("scheduler", "healthy", {"interval": app_settings.sync_interval})
            logger.info(f"✓ SyncScheduler started (interval: {app_settings.sync_interval}s)")
        else:
            monitor.set_component_status("scheduler", "warning", {"enabled": False})
            logger.info("ℹ Automatic sync disabled (set AUTO_SYNC=true to enable)")
            logger.info("  POST /api/v1/sync runs a sync on demand")

        logger.info("X Digest backend ready!")

        yield  # Application runs here

        logger.info("Shutting down X Digest backend...")
        await scheduler.stop()
        logger.info("Goodbye!")

    app = FastAPI(
        title="X Digest API",
        description="Daily harvest and digest of the X home timeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestMonitoringMiddleware, monitor=monitor)
    app.include_router(router)

    @app.get("/")
    async def root():
        return {"name": "X Digest API", "version": "1.0.0", "docs": "/docs"}

    return app


app = create_app()


def run_once(settings: Settings) -> int:
    """Run a single sync; returns a process exit code."""
    engine, _, _ = build_engine(settings, SystemMonitor())
    try:
        result = engine.run()
    except HarvestError as e:
        logger.error(f"Sync failed: {e}")
        return 1

    logger.info(
        f"Sync complete: {result.outcome.value}, {result.new_items} new, "
        f"{result.total_items} in {result.partition}"
    )
    return 0


def main(argv=None) -> int:
    """Serve the API, or run one sync with --once."""
    parser = argparse.ArgumentParser(description="X home timeline digest")
    parser.add_argument("--once", action="store_true", help="Run one sync and exit")
    parser.add_argument("--config", default=CONFIG_FILE, help="JSON config file (default: config.json)")
    args = parser.parse_args(argv)

    settings = Settings.load(args.config)
    if args.once:
        return run_once(settings)

    import uvicorn

    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
