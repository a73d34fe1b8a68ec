"""
FastAPI Application Entry Point
"""
from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI

from habitsync.core.config import settings
from habitsync.core.dependencies import get_supabase_client
from habitsync.routes import habits, health, sync
from habitsync.services.connectivity import ConnectivityMonitor
from habitsync.services.remote import SupabaseRemoteService
from habitsync.services.storage import JsonFileStore
from habitsync.services.sync import SyncEngineRegistry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# Silence noisy third-party loggers
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)
logging.getLogger('apscheduler.scheduler').setLevel(logging.WARNING)
logging.getLogger('apscheduler.executors').setLevel(logging.WARNING)
logging.getLogger('apscheduler.executors.default').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_engines() -> tuple:
    """
    Construct the production engine registry and its connectivity monitor

    Returns:
        (engines, monitor)
    """
    remote = SupabaseRemoteService(get_supabase_client())
    store = JsonFileStore(settings.LOCAL_STORE_PATH)
    engines = SyncEngineRegistry(remote, store)
    monitor = ConnectivityMonitor(remote)
    return engines, monitor


def create_app(engines: Optional[SyncEngineRegistry] = None,
               monitor: Optional[ConnectivityMonitor] = None) -> FastAPI:
    """
    Build the application

    Args:
        engines: Optional pre-built registry; built from settings at startup if omitted
        monitor: Optional connectivity monitor to run alongside a supplied registry
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        FastAPI lifespan context manager for startup/shutdown events
        """
        # Startup
        active_engines, active_monitor = engines, monitor
        if active_engines is None:
            active_engines, active_monitor = build_engines()

        if active_monitor is not None:
            await active_monitor.check_connectivity()

        app.state.engines = active_engines
        logger.info("✓ Sync engine registry ready")

        if active_monitor is not None:
            try:
                active_monitor.start()
                logger.info("✓ Connectivity monitor started")
            except Exception as e:
                logger.warning(f"Could not start connectivity monitor: {e}")

        yield

        # Shutdown
        if active_monitor is not None:
            try:
                active_monitor.stop()
                logger.info("✓ Connectivity monitor stopped")
            except Exception as e:
                logger.warning(f"Error stopping connectivity monitor: {e}")

        await active_engines.stop_all()
        logger.info("✓ Sync engines stopped")

    app = FastAPI(
        title="Habit Sync API",
        version="0.1.0",
        lifespan=lifespan
    )

    # Register routes
    app.include_router(health.router)
    app.include_router(habits.router)
    app.include_router(sync.router)
    return app


app = create_app()
