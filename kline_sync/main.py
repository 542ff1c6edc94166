"""
Main application entry point.
Initializes the FastAPI app, database, realtime backfill consumer and the sync scheduler.
"""
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from kline_sync.api.routes import create_app
from kline_sync.config import settings
from kline_sync.container import get_services
from kline_sync.database import init_db

# Configure logging for stdout/stderr collectors
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    Handles database initialization and the background sync lifecycle.
    """
    logger.info(f"Starting {settings.app_name}...")
    services = None

    try:
        init_db()
        services = get_services()
        services.config.seed_defaults()
        services.realtime.start_consumer()
        services.realtime.start_all()
        if settings.scheduler_enabled:
            await services.scheduler.start()
        logger.info("Application started successfully")
        yield
    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info(f"Shutting down {settings.app_name}...")
        if services is not None:
            await services.scheduler.stop()
            services.realtime.shutdown_service()
            services.sync.fail_stale_running_tasks()
        logger.info("Shutdown complete")


app = create_app(lifespan=lifespan)


def main():
    """Run the application."""
    logger.info(
        "Configuration loaded",
        extra={
            "host": settings.host,
            "port": settings.port,
            "log_level": settings.log_level,
            "scheduler_enabled": settings.scheduler_enabled,
            "db_pool_size": settings.db_pool_size,
            "db_max_overflow": settings.db_max_overflow,
            "db_pool_timeout_seconds": settings.db_pool_timeout_seconds,
        },
    )

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        lifespan="on",
        access_log=True,
    )


if __name__ == "__main__":
    main()
