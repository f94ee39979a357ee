"""FastAPI application for the fieldsync server.

This module creates and configures the FastAPI application with:
- Sync API for field devices (assignments, package upload, acknowledgment)
- Operator API for import packages and conflict review
- Background maintenance scheduler

Usage:
    uvicorn fieldsync.server.app:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from fieldsync.core.config import PipelineSettings, build_storage_config
from fieldsync.server.api.router import router as api_router
from fieldsync.server.database import Database
from fieldsync.server.pipeline.orchestrator import ImportPipeline
from fieldsync.server.scheduler import MaintenanceScheduler
from fieldsync.server.storage import PackageStore, create_storage
from fieldsync.server.sync import SyncService

# Configuration from environment variables with defaults
SETTINGS = PipelineSettings.from_env()
DB_PATH = SETTINGS.db_path
LOG_PATH = SETTINGS.log_path
STORAGE_CONFIG = build_storage_config()


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for fieldsync
    root_logger = logging.getLogger("fieldsync")
    root_logger.setLevel(logging.INFO)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


setup_logging(LOG_PATH)
logger = logging.getLogger(__name__)


def create_app(
    db: Database,
    storage: PackageStore | None = None,
    settings: PipelineSettings | None = None,
    run_scheduler: bool = False,
) -> FastAPI:
    """Create FastAPI application with custom database and storage.

    This is primarily used for testing with isolated databases.

    Args:
        db: Database instance.
        storage: Optional PackageStore instance.
        settings: Pipeline settings; defaults are used when omitted.
        run_scheduler: Start the maintenance scheduler with the application.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or PipelineSettings()
    pipeline = ImportPipeline(db, settings=settings, storage=storage)
    scheduler = MaintenanceScheduler(db, settings) if run_scheduler else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        logger.info("=" * 60)
        logger.info("fieldsync Server Starting")
        logger.info("=" * 60)
        logger.info("  Database:  %s", db.path)
        if storage:
            logger.info("  Storage:   %s", storage.location)
        else:
            logger.info("  Storage:   None (package files not kept)")
        logger.info("  Logs:      %s", LOG_PATH.absolute())
        logger.info("  Max upload: %d MB", settings.max_upload_mb)
        logger.info("  Schemas:   %s", ", ".join(sorted(settings.supported_schema_versions)))
        logger.info("=" * 60)
        if scheduler:
            scheduler.start()

        yield

        # Shutdown
        if scheduler:
            scheduler.stop()
        logger.info("fieldsync Server shutting down")

    application = FastAPI(
        title="fieldsync Server",
        description="Import and synchronization pipeline for field survey packages",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.storage = storage
    application.state.settings = settings
    application.state.pipeline = pipeline
    application.state.sync = SyncService(db, pipeline)

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    return create_app(
        db=Database(DB_PATH),
        storage=create_storage(STORAGE_CONFIG),
        settings=SETTINGS,
        run_scheduler=True,
    )


# Default application instance for uvicorn
app = create_app(
    db=Database(DB_PATH),
    storage=create_storage(STORAGE_CONFIG),
    settings=SETTINGS,
    run_scheduler=True,
)
