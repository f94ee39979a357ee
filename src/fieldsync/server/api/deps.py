"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Request

from fieldsync.server.database import Database
from fieldsync.server.pipeline.orchestrator import ImportPipeline
from fieldsync.server.sync import SyncService


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_pipeline(request: Request) -> ImportPipeline:
    """Get the import pipeline from app state."""
    pipeline: ImportPipeline = request.app.state.pipeline
    return pipeline


def get_sync_service(request: Request) -> SyncService:
    """Get the sync protocol service from app state."""
    service: SyncService = request.app.state.sync
    return service
