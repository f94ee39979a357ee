"""Shared helpers for fieldsync CLI commands.

Paths come from command options first, then ``FIELDSYNC_*`` environment
variables, then the server defaults.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from fieldsync.core.config import PipelineSettings, build_storage_config

if TYPE_CHECKING:
    from fieldsync.server.database import Database
    from fieldsync.server.models import ImportPackage
    from fieldsync.server.pipeline.orchestrator import ImportPipeline

db_path_option = click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: FIELDSYNC_DB_PATH or ./fieldsync.db).",
)


def resolve_db_path(db_path: str | None) -> Path:
    if db_path:
        return Path(db_path)
    return PipelineSettings.from_env().db_path


def open_database(db_path: str | None, must_exist: bool = True) -> Database:
    """Open the server database, exiting when it does not exist yet."""
    from fieldsync.server.database import Database

    db_file = resolve_db_path(db_path)
    if must_exist and not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)
    return Database(db_file)


def open_pipeline(db: Database) -> ImportPipeline:
    """Build an import pipeline with settings and storage from the environment."""
    from fieldsync.server.pipeline.orchestrator import ImportPipeline
    from fieldsync.server.storage import create_storage

    return ImportPipeline(
        db,
        settings=PipelineSettings.from_env(),
        storage=create_storage(build_storage_config()),
    )


def require_package(db: Database, package_number: str) -> ImportPackage:
    """Look up a package by its PKG number, exiting when unknown."""
    package = db.get_package_by_number(package_number)
    if package is None:
        click.echo(f"Error: Package not found: {package_number}", err=True)
        sys.exit(1)
    return package
