"""Server commands for fieldsync CLI.

Commands:
- serve: Run the HTTP server with the maintenance scheduler
- server sweep-overdue: Flag conflicts past their resolution target
- server expire-sessions: Time out abandoned sync sessions
- server purge-staging: Delete staging rows of finished packages
"""

from __future__ import annotations

import click

from fieldsync.cli.config import db_path_option, open_database
from fieldsync.core.config import PipelineSettings


@click.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the fieldsync HTTP server.

    Configuration is read from FIELDSYNC_* environment variables.
    """
    import uvicorn

    uvicorn.run("fieldsync.server.app:app_factory", factory=True, host=host, port=port)


@click.group()
def server() -> None:
    """Server maintenance commands.

    These run the same jobs as the scheduler, for use from cron or by hand.
    """


@server.command("sweep-overdue")
@db_path_option
def sweep_overdue_cmd(db_path: str | None) -> None:
    """Flag open conflicts past their resolution target."""
    from fieldsync.server.scheduler import sweep_overdue_conflicts

    db = open_database(db_path)
    try:
        flagged = sweep_overdue_conflicts(db)
        click.echo(f"Flagged {flagged} overdue conflict(s).")
    finally:
        db.close()


@server.command("expire-sessions")
@click.option(
    "--timeout-hours",
    type=int,
    default=None,
    help="Session age limit (default: FIELDSYNC_SESSION_TIMEOUT_HOURS or 24).",
)
@db_path_option
def expire_sessions_cmd(timeout_hours: int | None, db_path: str | None) -> None:
    """Time out sync sessions left InProgress."""
    from fieldsync.server.scheduler import expire_stale_sessions

    hours = timeout_hours if timeout_hours is not None else (
        PipelineSettings.from_env().session_timeout_hours
    )
    db = open_database(db_path)
    try:
        expired = expire_stale_sessions(db, hours)
        click.echo(f"Expired {expired} session(s) older than {hours} hours.")
    finally:
        db.close()


@server.command("purge-staging")
@click.option(
    "--older-than-days",
    "-d",
    type=int,
    default=None,
    help="Retention period (default: FIELDSYNC_STAGING_RETENTION_DAYS or 90).",
)
@db_path_option
def purge_staging_cmd(older_than_days: int | None, db_path: str | None) -> None:
    """Delete staging rows of finished packages.

    Examples:

        # Purge using server defaults (90 days)
        fieldsync server purge-staging

        # Purge packages finished more than 7 days ago
        fieldsync server purge-staging --older-than-days 7
    """
    from fieldsync.server.scheduler import purge_old_staging

    days = older_than_days if older_than_days is not None else (
        PipelineSettings.from_env().staging_retention_days
    )
    db = open_database(db_path)
    try:
        deleted = purge_old_staging(db, days)
        if deleted > 0:
            click.echo(f"Purged {deleted} staging row(s).")
        else:
            click.echo("No staging rows to purge.")
    finally:
        db.close()
