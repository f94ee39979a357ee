"""Scheduler for automatic maintenance tasks.

This module provides:
- Hourly sweep flagging open conflicts past their resolution target
- Hourly expiry of sync sessions left InProgress
- Daily purge of staging rows of finished packages at 3:00 AM
- Manual job functions for CLI usage
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

if TYPE_CHECKING:
    from fieldsync.core.config import PipelineSettings
    from fieldsync.server.database import Database

logger = logging.getLogger(__name__)


def sweep_overdue_conflicts(db: Database) -> int:
    """Flag open conflicts whose resolution target has passed.

    Returns:
        Number of conflicts newly flagged.
    """
    flagged = db.flag_overdue_conflicts()
    if flagged > 0:
        logger.warning("Overdue sweep: %d conflict(s) past their resolution target", flagged)
    else:
        logger.debug("Overdue sweep: no new overdue conflicts")
    return flagged


def expire_stale_sessions(db: Database, timeout_hours: int = 24) -> int:
    """Time out sync sessions that stayed InProgress too long.

    Returns:
        Number of sessions expired.
    """
    expired = db.expire_sync_sessions(timeout_hours)
    if expired > 0:
        logger.info("Session expiry: %d session(s) timed out after %d hours", expired, timeout_hours)
    else:
        logger.debug("Session expiry: no sessions older than %d hours", timeout_hours)
    return expired


def purge_old_staging(db: Database, retention_days: int = 90) -> int:
    """Delete staging rows of finished packages older than the retention period.

    Returns:
        Number of staging rows deleted.
    """
    deleted = db.purge_staging(retention_days)
    if deleted > 0:
        logger.info("Staging purge completed: %d rows deleted", deleted)
    else:
        logger.debug("Staging purge: no finished packages older than %d days", retention_days)
    return deleted


class MaintenanceScheduler:
    """Scheduler for automatic maintenance tasks.

    Runs hourly:
    - Overdue conflict sweep at minute 5
    - Sync session expiry at minute 15

    Runs daily:
    - Staging purge at 3:00 AM
    """

    def __init__(
        self,
        db: Database,
        settings: PipelineSettings,
        hour: int = 3,
        minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            db: Database instance.
            settings: Pipeline settings (session timeout, staging retention).
            hour: Hour to run the staging purge (0-23).
            minute: Minute to run the staging purge (0-59).
        """
        self._db = db
        self._settings = settings
        self._hour = hour
        self._minute = minute
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def _overdue_job(self) -> None:
        """Job function for the overdue conflict sweep."""
        logger.info("Starting scheduled overdue conflict sweep")
        try:
            sweep_overdue_conflicts(self._db)
        except Exception:
            logger.exception("Error during scheduled overdue conflict sweep")

    def _session_job(self) -> None:
        """Job function for sync session expiry."""
        try:
            expire_stale_sessions(self._db, self._settings.session_timeout_hours)
        except Exception:
            logger.exception("Error during scheduled sync session expiry")

    def _staging_job(self) -> None:
        """Job function for the staging purge."""
        logger.info(
            "Starting scheduled staging purge (retention: %d days)",
            self._settings.staging_retention_days,
        )
        try:
            purge_old_staging(self._db, self._settings.staging_retention_days)
        except Exception:
            logger.exception("Error during scheduled staging purge")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler()

        self._scheduler.add_job(
            self._overdue_job,
            trigger=CronTrigger(minute=5),
            id="overdue_sweep",
            name="Hourly overdue conflict sweep",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._session_job,
            trigger=CronTrigger(minute=15),
            id="session_expiry",
            name="Hourly sync session expiry",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._staging_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute),
            id="staging_purge",
            name="Daily staging purge",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            "Maintenance scheduler started (staging purge daily at %02d:%02d, retention: %d days)",
            self._hour,
            self._minute,
            self._settings.staging_retention_days,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Maintenance scheduler stopped")

    def sweep_overdue_now(self) -> int:
        """Run the overdue sweep immediately (manual trigger)."""
        return sweep_overdue_conflicts(self._db)

    def expire_sessions_now(self) -> int:
        """Run the session expiry immediately (manual trigger)."""
        return expire_stale_sessions(self._db, self._settings.session_timeout_hours)

    def purge_staging_now(self) -> int:
        """Run the staging purge immediately (manual trigger)."""
        return purge_old_staging(self._db, self._settings.staging_retention_days)
