"""Server database using SQLAlchemy with SQLite.

This module provides:
- Engine and session management
- Import package and conflict queries
- Vocabulary snapshot and upsert
- Sync session and assignment lookups
- Maintenance queries (overdue sweep, session expiry, staging purge)
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import Session

from fieldsync.core.types import ConflictStatus, PackageStatus, SyncSessionStatus
from fieldsync.server.models import (
    Base,
    ConflictResolution,
    ImportPackage,
    SyncSession,
    Vocabulary,
    as_utc,
)
from fieldsync.server.pipeline.conflicts import check_if_overdue, load_state
from fieldsync.server.pipeline.staging import discard_staging
from fieldsync.server.pipeline.states import TERMINAL_STATUSES

if TYPE_CHECKING:
    from sqlalchemy import Engine


class PackageNotFoundError(Exception):
    """Raised when an import package does not exist."""


class ConflictNotFoundError(Exception):
    """Raised when a conflict does not exist."""


def _enable_sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """SQLAlchemy database for the import pipeline.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    Writers are serialized by SQLite, which the commit engine relies on.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Create engine with check_same_thread=False for multi-threaded access
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )
        # Foreign keys are a per-connection setting in SQLite
        event.listen(self._engine, "connect", _enable_sqlite_pragmas)

        # Enable WAL mode
        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def session(self) -> Session:
        """Create a new database session.

        Attributes stay loaded after commit so that returned objects can be
        read once the session is closed.
        """
        return Session(self._engine, expire_on_commit=False)

    # === Import packages ===

    def get_package(self, package_id: int) -> ImportPackage | None:
        with self.session() as session:
            package = session.get(ImportPackage, package_id)
            if package:
                session.expunge(package)
            return package

    def get_package_by_number(self, package_number: str) -> ImportPackage | None:
        with self.session() as session:
            stmt = select(ImportPackage).where(ImportPackage.package_number == package_number)
            package = session.scalars(stmt).first()
            if package:
                session.expunge(package)
            return package

    def get_package_by_checksum(self, file_checksum: str) -> ImportPackage | None:
        with self.session() as session:
            stmt = select(ImportPackage).where(ImportPackage.file_checksum == file_checksum)
            package = session.scalars(stmt).first()
            if package:
                session.expunge(package)
            return package

    def get_package_by_manifest_id(self, package_id: str) -> ImportPackage | None:
        with self.session() as session:
            stmt = select(ImportPackage).where(ImportPackage.package_id == package_id)
            package = session.scalars(stmt).first()
            if package:
                session.expunge(package)
            return package

    def require_package(self, package_id: int) -> ImportPackage:
        """Get a package or raise.

        Raises:
            PackageNotFoundError: If the package does not exist.
        """
        package = self.get_package(package_id)
        if package is None:
            raise PackageNotFoundError(f"Import package not found: {package_id}")
        return package

    def list_packages(self, status: PackageStatus | None = None) -> list[ImportPackage]:
        """List packages, newest first, optionally filtered by status."""
        with self.session() as session:
            stmt = select(ImportPackage).order_by(ImportPackage.id.desc())
            if status is not None:
                stmt = stmt.where(ImportPackage.status == status.value)
            packages = list(session.scalars(stmt))
            for package in packages:
                session.expunge(package)
            return packages

    # === Conflicts ===

    def get_conflict(self, conflict_id: int) -> ConflictResolution | None:
        with self.session() as session:
            conflict = session.get(ConflictResolution, conflict_id)
            if conflict:
                session.expunge(conflict)
            return conflict

    def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        package_id: int | None = None,
        priority: str | None = None,
        overdue_only: bool = False,
    ) -> list[ConflictResolution]:
        """List conflicts for the review queue.

        High priority and older conflicts come first.
        """
        with self.session() as session:
            stmt = select(ConflictResolution)
            if status is not None:
                stmt = stmt.where(ConflictResolution.status == status.value)
            if package_id is not None:
                stmt = stmt.where(ConflictResolution.import_package_id == package_id)
            if priority is not None:
                stmt = stmt.where(ConflictResolution.priority == priority)
            if overdue_only:
                stmt = stmt.where(ConflictResolution.is_overdue.is_(True))
            conflicts = list(session.scalars(stmt.order_by(ConflictResolution.detected_at)))
            rank = {"High": 0, "Normal": 1, "Low": 2}
            conflicts.sort(key=lambda c: rank.get(c.priority, 3))
            for conflict in conflicts:
                session.expunge(conflict)
            return conflicts

    def conflict_summary(self, package_id: int | None = None) -> dict[str, Any]:
        """Count conflicts by status and by type."""
        with self.session() as session:
            summary: dict[str, Any] = {"byStatus": {}, "byType": {}, "overdue": 0}
            for column, key in (
                (ConflictResolution.status, "byStatus"),
                (ConflictResolution.conflict_type, "byType"),
            ):
                stmt = select(column, func.count()).group_by(column)
                if package_id is not None:
                    stmt = stmt.where(ConflictResolution.import_package_id == package_id)
                summary[key] = {str(value): count for value, count in session.execute(stmt)}
            stmt = select(func.count()).where(ConflictResolution.is_overdue.is_(True))
            if package_id is not None:
                stmt = stmt.where(ConflictResolution.import_package_id == package_id)
            summary["overdue"] = session.execute(stmt).scalar_one()
            summary["total"] = sum(summary["byStatus"].values())
            return summary

    # === Vocabularies ===

    def vocabulary_versions(self) -> dict[str, str]:
        """Current server vocabulary versions, by name."""
        with self.session() as session:
            return {v.name: v.version for v in session.scalars(select(Vocabulary))}

    def vocabulary_codes(self) -> dict[str, set[int]]:
        """Allowed codes per vocabulary, for membership validation."""
        with self.session() as session:
            return {v.name: v.codes for v in session.scalars(select(Vocabulary))}

    def list_vocabularies(self) -> list[Vocabulary]:
        with self.session() as session:
            vocabularies = list(session.scalars(select(Vocabulary).order_by(Vocabulary.name)))
            for vocabulary in vocabularies:
                session.expunge(vocabulary)
            return vocabularies

    def upsert_vocabulary(
        self,
        name: str,
        version: str,
        values: list[dict[str, Any]],
        display_name_arabic: str | None = None,
        display_name_english: str | None = None,
        category: str | None = None,
        is_system: bool = False,
        allow_custom_values: bool = False,
    ) -> Vocabulary:
        """Create or replace a vocabulary.

        Returns:
            The stored Vocabulary.
        """
        with self.session() as session:
            stmt = select(Vocabulary).where(Vocabulary.name == name)
            vocabulary = session.scalars(stmt).first()
            if vocabulary is None:
                vocabulary = Vocabulary(name=name)
                session.add(vocabulary)
            vocabulary.version = version
            vocabulary.values_json = json.dumps(values, ensure_ascii=False)
            vocabulary.display_name_arabic = display_name_arabic
            vocabulary.display_name_english = display_name_english
            vocabulary.category = category
            vocabulary.is_system = is_system
            vocabulary.allow_custom_values = allow_custom_values
            session.commit()
            session.refresh(vocabulary)
            session.expunge(vocabulary)
            return vocabulary

    # === Sync sessions ===

    def get_sync_session(self, session_id: int) -> SyncSession | None:
        with self.session() as session:
            sync_session = session.get(SyncSession, session_id)
            if sync_session:
                session.expunge(sync_session)
            return sync_session

    # === Maintenance ===

    def flag_overdue_conflicts(self, now: datetime | None = None) -> int:
        """Set the overdue flag on open conflicts past their target.

        Returns:
            Number of conflicts newly flagged.
        """
        now = now or datetime.now(UTC)
        with self.session() as session:
            stmt = select(ConflictResolution).where(
                ConflictResolution.status == ConflictStatus.PENDING_REVIEW.value,
                ConflictResolution.is_overdue.is_(False),
                ConflictResolution.target_resolution_hours.is_not(None),
            )
            flagged = 0
            for conflict in session.scalars(stmt):
                if check_if_overdue(load_state(conflict), now):
                    conflict.is_overdue = True
                    flagged += 1
            session.commit()
            return flagged

    def expire_sync_sessions(self, timeout_hours: int, now: datetime | None = None) -> int:
        """Mark InProgress sessions older than the timeout as TimedOut.

        Returns:
            Number of sessions expired.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(hours=timeout_hours)
        with self.session() as session:
            stmt = select(SyncSession).where(
                SyncSession.status == SyncSessionStatus.IN_PROGRESS.value
            )
            expired = 0
            for sync_session in session.scalars(stmt):
                if as_utc(sync_session.started_at) < cutoff:
                    sync_session.status = SyncSessionStatus.TIMED_OUT.value
                    sync_session.completed_at = now
                    sync_session.error_message = f"No activity for {timeout_hours} hours"
                    expired += 1
            session.commit()
            return expired

    def purge_staging(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete staging rows of terminal packages finished before the cutoff.

        Returns:
            Number of staging rows deleted.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=retention_days)
        terminal = [s.value for s in TERMINAL_STATUSES]
        with self.session() as session:
            stmt = select(ImportPackage).where(
                ImportPackage.status.in_(terminal),
                ImportPackage.completed_at.is_not(None),
            )
            deleted = 0
            for package in session.scalars(stmt):
                if package.completed_at is not None and as_utc(package.completed_at) < cutoff:
                    deleted += discard_staging(session, package.id)
            session.commit()
            return deleted
