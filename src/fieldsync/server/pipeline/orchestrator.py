"""Import pipeline driver.

Takes an uploaded package from raw bytes to a reviewable or committable
state, and exposes the operator actions that move it further:

    upload -> integrity -> vocabulary -> staging -> validation -> detection
           -> (conflict review) -> approve -> commit

Each stage runs in its own transaction, so a package's status always
reflects the last stage that finished.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldsync.core.config import PipelineSettings
from fieldsync.core.crypto import compute_bytes_hash
from fieldsync.core.types import ConflictStatus, EntityKind, PackageStatus, ResolutionAction
from fieldsync.server.database import ConflictNotFoundError, Database, PackageNotFoundError
from fieldsync.server.models import ConflictResolution, ImportPackage
from fieldsync.server.pipeline import conflicts as workflow
from fieldsync.server.pipeline.commit import CommitError, CommitReport, commit_package
from fieldsync.server.pipeline.container import (
    PackageContainer,
    PackageFormatError,
    PackageManifest,
    open_container,
)
from fieldsync.server.pipeline.detection import detect_duplicates
from fieldsync.server.pipeline.integrity import verify_integrity
from fieldsync.server.pipeline.numbering import PACKAGE_PREFIX, next_number
from fieldsync.server.pipeline.staging import (
    StagingSummary,
    approve_records,
    discard_staging,
    stage_package,
    summarize_staging,
)
from fieldsync.server.pipeline.states import (
    InvalidTransitionError,
    is_terminal,
    move_package,
)
from fieldsync.server.pipeline.validation import run_validation
from fieldsync.server.pipeline.vocabulary import check_vocabulary_compatibility
from fieldsync.server.storage import archive_key, attachment_key, package_key

if TYPE_CHECKING:
    from fieldsync.server.storage import PackageStore

logger = logging.getLogger(__name__)


PROCESSING_ABORTED = "Processing aborted"


def _is_interrupted(package: ImportPackage) -> bool:
    """Whether an infrastructure fault stopped this package mid-pipeline."""
    return (
        package.status in (PackageStatus.PENDING.value, PackageStatus.STAGING.value)
        and (package.error_message or "").startswith(PROCESSING_ABORTED)
    )


class PackageTooLargeError(Exception):
    """Raised when an upload exceeds the configured size limit."""


class PackageConflictError(Exception):
    """Raised when a package id is re-used with different content."""


@dataclass
class ImportResult:
    """Outcome of handing bytes to the pipeline."""

    package: ImportPackage
    is_duplicate: bool = False

    @property
    def status(self) -> PackageStatus:
        return PackageStatus(self.package.status)

    @property
    def message(self) -> str:
        if self.is_duplicate:
            return f"Package already received as {self.package.package_number}"
        if self.status == PackageStatus.QUARANTINED:
            return f"Package quarantined: {self.package.quarantine_reason}"
        if self.status == PackageStatus.VALIDATION_FAILED:
            return (
                f"Package failed validation with {self.package.validation_error_count} error(s)"
            )
        return f"Package accepted as {self.package.package_number} ({self.package.status})"


class ImportPipeline:
    """Runs and supervises imports against one database and package store.

    Args:
        db: Database holding staging, conflicts and production tables.
        settings: Pipeline settings.
        storage: Where uploaded files and attachments are kept; None keeps
            nothing but the database rows.
    """

    def __init__(
        self,
        db: Database,
        settings: PipelineSettings | None = None,
        storage: PackageStore | None = None,
    ) -> None:
        self._db = db
        self._settings = settings or PipelineSettings()
        self._storage = storage

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    # === Upload ===

    def import_package(
        self,
        data: bytes,
        file_name: str,
        sync_session_id: int | None = None,
        expected_package_id: str | None = None,
    ) -> ImportResult:
        """Register uploaded bytes and run them through the pipeline.

        A file whose checksum was seen before is reported as a duplicate and
        nothing else happens, unless processing of that package was
        interrupted by an infrastructure fault: the retry then resumes it.

        Raises:
            PackageTooLargeError: If ``data`` exceeds the upload limit.
            PackageFormatError: If ``data`` is not a readable container.
            PackageConflictError: If the manifest package id is already
                registered with a different checksum.
        """
        if len(data) > self._settings.max_upload_bytes:
            raise PackageTooLargeError(
                f"Package is {len(data)} bytes, limit is {self._settings.max_upload_bytes}"
            )
        file_checksum = compute_bytes_hash(data)
        existing = self._db.get_package_by_checksum(file_checksum)
        if existing is not None:
            if _is_interrupted(existing):
                return self._resume(existing, data)
            logger.info(
                "Duplicate upload of %s (checksum %s)", existing.package_number, file_checksum[:12]
            )
            return ImportResult(package=existing, is_duplicate=True)

        with open_container(data) as container:
            manifest = container.manifest
            if expected_package_id and manifest.package_id != expected_package_id:
                raise PackageFormatError(
                    f"Manifest package id {manifest.package_id} does not match "
                    f"upload target {expected_package_id}"
                )
            other = self._db.get_package_by_manifest_id(manifest.package_id)
            if other is not None:
                raise PackageConflictError(
                    f"Package {manifest.package_id} was already received as "
                    f"{other.package_number} with different content"
                )

            try:
                package_id = self._register(data, file_name, file_checksum, manifest, sync_session_id)
            except IntegrityError:
                # Lost a race against a concurrent upload of the same bytes
                existing = self._db.get_package_by_checksum(file_checksum)
                if existing is None:
                    raise
                return ImportResult(package=existing, is_duplicate=True)

            self._run_guarded(package_id, lambda: self._process(package_id, container))

        return ImportResult(package=self._db.require_package(package_id))

    def _run_guarded(self, package_id: int, stage: Callable[[], object]) -> None:
        """Run a processing stage, recording an infrastructure fault on the package.

        The failed stage's transaction is already rolled back, so the package
        keeps the status of the last stage that finished.
        """
        try:
            stage()
        except Exception as e:
            logger.exception("Processing of package %d aborted", package_id)
            with self._db.session() as session:
                package = self._load(session, package_id)
                package.error_message = f"{PROCESSING_ABORTED}: {e}"
                package.add_note(package.error_message)
                session.commit()
            raise

    def _resume(self, package: ImportPackage, data: bytes) -> ImportResult:
        logger.info(
            "Resuming interrupted package %s from %s", package.package_number, package.status
        )
        with self._db.session() as session:
            row = self._load(session, package.id)
            row.error_message = None
            row.add_note("Processing resumed after re-upload")
            if row.status == PackageStatus.PENDING.value:
                discard_staging(session, row.id)
            session.commit()

        if package.status == PackageStatus.PENDING.value:
            with open_container(data) as container:
                self._run_guarded(package.id, lambda: self._process(package.id, container))
        else:
            self._run_guarded(package.id, lambda: self.run_detection(package.id))
        return ImportResult(package=self._db.require_package(package.id))

    def _register(
        self,
        data: bytes,
        file_name: str,
        file_checksum: str,
        manifest: PackageManifest,
        sync_session_id: int | None,
    ) -> int:
        with self._db.session() as session:
            package = ImportPackage(
                package_id=manifest.package_id,
                package_number=next_number(session, PACKAGE_PREFIX),
                file_name=file_name,
                file_size=len(data),
                file_checksum=file_checksum,
                content_checksum=manifest.checksum,
                package_created_at=manifest.created_utc,
                package_exported_at=manifest.exported_date_utc,
                exported_by_user_id=manifest.exported_by_user_id,
                device_id=manifest.device_id,
                app_version=manifest.app_version,
                digital_signature=manifest.digital_signature,
                schema_version=manifest.schema_version,
                vocabulary_versions_json=json.dumps(manifest.vocab_versions),
                total_attachment_size_bytes=manifest.total_attachment_size_bytes or 0,
                sync_session_id=sync_session_id,
                status=PackageStatus.PENDING.value,
            )
            for kind, count in manifest.declared_counts.items():
                setattr(package, f"{kind.value}_count", count)
            session.add(package)
            session.flush()
            if self._storage is not None:
                package.storage_key = package_key(package.package_number)
                self._storage.put(package.storage_key, data)
            package.add_note(f"Received {file_name} ({len(data)} bytes)")
            session.commit()
            logger.info(
                "Registered package %s (%s) from device %s",
                package.package_number,
                package.package_id,
                package.device_id,
            )
            return package.id

    def _process(self, package_id: int, container: PackageContainer) -> None:
        server_versions = self._db.vocabulary_versions()
        vocabulary_codes = self._db.vocabulary_codes()

        with self._db.session() as session:
            package = self._load(session, package_id)
            move_package(package, PackageStatus.VALIDATING)

            integrity = verify_integrity(container, self._settings)
            package.is_checksum_valid = integrity.is_checksum_valid
            package.is_signature_valid = integrity.is_signature_valid
            package.is_schema_valid = integrity.is_schema_valid
            if not integrity.passed:
                self._quarantine(package, "Integrity check failed: " + "; ".join(integrity.issues))
                session.commit()
                return

            vocabulary = check_vocabulary_compatibility(package.vocabulary_versions, server_versions)
            package.is_vocabulary_compatible = vocabulary.is_compatible
            package.vocabulary_issues_json = json.dumps(vocabulary.messages, ensure_ascii=False)
            if not vocabulary.is_compatible:
                self._quarantine(
                    package,
                    "Vocabulary incompatible: " + "; ".join(vocabulary.blocking_messages),
                )
                session.commit()
                return
            for message in vocabulary.messages:
                package.add_note(f"Vocabulary warning: {message}")

            stage_package(session, package.id, container, self._store_attachments(package, container))
            report = run_validation(session, package.id, vocabulary_codes)
            package.validation_error_count = report.total_errors
            package.validation_warning_count = report.total_warnings
            package.validation_report_json = json.dumps(report.to_dict())
            if report.has_blocking_errors:
                package.error_message = (
                    f"{report.invalid_records} record(s) with blocking errors"
                    if not report.crashed_levels
                    else "Validation level crashed: "
                    + ", ".join(r.validator_name for r in report.crashed_levels)
                )
                move_package(package, PackageStatus.VALIDATION_FAILED, package.error_message)
                session.commit()
                return
            move_package(package, PackageStatus.STAGING)
            session.commit()

        self.run_detection(package_id)

    def _store_attachments(
        self, package: ImportPackage, container: PackageContainer
    ) -> dict[str, str]:
        if self._storage is None:
            return {}
        stored: dict[str, str] = {}
        total = 0
        for evidence_id, blob in container.attachments():
            key = attachment_key(package.package_id, evidence_id)
            self._storage.put(key, blob)
            stored[evidence_id] = key
            total += len(blob)
        if stored:
            logger.info(
                "Stored %d attachment(s), %d bytes, for package %s",
                len(stored),
                total,
                package.package_number,
            )
        return stored

    def _quarantine(self, package: ImportPackage, reason: str) -> None:
        package.quarantine_reason = reason
        move_package(package, PackageStatus.QUARANTINED, reason)
        logger.warning("Package %s quarantined: %s", package.package_number, reason)

    def run_detection(self, package_id: int) -> ImportPackage:
        """Detect duplicates for a Staging package and route it onward."""
        with self._db.session() as session:
            package = self._load(session, package_id)
            if package.status != PackageStatus.STAGING.value:
                raise InvalidTransitionError(
                    f"Package {package.package_number} is {package.status}, not Staging"
                )
            report = detect_duplicates(session, package.id, self._settings)
            package.person_duplicate_count = report.person_duplicates
            package.property_duplicate_count = report.property_duplicates
            package.conflict_count = self._conflict_count(session, package.id)
            package.are_conflicts_resolved = self._open_conflicts(session, package.id) == 0
            if package.are_conflicts_resolved:
                move_package(package, PackageStatus.READY_TO_COMMIT, "No conflicts detected")
            else:
                move_package(
                    package,
                    PackageStatus.REVIEWING_CONFLICTS,
                    f"{package.conflict_count} conflict(s) detected",
                )
            session.commit()
            session.expunge(package)
            return package

    # === Conflicts ===

    def _conflict_count(self, session: Session, package_id: int) -> int:
        stmt = select(func.count()).where(ConflictResolution.import_package_id == package_id)
        return session.execute(stmt).scalar_one()

    def _open_conflicts(self, session: Session, package_id: int) -> int:
        stmt = select(func.count()).where(
            ConflictResolution.import_package_id == package_id,
            ConflictResolution.status == ConflictStatus.PENDING_REVIEW.value,
        )
        return session.execute(stmt).scalar_one()

    def _advance_if_resolved(self, session: Session, package_id: int | None) -> None:
        if package_id is None:
            return
        package = self._load(session, package_id)
        open_count = self._open_conflicts(session, package_id)
        package.are_conflicts_resolved = open_count == 0
        if open_count == 0 and package.status == PackageStatus.REVIEWING_CONFLICTS.value:
            move_package(package, PackageStatus.READY_TO_COMMIT, "All conflicts resolved")

    def update_conflict(
        self,
        conflict_id: int,
        operation: Callable[[workflow.ConflictState], workflow.ConflictState],
    ) -> ConflictResolution:
        """Apply a workflow operation to a stored conflict.

        Closing the last open conflict of a package in review moves the
        package to ReadyToCommit in the same transaction.

        Raises:
            ConflictNotFoundError: If the conflict does not exist.
            ConflictWorkflowError: If the operation is not allowed.
        """
        with self._db.session() as session:
            conflict = session.get(ConflictResolution, conflict_id)
            if conflict is None:
                raise ConflictNotFoundError(f"Conflict not found: {conflict_id}")
            state = operation(workflow.load_state(conflict))
            workflow.store_state(conflict, state)
            if not state.is_open:
                self._advance_if_resolved(session, conflict.import_package_id)
            session.commit()
            session.expunge(conflict)
            return conflict

    def resolve_conflict(
        self,
        conflict_id: int,
        action: ResolutionAction,
        user: str,
        reason: str,
        notes: str | None = None,
        merged_entity_id: str | None = None,
        discarded_entity_id: str | None = None,
        merge_mapping: dict[str, str] | None = None,
    ) -> ConflictResolution:
        if action == ResolutionAction.IGNORED:
            return self.update_conflict(
                conflict_id, lambda s: workflow.ignore(s, user=user, reason=reason)
            )
        return self.update_conflict(
            conflict_id,
            lambda s: workflow.resolve(
                s,
                action,
                user=user,
                reason=reason,
                notes=notes,
                merged_entity_id=merged_entity_id,
                discarded_entity_id=discarded_entity_id,
                merge_mapping=merge_mapping,
            ),
        )

    # === Operator actions ===

    def _load(self, session: Session, package_id: int) -> ImportPackage:
        package = session.get(ImportPackage, package_id)
        if package is None:
            raise PackageNotFoundError(f"Import package not found: {package_id}")
        return package

    def approve(
        self, package_id: int, record_ids: dict[EntityKind, list[int]] | None = None
    ) -> int:
        """Approve staging records for commit.

        Returns:
            Number of records approved.

        Raises:
            InvalidTransitionError: If the package is not awaiting commit or
                still has open conflicts.
            StagingError: If a listed record cannot be approved.
        """
        allowed = {
            PackageStatus.STAGING.value,
            PackageStatus.REVIEWING_CONFLICTS.value,
            PackageStatus.READY_TO_COMMIT.value,
        }
        with self._db.session() as session:
            package = self._load(session, package_id)
            if package.status not in allowed:
                raise InvalidTransitionError(
                    f"Cannot approve records of package {package.package_number} in {package.status}"
                )
            open_count = self._open_conflicts(session, package.id)
            if open_count:
                raise InvalidTransitionError(
                    f"Package {package.package_number} has {open_count} unresolved conflict(s)"
                )
            approved = approve_records(session, package.id, record_ids)
            package.add_note(f"{approved} record(s) approved for commit")
            session.commit()
            return approved

    def commit(self, package_id: int, fail_after: int | None = None) -> CommitReport:
        """Commit a ReadyToCommit package in one transaction.

        On any exception every production write of this attempt is rolled
        back and the package is marked Failed.

        Raises:
            InvalidTransitionError: If the package is not ReadyToCommit.
            CommitError: If nothing is approved, or the transaction failed.
        """
        with self._db.session() as session:
            package = self._load(session, package_id)
            if package.status != PackageStatus.READY_TO_COMMIT.value:
                raise InvalidTransitionError(
                    f"Package {package.package_number} is {package.status}, not ReadyToCommit"
                )
            if self._open_conflicts(session, package.id):
                raise InvalidTransitionError(
                    f"Package {package.package_number} has unresolved conflicts"
                )
            if not summarize_staging(session, package.id).approved:
                raise CommitError(f"No records approved for commit in {package.package_number}")
            move_package(package, PackageStatus.COMMITTING)
            session.commit()

        try:
            with self._db.session() as session:
                package = self._load(session, package_id)
                report = commit_package(session, package, fail_after=fail_after)
                package.successful_import_count = report.successful
                package.failed_import_count = report.failed
                package.skipped_record_count = report.skipped
                package.commit_summary_json = json.dumps(report.to_dict())
                move_package(
                    package,
                    report.outcome,
                    f"Committed {report.successful}, failed {report.failed}, "
                    f"skipped {report.skipped}",
                )
                session.commit()
        except Exception as e:
            logger.exception("Commit of package %d failed, rolled back", package_id)
            with self._db.session() as session:
                package = self._load(session, package_id)
                package.error_message = f"Commit rolled back: {e}"
                move_package(package, PackageStatus.FAILED, package.error_message)
                session.commit()
            if isinstance(e, CommitError):
                raise
            raise CommitError(f"Commit rolled back: {e}") from e
        return report

    def reset_commit(self, package_id: int) -> ImportPackage:
        """Return a package stuck in Committing to ReadyToCommit.

        Raises:
            InvalidTransitionError: If the package is not Committing.
        """
        with self._db.session() as session:
            package = self._load(session, package_id)
            if package.status != PackageStatus.COMMITTING.value:
                raise InvalidTransitionError(
                    f"Package {package.package_number} is {package.status}, not Committing"
                )
            move_package(package, PackageStatus.READY_TO_COMMIT, "Commit reset by operator")
            session.commit()
            session.expunge(package)
            return package

    def cancel(self, package_id: int, reason: str, discard: bool = True) -> ImportPackage:
        """Cancel a package, optionally discarding its staging rows."""
        with self._db.session() as session:
            package = self._load(session, package_id)
            package.cancellation_reason = reason
            move_package(package, PackageStatus.CANCELLED, f"Cancelled: {reason}")
            if discard:
                discard_staging(session, package.id)
            session.commit()
            session.expunge(package)
            return package

    def quarantine(self, package_id: int, reason: str) -> ImportPackage:
        with self._db.session() as session:
            package = self._load(session, package_id)
            if package.status == PackageStatus.COMMITTING.value:
                raise InvalidTransitionError(
                    f"Cannot quarantine package {package.package_number} while committing"
                )
            self._quarantine(package, reason)
            session.commit()
            session.expunge(package)
            return package

    def archive(self, package_id: int) -> ImportPackage:
        """Move a finished package's file under the archive prefix.

        Raises:
            InvalidTransitionError: If the package is not in a terminal state.
        """
        with self._db.session() as session:
            package = self._load(session, package_id)
            if not is_terminal(PackageStatus(package.status)):
                raise InvalidTransitionError(
                    f"Only finished packages can be archived ({package.status})"
                )
            if package.is_archived:
                session.expunge(package)
                return package
            if self._storage is not None and package.storage_key:
                target = archive_key(package.storage_key)
                self._storage.move(package.storage_key, target)
                package.archive_path = target
            package.is_archived = True
            package.archived_at = datetime.now(UTC)
            package.add_note("Archived")
            session.commit()
            session.expunge(package)
            return package

    def staging_summary(self, package_id: int) -> StagingSummary:
        with self._db.session() as session:
            self._load(session, package_id)
            return summarize_staging(session, package_id)

