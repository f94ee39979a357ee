"""Device-facing sync protocol.

Three operations make up a sync cycle:
- download assignments: pending work for a collector plus the vocabulary
  snapshot, opening a sync session
- upload package: idempotent by file checksum, hands new packages to the
  import pipeline
- acknowledge: flips assignments to Transferred; repeating it is a no-op
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldsync.core.crypto import compute_bytes_hash
from fieldsync.core.types import PackageStatus, SyncSessionStatus, TransferStatus
from fieldsync.server.database import Database
from fieldsync.server.models import (
    BuildingAssignment,
    PropertyUnit,
    SyncSession,
    Vocabulary,
    as_utc,
)
from fieldsync.server.pipeline.container import PackageFormatError
from fieldsync.server.pipeline.orchestrator import ImportPipeline, PackageConflictError

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Raised when a sync session is closed or owned by someone else."""


class SessionNotFoundError(SessionError):
    """Raised when a sync session does not exist."""


@dataclass
class AssignmentDownload:
    """Everything sent to a device in one download."""

    session_id: int
    field_collector_id: str
    generated_at: datetime
    assignments: list[dict[str, Any]] = field(default_factory=list)
    vocabularies: list[dict[str, Any]] = field(default_factory=list)
    vocabulary_versions: dict[str, str] = field(default_factory=dict)


@dataclass
class UploadResult:
    """Outcome of one package upload."""

    accepted: bool
    package_id: str
    is_duplicate: bool
    message: str
    import_package_id: int | None = None
    status: str | None = None


@dataclass
class AcknowledgeResult:
    """Outcome of acknowledging assignments."""

    acknowledged_count: int = 0
    failed_assignment_ids: list[str] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return len(self.failed_assignment_ids)

    @property
    def message(self) -> str:
        if not self.failed_assignment_ids:
            return f"All {self.acknowledged_count} assignment(s) acknowledged successfully."
        return (
            f"{self.acknowledged_count} acknowledged; {self.failed_count} failed "
            "(not found or not owned by caller)."
        )


def display_code(building_code: str) -> str:
    """Format a 17-digit building code as GG-DD-SS-CCC-NNN-BBBBB."""
    if len(building_code) != 17:
        return building_code
    parts = (2, 2, 2, 3, 3, 5)
    pieces = []
    start = 0
    for length in parts:
        pieces.append(building_code[start : start + length])
        start += length
    return "-".join(pieces)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SyncService:
    """Implements the sync protocol on top of the database and pipeline."""

    def __init__(self, db: Database, pipeline: ImportPipeline) -> None:
        self._db = db
        self._pipeline = pipeline

    # === Sessions ===

    def _open_session(
        self,
        session: Session,
        field_collector_id: str,
        device_id: str,
        session_id: int | None,
        client_address: str | None,
    ) -> SyncSession:
        if session_id is None:
            sync_session = SyncSession(
                field_collector_id=field_collector_id,
                device_id=device_id,
                client_address=client_address,
                status=SyncSessionStatus.IN_PROGRESS.value,
            )
            session.add(sync_session)
            session.flush()
            logger.info(
                "Opened sync session %d for collector %s on device %s",
                sync_session.id,
                field_collector_id,
                device_id,
            )
            return sync_session

        sync_session = session.get(SyncSession, session_id)
        if sync_session is None:
            raise SessionNotFoundError(f"Sync session not found: {session_id}")
        if sync_session.field_collector_id != field_collector_id:
            raise SessionError(f"Sync session {session_id} belongs to another collector")
        if sync_session.status != SyncSessionStatus.IN_PROGRESS.value:
            raise SessionError(f"Sync session {session_id} is {sync_session.status}")
        return sync_session

    def _active_session(self, session: Session, session_id: int) -> SyncSession:
        sync_session = session.get(SyncSession, session_id)
        if sync_session is None:
            raise SessionNotFoundError(f"Sync session not found: {session_id}")
        if sync_session.status != SyncSessionStatus.IN_PROGRESS.value:
            raise SessionError(f"Sync session {session_id} is {sync_session.status}")
        return sync_session

    def complete_session(self, session_id: int) -> SyncSession:
        """Close a session; any failed upload makes it PartiallyCompleted."""
        with self._db.session() as session:
            sync_session = self._active_session(session, session_id)
            sync_session.status = (
                SyncSessionStatus.PARTIALLY_COMPLETED.value
                if sync_session.packages_failed > 0
                else SyncSessionStatus.COMPLETED.value
            )
            sync_session.completed_at = datetime.now(UTC)
            session.commit()
            session.expunge(sync_session)
            logger.info("Sync session %d closed as %s", session_id, sync_session.status)
            return sync_session

    # === Download ===

    def download_assignments(
        self,
        field_collector_id: str,
        device_id: str,
        session_id: int | None = None,
        modified_since: datetime | None = None,
        client_address: str | None = None,
    ) -> AssignmentDownload:
        """Collect a collector's untransferred assignments and the vocabularies.

        Raises:
            SessionError: If ``session_id`` is given but not usable.
        """
        with self._db.session() as session:
            sync_session = self._open_session(
                session, field_collector_id, device_id, session_id, client_address
            )
            stmt = (
                select(BuildingAssignment)
                .where(
                    BuildingAssignment.field_collector_id == field_collector_id,
                    BuildingAssignment.is_active.is_(True),
                    BuildingAssignment.transfer_status.in_(
                        [TransferStatus.PENDING.value, TransferStatus.FAILED.value]
                    ),
                )
                .order_by(BuildingAssignment.assigned_date)
            )
            assignments = list(session.scalars(stmt))
            if modified_since is not None:
                cutoff = as_utc(modified_since)
                assignments = [a for a in assignments if as_utc(a.updated_at) >= cutoff]

            vocabularies = list(session.scalars(select(Vocabulary).order_by(Vocabulary.name)))
            versions = {v.name: v.version for v in vocabularies}

            download = AssignmentDownload(
                session_id=sync_session.id,
                field_collector_id=field_collector_id,
                generated_at=datetime.now(UTC),
                assignments=[self._bundle(session, a) for a in assignments],
                vocabularies=[
                    {
                        "name": v.name,
                        "displayNameArabic": v.display_name_arabic,
                        "displayNameEnglish": v.display_name_english,
                        "version": v.version,
                        "category": v.category,
                        "values": v.values,
                        "isSystem": v.is_system,
                        "allowCustomValues": v.allow_custom_values,
                    }
                    for v in vocabularies
                ],
                vocabulary_versions=versions,
            )
            sync_session.assignments_downloaded += len(assignments)
            sync_session.vocabulary_versions_sent_json = json.dumps(versions)
            session.commit()

        logger.info(
            "Session %d: sent %d assignment(s) to %s",
            download.session_id,
            len(download.assignments),
            field_collector_id,
        )
        return download

    def _bundle(self, session: Session, assignment: BuildingAssignment) -> dict[str, Any]:
        building = assignment.building
        units = list(
            session.scalars(
                select(PropertyUnit)
                .where(PropertyUnit.building_id == building.id)
                .order_by(PropertyUnit.unit_identifier)
            )
        )
        revisit_ids: list[str] = json.loads(assignment.units_for_revisit_json or "[]")
        if assignment.is_revisit and revisit_ids:
            wanted = set(revisit_ids)
            units = [u for u in units if u.id in wanted]
        return {
            "assignmentId": assignment.id,
            "assignedDate": _iso(assignment.assigned_date),
            "targetCompletionDate": _iso(assignment.target_completion_date),
            "priority": assignment.priority,
            "notes": assignment.assignment_notes,
            "isRevisit": assignment.is_revisit,
            "unitsForRevisit": revisit_ids,
            "transferStatus": assignment.transfer_status,
            "building": {
                "id": building.id,
                "buildingCode": building.building_code,
                "displayCode": display_code(building.building_code),
                "governorateName": building.governorate_name,
                "districtName": building.district_name,
                "communityName": building.community_name,
                "neighborhoodName": building.neighborhood_name,
                "buildingType": building.building_type,
                "buildingStatus": building.building_status,
                "numberOfPropertyUnits": building.number_of_property_units,
                "numberOfFloors": building.number_of_floors,
                "latitude": building.latitude,
                "longitude": building.longitude,
                "address": building.address,
            },
            "propertyUnits": [
                {
                    "id": u.id,
                    "unitIdentifier": u.unit_identifier,
                    "unitType": u.unit_type,
                    "unitStatus": u.unit_status,
                    "floorNumber": u.floor_number,
                    "areaSquareMeters": u.area_square_meters,
                }
                for u in units
            ],
        }

    # === Upload ===

    def _record_upload(self, session_id: int, failed: bool, error: str | None = None) -> None:
        with self._db.session() as session:
            sync_session = session.get(SyncSession, session_id)
            if sync_session is None:
                return
            if failed:
                sync_session.packages_failed += 1
                sync_session.error_message = error
            else:
                sync_session.packages_uploaded += 1
            session.commit()

    def upload_package(
        self, session_id: int, package_id: str, checksum: str | None, data: bytes
    ) -> UploadResult:
        """Receive a package file.

        The checksum dedup runs before anything else, so repeating an upload
        is always safe.

        Raises:
            SessionError: If the session is unknown or closed.
            PackageTooLargeError: If the upload exceeds the size limit.
        """
        with self._db.session() as session:
            self._active_session(session, session_id)

        actual = compute_bytes_hash(data)
        if checksum and checksum.strip().lower() != actual:
            message = f"Checksum mismatch for package {package_id}: transfer corrupted"
            logger.warning("Session %d: %s", session_id, message)
            with self._db.session() as session:
                sync_session = session.get(SyncSession, session_id)
                if sync_session is not None:
                    sync_session.packages_failed += 1
                    sync_session.status = SyncSessionStatus.FAILED.value
                    sync_session.error_message = message
                    sync_session.completed_at = datetime.now(UTC)
                    session.commit()
            return UploadResult(
                accepted=False, package_id=package_id, is_duplicate=False, message=message
            )

        try:
            result = self._pipeline.import_package(
                data,
                file_name=f"{package_id}.uhc",
                sync_session_id=session_id,
                expected_package_id=package_id,
            )
        except (PackageFormatError, PackageConflictError) as e:
            logger.warning("Session %d: package %s rejected: %s", session_id, package_id, e)
            self._record_upload(session_id, failed=True, error=str(e))
            return UploadResult(
                accepted=False, package_id=package_id, is_duplicate=False, message=str(e)
            )

        if not result.is_duplicate:
            failed = result.status == PackageStatus.QUARANTINED
            self._record_upload(session_id, failed=failed, error=result.message if failed else None)
        return UploadResult(
            accepted=True,
            package_id=package_id,
            is_duplicate=result.is_duplicate,
            message=result.message,
            import_package_id=result.package.id,
            status=result.package.status,
        )

    # === Acknowledge ===

    def acknowledge(self, session_id: int, assignment_ids: list[str]) -> AcknowledgeResult:
        """Mark assignments as transferred to the device.

        Ids that are unknown or owned by another collector fail. Ids that are
        already Transferred count in neither total.

        Raises:
            SessionError: If the session is unknown.
        """
        result = AcknowledgeResult()
        now = datetime.now(UTC)
        with self._db.session() as session:
            sync_session = session.get(SyncSession, session_id)
            if sync_session is None:
                raise SessionNotFoundError(f"Sync session not found: {session_id}")

            for assignment_id in dict.fromkeys(assignment_ids):
                assignment = session.get(BuildingAssignment, assignment_id)
                if assignment is None or (
                    assignment.field_collector_id != sync_session.field_collector_id
                ):
                    result.failed_assignment_ids.append(assignment_id)
                    continue
                if assignment.transfer_status == TransferStatus.TRANSFERRED.value:
                    continue
                assignment.transfer_status = TransferStatus.TRANSFERRED.value
                assignment.transferred_at = now
                result.acknowledged_count += 1

            sync_session.assignments_acknowledged += result.acknowledged_count
            session.commit()

        logger.info("Session %d: %s", session_id, result.message)
        return result
