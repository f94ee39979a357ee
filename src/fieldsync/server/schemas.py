"""Pydantic schemas for API request/response models.

Field names are snake_case in Python and camelCase on the wire, which is
what the field devices speak.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fieldsync.core.types import ConflictPriority, ResolutionAction
from fieldsync.server.models import ConflictResolution, ImportPackage, SyncSession
from fieldsync.server.pipeline.conflicts import check_if_overdue, load_state
from fieldsync.server.sync import AcknowledgeResult, AssignmentDownload, UploadResult


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# === Sync schemas ===


class AssignmentsRequest(CamelModel):
    """Request body for downloading assignments."""

    field_collector_id: str = Field(min_length=1)
    device_id: str = Field(min_length=1)
    sync_session_id: int | None = None
    modified_since_utc: datetime | None = None


class AssignmentsResponse(CamelModel):
    """Assignments, vocabularies and the version map sent to a device."""

    session_id: int
    field_collector_id: str
    generated_at_utc: str
    assignments: list[dict[str, Any]]
    vocabularies: list[dict[str, Any]]
    vocabulary_versions: dict[str, str]


class UploadResponse(CamelModel):
    """Response for a package upload."""

    accepted: bool
    package_id: str
    is_duplicate: bool
    message: str
    import_package_id: int | None = None
    status: str | None = None


class AcknowledgeRequest(CamelModel):
    """Request body for acknowledging assignments."""

    session_id: int
    assignment_ids: list[str]


class AcknowledgeResponse(CamelModel):
    """Response for an acknowledgment."""

    acknowledged_count: int
    failed_count: int
    failed_assignment_ids: list[str]
    message: str


class SyncSessionResponse(CamelModel):
    """Sync session data in responses."""

    id: int
    field_collector_id: str
    device_id: str
    status: str
    started_at: str
    completed_at: str | None
    packages_uploaded: int
    packages_failed: int
    assignments_downloaded: int
    assignments_acknowledged: int


# === Import package schemas ===


class PackageResponse(CamelModel):
    """Import package data in responses."""

    id: int
    package_id: str
    package_number: str
    file_name: str
    file_size: int
    status: str
    device_id: str | None
    exported_by_user_id: str | None
    is_checksum_valid: bool
    is_signature_valid: bool | None
    is_schema_valid: bool
    schema_version: str | None
    is_vocabulary_compatible: bool | None
    vocabulary_issues: list[str]
    validation_error_count: int
    validation_warning_count: int
    person_duplicate_count: int
    property_duplicate_count: int
    conflict_count: int
    are_conflicts_resolved: bool
    successful_import_count: int
    failed_import_count: int
    skipped_record_count: int
    error_message: str | None
    quarantine_reason: str | None
    cancellation_reason: str | None
    processing_notes: str | None
    is_archived: bool
    archive_path: str | None
    created_at: str
    completed_at: str | None


class ApproveRequest(CamelModel):
    """Request body for approving staged records.

    ``record_ids`` maps an entity kind (``building``, ``person``...) to the
    staging ids to approve; leave it out to approve every valid record.
    """

    record_ids: dict[str, list[int]] | None = None


class ApproveResponse(CamelModel):
    approved: int


class CommitResponse(CamelModel):
    """Outcome of a commit attempt."""

    package: PackageResponse
    summary: dict[str, Any]


class ReasonRequest(CamelModel):
    """Request body for operator actions that need a reason."""

    reason: str = Field(min_length=1)
    discard_staging: bool = True


class StagingSummaryResponse(CamelModel):
    total: int
    counts: dict[str, dict[str, int]]


# === Conflict schemas ===


class ConflictResponse(CamelModel):
    """Conflict data in responses."""

    id: int
    conflict_number: str
    conflict_type: str
    entity_type: str
    first_entity_id: str
    first_entity_source: str
    first_entity_label: str | None
    second_entity_id: str
    second_entity_source: str
    second_entity_label: str | None
    import_package_id: int | None
    similarity_score: float
    confidence_level: str
    description: str
    matching_criteria: dict[str, Any]
    data_comparison: dict[str, Any]
    status: str
    resolution_action: str | None
    priority: str
    detected_at: str
    assigned_to: str | None
    resolved_by: str | None
    resolved_at: str | None
    resolution_reason: str | None
    resolution_notes: str | None
    merged_entity_id: str | None
    discarded_entity_id: str | None
    merge_mapping: dict[str, str] | None
    target_resolution_hours: int | None
    is_overdue: bool
    is_auto_resolved: bool
    auto_resolution_rule: str | None
    is_escalated: bool
    escalation_reason: str | None
    review_attempt_count: int
    review_history: list[dict[str, Any]]


class AssignRequest(CamelModel):
    user: str = Field(min_length=1)
    target_resolution_hours: int | None = Field(default=None, gt=0)


class ResolveRequest(CamelModel):
    """Request body for resolving a conflict."""

    action: ResolutionAction
    user: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    notes: str | None = None
    merged_entity_id: str | None = None
    discarded_entity_id: str | None = None
    merge_mapping: dict[str, str] | None = None


class AutoResolveRequest(CamelModel):
    action: ResolutionAction
    rule: str = Field(min_length=1)


class IgnoreRequest(CamelModel):
    user: str = Field(min_length=1)
    reason: str = Field(min_length=1)


class EscalateRequest(CamelModel):
    user: str = Field(min_length=1)
    reason: str = Field(min_length=1)


class ReviewAttemptRequest(CamelModel):
    notes: str


class PriorityRequest(CamelModel):
    priority: ConflictPriority


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


# === Converters ===


def download_to_response(download: AssignmentDownload) -> AssignmentsResponse:
    return AssignmentsResponse(
        session_id=download.session_id,
        field_collector_id=download.field_collector_id,
        generated_at_utc=download.generated_at.isoformat(),
        assignments=download.assignments,
        vocabularies=download.vocabularies,
        vocabulary_versions=download.vocabulary_versions,
    )


def upload_to_response(result: UploadResult) -> UploadResponse:
    return UploadResponse(
        accepted=result.accepted,
        package_id=result.package_id,
        is_duplicate=result.is_duplicate,
        message=result.message,
        import_package_id=result.import_package_id,
        status=result.status,
    )


def acknowledge_to_response(result: AcknowledgeResult) -> AcknowledgeResponse:
    return AcknowledgeResponse(
        acknowledged_count=result.acknowledged_count,
        failed_count=result.failed_count,
        failed_assignment_ids=result.failed_assignment_ids,
        message=result.message,
    )


def session_to_response(sync_session: SyncSession) -> SyncSessionResponse:
    """Convert SyncSession to response model."""
    return SyncSessionResponse(
        id=sync_session.id,
        field_collector_id=sync_session.field_collector_id,
        device_id=sync_session.device_id,
        status=sync_session.status,
        started_at=sync_session.started_at.isoformat(),
        completed_at=_iso(sync_session.completed_at),
        packages_uploaded=sync_session.packages_uploaded,
        packages_failed=sync_session.packages_failed,
        assignments_downloaded=sync_session.assignments_downloaded,
        assignments_acknowledged=sync_session.assignments_acknowledged,
    )


def package_to_response(package: ImportPackage) -> PackageResponse:
    """Convert ImportPackage to response model."""
    return PackageResponse(
        id=package.id,
        package_id=package.package_id,
        package_number=package.package_number,
        file_name=package.file_name,
        file_size=package.file_size,
        status=package.status,
        device_id=package.device_id,
        exported_by_user_id=package.exported_by_user_id,
        is_checksum_valid=package.is_checksum_valid,
        is_signature_valid=package.is_signature_valid,
        is_schema_valid=package.is_schema_valid,
        schema_version=package.schema_version,
        is_vocabulary_compatible=package.is_vocabulary_compatible,
        vocabulary_issues=package.vocabulary_issues,
        validation_error_count=package.validation_error_count,
        validation_warning_count=package.validation_warning_count,
        person_duplicate_count=package.person_duplicate_count,
        property_duplicate_count=package.property_duplicate_count,
        conflict_count=package.conflict_count,
        are_conflicts_resolved=package.are_conflicts_resolved,
        successful_import_count=package.successful_import_count,
        failed_import_count=package.failed_import_count,
        skipped_record_count=package.skipped_record_count,
        error_message=package.error_message,
        quarantine_reason=package.quarantine_reason,
        cancellation_reason=package.cancellation_reason,
        processing_notes=package.processing_notes,
        is_archived=package.is_archived,
        archive_path=package.archive_path,
        created_at=package.created_at.isoformat(),
        completed_at=_iso(package.completed_at),
    )


def conflict_to_response(conflict: ConflictResolution) -> ConflictResponse:
    """Convert ConflictResolution to response model.

    The overdue flag is evaluated on read, so it is current even between
    scheduled sweeps.
    """
    state = load_state(conflict)
    return ConflictResponse(
        id=conflict.id,
        conflict_number=conflict.conflict_number,
        conflict_type=conflict.conflict_type,
        entity_type=conflict.entity_type,
        first_entity_id=conflict.first_entity_id,
        first_entity_source=conflict.first_entity_source,
        first_entity_label=conflict.first_entity_label,
        second_entity_id=conflict.second_entity_id,
        second_entity_source=conflict.second_entity_source,
        second_entity_label=conflict.second_entity_label,
        import_package_id=conflict.import_package_id,
        similarity_score=conflict.similarity_score,
        confidence_level=conflict.confidence_level,
        description=conflict.description,
        matching_criteria=json.loads(conflict.matching_criteria_json or "{}"),
        data_comparison=json.loads(conflict.data_comparison_json or "{}"),
        status=conflict.status,
        resolution_action=conflict.resolution_action,
        priority=conflict.priority,
        detected_at=conflict.detected_at.isoformat(),
        assigned_to=conflict.assigned_to,
        resolved_by=conflict.resolved_by,
        resolved_at=_iso(conflict.resolved_at),
        resolution_reason=conflict.resolution_reason,
        resolution_notes=conflict.resolution_notes,
        merged_entity_id=conflict.merged_entity_id,
        discarded_entity_id=conflict.discarded_entity_id,
        merge_mapping=state.merge_mapping,
        target_resolution_hours=conflict.target_resolution_hours,
        is_overdue=conflict.is_overdue or check_if_overdue(state),
        is_auto_resolved=conflict.is_auto_resolved,
        auto_resolution_rule=conflict.auto_resolution_rule,
        is_escalated=conflict.is_escalated,
        escalation_reason=conflict.escalation_reason,
        review_attempt_count=conflict.review_attempt_count,
        review_history=list(state.review_history),
    )
