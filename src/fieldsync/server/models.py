"""SQLAlchemy models for the fieldsync server.

This module defines the database schema using SQLAlchemy ORM:
- Import packages and their staging partitions (one table per entity kind)
- Conflict resolutions and sync sessions
- The production store, vocabularies and building assignments consumed by
  the pipeline
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import ClassVar

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from fieldsync.core.types import (
    ConflictPriority,
    ConflictStatus,
    EntityKind,
    PackageStatus,
    SyncSessionStatus,
    TransferStatus,
    ValidationStatus,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime read back from SQLite."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class StagingError(Exception):
    """Raised when a staging record cannot be approved for commit."""


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class Sequence(Base):
    """Named monotonic counter for human-readable numbers."""

    __tablename__ = "sequences"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# === Import packages ===


class ImportPackage(Base):
    """One uploaded package container and its progress through the pipeline."""

    __tablename__ = "import_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    package_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    file_checksum: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    content_checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Manifest
    package_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    package_exported_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    exported_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    app_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    sync_session_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("sync_sessions.id", ondelete="SET NULL"), nullable=True
    )

    # Integrity
    is_checksum_valid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    digital_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_signature_valid: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    schema_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_schema_valid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Declared contents
    building_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    property_unit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    person_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    household_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    relation_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    evidence_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claim_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    survey_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_attachment_size_bytes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Vocabulary compatibility
    vocabulary_versions_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_vocabulary_compatible: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    vocabulary_issues_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Validation
    validation_error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    validation_warning_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    validation_report_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Duplicates
    person_duplicate_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    property_duplicate_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conflict_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    are_conflicts_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Commit
    successful_import_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_import_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commit_summary_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Outcome
    status: Mapped[str] = mapped_column(
        String(32), default=PackageStatus.PENDING.value, nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    quarantine_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    archive_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
    validation_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    committed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_import_packages_status", "status"),)

    @property
    def vocabulary_versions(self) -> dict[str, str]:
        return json.loads(self.vocabulary_versions_json or "{}")

    @property
    def vocabulary_issues(self) -> list[str]:
        return json.loads(self.vocabulary_issues_json or "[]")

    def add_note(self, note: str) -> None:
        """Append a line to the processing notes."""
        stamp = _utcnow().strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{stamp}] {note}"
        self.processing_notes = f"{self.processing_notes}\n{line}" if self.processing_notes else line


# === Staging ===


class StagingMixin:
    """Columns and behavior shared by every staging table.

    The validation status always follows the error and warning lists:
    Invalid iff there is at least one error, Warning if only warnings.
    """

    KIND: ClassVar[EntityKind]

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    import_package_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("import_packages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    validation_status: Mapped[str] = mapped_column(
        String(16), default=ValidationStatus.PENDING.value, nullable=False
    )
    errors_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    warnings_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    is_approved_for_commit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    staged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    committed_entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    @property
    def errors(self) -> list[str]:
        return json.loads(self.errors_json or "[]")

    @property
    def warnings(self) -> list[str]:
        return json.loads(self.warnings_json or "[]")

    @property
    def is_committable(self) -> bool:
        return self.validation_status in (ValidationStatus.VALID.value, ValidationStatus.WARNING.value)

    def add_error(self, message: str) -> None:
        self.errors_json = json.dumps([*self.errors, message], ensure_ascii=False)
        self.validation_status = ValidationStatus.INVALID.value
        self.is_approved_for_commit = False

    def add_warning(self, message: str) -> None:
        self.warnings_json = json.dumps([*self.warnings, message], ensure_ascii=False)
        if self.validation_status != ValidationStatus.INVALID.value:
            self.validation_status = ValidationStatus.WARNING.value

    def finalize_validation(self) -> None:
        """Mark a record that collected no findings as Valid."""
        if self.validation_status == ValidationStatus.PENDING.value:
            self.validation_status = ValidationStatus.VALID.value

    def reset_validation(self) -> None:
        self.errors_json = "[]"
        self.warnings_json = "[]"
        self.validation_status = ValidationStatus.PENDING.value
        self.is_approved_for_commit = False

    def approve(self) -> None:
        """Approve the record for commit.

        Raises:
            StagingError: If the record carries blocking errors or was never
                validated.
        """
        if self.errors or not self.is_committable:
            raise StagingError(
                f"{self.KIND.value} {self.original_entity_id} cannot be approved "
                f"(status {self.validation_status})"
            )
        self.is_approved_for_commit = True


class StagingBuilding(StagingMixin, Base):
    """Staged building."""

    __tablename__ = "staging_buildings"
    KIND = EntityKind.BUILDING

    building_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    governorate_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    district_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    sub_district_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    community_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    neighborhood_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    building_number: Mapped[str | None] = mapped_column(String(8), nullable=True)
    building_type: Mapped[int | None] = mapped_column(Integer, nullable=True)
    building_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    damage_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    number_of_property_units: Mapped[int | None] = mapped_column(Integer, nullable=True)
    number_of_apartments: Mapped[int | None] = mapped_column(Integer, nullable=True)
    number_of_shops: Mapped[int | None] = mapped_column(Integer, nullable=True)
    number_of_floors: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    building_geometry_wkt: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def composite_code(self) -> str:
        """Location code built from the administrative parts."""
        parts = (
            self.governorate_code,
            self.district_code,
            self.sub_district_code,
            self.community_code,
            self.neighborhood_code,
            self.building_number,
        )
        return "".join((p or "").strip() for p in parts)


class StagingPropertyUnit(StagingMixin, Base):
    """Staged property unit."""

    __tablename__ = "staging_property_units"
    KIND = EntityKind.PROPERTY_UNIT

    original_building_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    unit_identifier: Mapped[str | None] = mapped_column(String(64), nullable=True)
    unit_type: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unit_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    area_square_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class StagingPerson(StagingMixin, Base):
    """Staged person."""

    __tablename__ = "staging_persons"
    KIND = EntityKind.PERSON

    first_name_arabic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    father_name_arabic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    family_name_arabic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    mother_name_arabic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    national_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    year_of_birth: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)
    nationality: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mobile_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    original_household_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    relationship_to_head: Mapped[str | None] = mapped_column(String(32), nullable=True)

    @property
    def full_name(self) -> str:
        parts = (self.first_name_arabic, self.father_name_arabic, self.family_name_arabic)
        return " ".join(p for p in parts if p)


class StagingHousehold(StagingMixin, Base):
    """Staged household."""

    __tablename__ = "staging_households"
    KIND = EntityKind.HOUSEHOLD

    original_property_unit_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_head_person_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    head_of_household_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    household_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    male_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    female_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class StagingRelation(StagingMixin, Base):
    """Staged person-property relation."""

    __tablename__ = "staging_relations"
    KIND = EntityKind.RELATION

    original_person_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_property_unit_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    relation_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ownership_share: Mapped[float | None] = mapped_column(Float, nullable=True)
    contract_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    start_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    end_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class StagingEvidence(StagingMixin, Base):
    """Staged evidence document."""

    __tablename__ = "staging_evidences"
    KIND = EntityKind.EVIDENCE

    evidence_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_person_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_relation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_claim_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class StagingClaim(StagingMixin, Base):
    """Staged claim."""

    __tablename__ = "staging_claims"
    KIND = EntityKind.CLAIM

    original_property_unit_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_primary_claimant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_source: Mapped[int | None] = mapped_column(Integer, nullable=True)
    case_priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lifecycle_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class StagingSurvey(StagingMixin, Base):
    """Staged field survey."""

    __tablename__ = "staging_surveys"
    KIND = EntityKind.SURVEY

    original_building_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_property_unit_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    survey_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reference_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    survey_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    survey_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    survey_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


# Staging models in commit dependency order
STAGING_MODELS: dict[EntityKind, type[StagingMixin]] = {
    EntityKind.BUILDING: StagingBuilding,
    EntityKind.PROPERTY_UNIT: StagingPropertyUnit,
    EntityKind.HOUSEHOLD: StagingHousehold,
    EntityKind.PERSON: StagingPerson,
    EntityKind.RELATION: StagingRelation,
    EntityKind.EVIDENCE: StagingEvidence,
    EntityKind.CLAIM: StagingClaim,
    EntityKind.SURVEY: StagingSurvey,
}


# === Conflicts ===


class ConflictResolution(Base):
    """A detected likely-duplicate pair awaiting a decision."""

    __tablename__ = "conflict_resolutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conflict_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    conflict_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    first_entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    first_entity_source: Mapped[str] = mapped_column(String(16), nullable=False)
    first_entity_label: Mapped[str | None] = mapped_column(String(512), nullable=True)
    second_entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    second_entity_source: Mapped[str] = mapped_column(String(16), nullable=False)
    second_entity_label: Mapped[str | None] = mapped_column(String(512), nullable=True)
    import_package_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("import_packages.id", ondelete="CASCADE"), nullable=True
    )

    similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    confidence_level: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    matching_criteria_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_comparison_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(16), default=ConflictStatus.PENDING_REVIEW.value, nullable=False
    )
    resolution_action: Mapped[str | None] = mapped_column(String(16), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    detected_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    merged_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discarded_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    merge_mapping_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    priority: Mapped[str] = mapped_column(
        String(16), default=ConflictPriority.NORMAL.value, nullable=False
    )
    target_resolution_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_overdue: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    is_auto_detected: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_auto_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_resolution_rule: Mapped[str | None] = mapped_column(String(128), nullable=True)

    is_escalated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    review_attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    review_history_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)

    __table_args__ = (
        Index("idx_conflicts_package_status", "import_package_id", "status"),
        Index("idx_conflicts_pair", "first_entity_id", "second_entity_id"),
    )


# === Sync ===


class SyncSession(Base):
    """One device-initiated sync cycle."""

    __tablename__ = "sync_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    field_collector_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    client_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), default=SyncSessionStatus.IN_PROGRESS.value, nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    packages_uploaded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    packages_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    assignments_downloaded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    assignments_acknowledged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    vocabulary_versions_sent_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class Vocabulary(Base):
    """Versioned bilingual controlled vocabulary."""

    __tablename__ = "vocabularies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name_arabic: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name_english: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[str] = mapped_column(String(32), nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    values_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allow_custom_values: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    @property
    def values(self) -> list[dict[str, object]]:
        return json.loads(self.values_json or "[]")

    @property
    def codes(self) -> set[int]:
        return {int(v["code"]) for v in self.values if "code" in v}


# === Production store ===


class Building(Base):
    """Production building."""

    __tablename__ = "buildings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    building_code: Mapped[str] = mapped_column(String(17), unique=True, nullable=False)
    governorate_code: Mapped[str] = mapped_column(String(2), nullable=False)
    district_code: Mapped[str] = mapped_column(String(2), nullable=False)
    sub_district_code: Mapped[str] = mapped_column(String(2), nullable=False)
    community_code: Mapped[str] = mapped_column(String(3), nullable=False)
    neighborhood_code: Mapped[str] = mapped_column(String(3), nullable=False)
    building_number: Mapped[str] = mapped_column(String(5), nullable=False)
    governorate_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    district_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    community_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    neighborhood_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    building_type: Mapped[int | None] = mapped_column(Integer, nullable=True)
    building_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    damage_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    number_of_property_units: Mapped[int | None] = mapped_column(Integer, nullable=True)
    number_of_apartments: Mapped[int | None] = mapped_column(Integer, nullable=True)
    number_of_shops: Mapped[int | None] = mapped_column(Integer, nullable=True)
    number_of_floors: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    building_geometry_wkt: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    landmark: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    property_units: Mapped[list[PropertyUnit]] = relationship(
        "PropertyUnit", back_populates="building", order_by="PropertyUnit.unit_identifier"
    )


class PropertyUnit(Base):
    """Production property unit."""

    __tablename__ = "property_units"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    building_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("buildings.id"), nullable=False, index=True
    )
    unit_identifier: Mapped[str] = mapped_column(String(64), nullable=False)
    unit_type: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unit_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    position_on_floor: Mapped[str | None] = mapped_column(String(32), nullable=True)
    area_square_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    damage_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    building: Mapped[Building] = relationship("Building", back_populates="property_units")


class Household(Base):
    """Production household."""

    __tablename__ = "households"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    property_unit_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("property_units.id"), nullable=True
    )
    # Not a foreign key: persons reference households too
    head_person_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    head_of_household_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    household_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    male_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    female_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Person(Base):
    """Production person."""

    __tablename__ = "persons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    first_name_arabic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    father_name_arabic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    family_name_arabic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    mother_name_arabic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    national_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    year_of_birth: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)
    nationality: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mobile_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    household_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("households.id"), nullable=True
    )
    relationship_to_head: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    @property
    def full_name(self) -> str:
        parts = (self.first_name_arabic, self.father_name_arabic, self.family_name_arabic)
        return " ".join(p for p in parts if p)


class PersonPropertyRelation(Base):
    """Production person-property relation."""

    __tablename__ = "person_property_relations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    person_id: Mapped[str] = mapped_column(String(36), ForeignKey("persons.id"), nullable=False)
    property_unit_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("property_units.id"), nullable=False
    )
    relation_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ownership_share: Mapped[float | None] = mapped_column(Float, nullable=True)
    contract_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    start_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    end_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Evidence(Base):
    """Production evidence document."""

    __tablename__ = "evidences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    evidence_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    person_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("persons.id"), nullable=True
    )
    relation_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("person_property_relations.id"), nullable=True
    )
    claim_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("claims.id"), nullable=True)
    source_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Claim(Base):
    """Production claim."""

    __tablename__ = "claims"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    property_unit_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("property_units.id"), nullable=False
    )
    primary_claimant_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("persons.id"), nullable=True
    )
    claim_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_source: Mapped[int | None] = mapped_column(Integer, nullable=True)
    case_priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lifecycle_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Survey(Base):
    """Production field survey."""

    __tablename__ = "surveys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    building_id: Mapped[str] = mapped_column(String(36), ForeignKey("buildings.id"), nullable=False)
    property_unit_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("property_units.id"), nullable=True
    )
    survey_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reference_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    survey_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    survey_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    survey_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    field_collector_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class BuildingAssignment(Base):
    """Field work assigned to a collector.

    The pipeline only ever writes ``transfer_status`` and ``transferred_at``.
    """

    __tablename__ = "building_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    building_id: Mapped[str] = mapped_column(String(36), ForeignKey("buildings.id"), nullable=False)
    field_collector_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assigned_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    target_completion_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    priority: Mapped[str] = mapped_column(String(16), default="Normal", nullable=False)
    assignment_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_revisit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    units_for_revisit_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    transfer_status: Mapped[str] = mapped_column(
        String(16), default=TransferStatus.PENDING.value, nullable=False
    )
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    building: Mapped[Building] = relationship("Building")
