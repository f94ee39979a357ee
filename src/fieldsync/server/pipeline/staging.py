"""Staging loader.

Copies container rows into the staging tables of one package. Every staging
row keeps the package-local id it had on the device; device rows never carry
production ids into the server.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Float, Integer, delete, func, select
from sqlalchemy.orm import Session

from fieldsync.core.types import EntityKind, ValidationStatus
from fieldsync.server.models import STAGING_MODELS, StagingError, StagingMixin
from fieldsync.server.pipeline.container import PackageContainer

logger = logging.getLogger(__name__)

# Container column -> staging attribute, where the names differ
COLUMN_RENAMES: dict[EntityKind, dict[str, str]] = {
    EntityKind.BUILDING: {"building_id": "building_code"},
    EntityKind.PROPERTY_UNIT: {"building_id": "original_building_id", "status": "unit_status"},
    EntityKind.HOUSEHOLD: {
        "property_unit_id": "original_property_unit_id",
        "head_of_household_person_id": "original_head_person_id",
    },
    EntityKind.PERSON: {"household_id": "original_household_id"},
    EntityKind.RELATION: {
        "person_id": "original_person_id",
        "property_unit_id": "original_property_unit_id",
    },
    EntityKind.EVIDENCE: {
        "person_id": "original_person_id",
        "person_property_relation_id": "original_relation_id",
        "claim_id": "original_claim_id",
    },
    EntityKind.CLAIM: {
        "property_unit_id": "original_property_unit_id",
        "primary_claimant_id": "original_primary_claimant_id",
        "priority": "case_priority",
        "status": "claim_status",
    },
    EntityKind.SURVEY: {
        "building_id": "original_building_id",
        "property_unit_id": "original_property_unit_id",
        "type": "survey_type",
        "source": "survey_source",
        "status": "survey_status",
    },
}

# Columns owned by the pipeline, never filled from the device
PROTECTED_ATTRIBUTES = frozenset(
    {
        "id",
        "import_package_id",
        "original_entity_id",
        "validation_status",
        "errors_json",
        "warnings_json",
        "is_approved_for_commit",
        "staged_at",
        "committed_entity_id",
    }
)


@dataclass
class StagingSummary:
    """Per-kind staging counts for a package."""

    counts: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(c.get("total", 0) for c in self.counts.values())

    @property
    def approved(self) -> int:
        return sum(c.get("approved", 0) for c in self.counts.values())


def _coerce(model: type[StagingMixin], attr: str, value: Any) -> tuple[Any, bool]:
    """Convert a container value to the staging column type.

    Returns:
        Tuple of (converted value, ok). ``ok`` is False when the value could
        not be converted; the value is then None.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return None, True
    column_type = model.__table__.columns[attr].type  # type: ignore[attr-defined]
    try:
        if isinstance(column_type, Integer):
            if isinstance(value, float) and not value.is_integer():
                return None, False
            return int(value), True
        if isinstance(column_type, Float):
            return float(value), True
    except (TypeError, ValueError):
        return None, False
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace"), True
    return str(value).strip(), True


def build_staging_record(
    kind: EntityKind, row: dict[str, Any], package_id: int
) -> StagingMixin:
    """Create an unsaved staging record from one container row."""
    model = STAGING_MODELS[kind]
    renames = COLUMN_RENAMES.get(kind, {})
    record = model(
        import_package_id=package_id,
        original_entity_id=str(row.get("id", "")).strip(),
        validation_status=ValidationStatus.PENDING.value,
        errors_json="[]",
        warnings_json="[]",
        is_approved_for_commit=False,
    )
    columns = model.__table__.columns  # type: ignore[attr-defined]
    for column, value in row.items():
        attr = renames.get(column, column)
        if attr in PROTECTED_ATTRIBUTES or attr not in columns:
            continue
        converted, ok = _coerce(model, attr, value)
        setattr(record, attr, converted)
        if not ok:
            record.add_error(f"{column}: invalid value {value!r}")
    if not record.original_entity_id:
        record.add_error("id: package-local identifier is missing")
    return record


def has_staging_rows(session: Session, package_id: int) -> bool:
    for model in STAGING_MODELS.values():
        stmt = select(func.count()).select_from(model).where(model.import_package_id == package_id)
        if session.execute(stmt).scalar_one():
            return True
    return False


def stage_package(
    session: Session,
    package_id: int,
    container: PackageContainer,
    attachment_paths: dict[str, str] | None = None,
) -> StagingSummary:
    """Load every entity table of a container into staging.

    The caller owns the transaction; nothing is committed here.

    Args:
        session: Open database session.
        package_id: ImportPackage primary key owning the rows.
        container: Opened, integrity-checked container.
        attachment_paths: Evidence package-local id -> stored attachment
            key, used when the device left ``file_path`` empty.

    Returns:
        StagingSummary with the number of rows staged per kind.

    Raises:
        StagingError: If the package already has staging rows.
    """
    if has_staging_rows(session, package_id):
        raise StagingError(f"Package {package_id} is already staged")

    attachment_paths = attachment_paths or {}
    summary = StagingSummary()
    for kind in STAGING_MODELS:
        rows = container.entity_rows(kind)
        for row in rows:
            record = build_staging_record(kind, row, package_id)
            if kind == EntityKind.EVIDENCE and not getattr(record, "file_path", None):
                stored = attachment_paths.get(record.original_entity_id)
                if stored:
                    record.file_path = stored  # type: ignore[attr-defined]
            session.add(record)
        summary.counts[kind.value] = {"total": len(rows)}
        if rows:
            logger.debug("Staged %d %s rows for package %d", len(rows), kind.value, package_id)
    session.flush()
    logger.info("Staged %d records for package %d", summary.total, package_id)
    return summary


def discard_staging(session: Session, package_id: int) -> int:
    """Delete every staging row of a package.

    Returns:
        Number of rows deleted.
    """
    deleted = 0
    for model in reversed(list(STAGING_MODELS.values())):
        result = session.execute(delete(model).where(model.import_package_id == package_id))
        deleted += result.rowcount or 0
    logger.info("Discarded %d staging rows for package %d", deleted, package_id)
    return deleted


def load_staging(session: Session, package_id: int) -> dict[EntityKind, list[StagingMixin]]:
    """Load all staging records of a package, keyed by kind, ordered by id."""
    return {
        kind: list(
            session.scalars(
                select(model).where(model.import_package_id == package_id).order_by(model.id)
            )
        )
        for kind, model in STAGING_MODELS.items()
    }


def summarize_staging(session: Session, package_id: int) -> StagingSummary:
    """Count staging records per kind and validation status."""
    summary = StagingSummary()
    for kind, model in STAGING_MODELS.items():
        stmt = (
            select(model.validation_status, func.count())
            .where(model.import_package_id == package_id)
            .group_by(model.validation_status)
        )
        counts = {status.value.lower(): 0 for status in ValidationStatus}
        for status, count in session.execute(stmt):
            counts[str(status).lower()] = count
        counts["total"] = sum(counts.values())
        counts["approved"] = session.execute(
            select(func.count())
            .select_from(model)
            .where(model.import_package_id == package_id, model.is_approved_for_commit.is_(True))
        ).scalar_one()
        counts["committed"] = session.execute(
            select(func.count())
            .select_from(model)
            .where(model.import_package_id == package_id, model.committed_entity_id.is_not(None))
        ).scalar_one()
        summary.counts[kind.value] = counts
    return summary


def approve_records(
    session: Session, package_id: int, record_ids: dict[EntityKind, list[int]] | None = None
) -> int:
    """Approve staging records for commit.

    Args:
        session: Open database session.
        package_id: Owning package.
        record_ids: Staging ids to approve per kind; None approves every
            Valid/Warning record.

    Returns:
        Number of records approved.

    Raises:
        StagingError: If a listed record is unknown or carries errors.
    """
    approved = 0
    for kind, records in load_staging(session, package_id).items():
        if record_ids is None:
            targets = [r for r in records if r.is_committable and not r.errors]
        else:
            wanted = set(record_ids.get(kind, []))
            targets = [r for r in records if r.id in wanted]
            missing = wanted - {r.id for r in targets}
            if missing:
                raise StagingError(
                    f"Unknown {kind.value} staging ids for package {package_id}: {sorted(missing)}"
                )
        for record in targets:
            record.approve()
            approved += 1
    logger.info("Approved %d staging records for package %d", approved, package_id)
    return approved
