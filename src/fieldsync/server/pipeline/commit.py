"""Commit engine.

Promotes the approved staging records of a package into the production
store. Everything written here happens inside the caller's session; the
caller commits on success and rolls back on any exception, so production
either receives every promoted record or none of them.

Order of promotion follows the entity dependencies:

    building -> property_unit -> household -> person -> relation
             -> evidence -> claim -> survey

Package-local ids are remapped to production ids as records are created.
Household heads and evidence claims are written once their targets exist.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldsync.core.types import (
    ConflictStatus,
    EntityKind,
    EntitySource,
    PackageStatus,
    ResolutionAction,
)
from fieldsync.server.models import (
    Building,
    Claim,
    ConflictResolution,
    Evidence,
    Household,
    ImportPackage,
    Person,
    PersonPropertyRelation,
    PropertyUnit,
    StagingMixin,
    Survey,
)
from fieldsync.server.pipeline.conflicts import FIRST, MERGEABLE_FIELDS, SECOND
from fieldsync.server.pipeline.staging import load_staging
from fieldsync.server.pipeline.validators import (
    CLAIM_INITIAL_STAGE,
    CLAIM_INITIAL_STATUS,
    CLAIM_SOURCE_FIELD_COLLECTION,
)

logger = logging.getLogger(__name__)

PRODUCTION_MODELS: dict[EntityKind, type] = {
    EntityKind.BUILDING: Building,
    EntityKind.PROPERTY_UNIT: PropertyUnit,
    EntityKind.HOUSEHOLD: Household,
    EntityKind.PERSON: Person,
    EntityKind.RELATION: PersonPropertyRelation,
    EntityKind.EVIDENCE: Evidence,
    EntityKind.CLAIM: Claim,
    EntityKind.SURVEY: Survey,
}

# Attributes copied unchanged from staging to production
COPIED_FIELDS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.BUILDING: (
        "governorate_code",
        "district_code",
        "sub_district_code",
        "community_code",
        "neighborhood_code",
        "building_number",
        "building_type",
        "building_status",
        "damage_level",
        "number_of_property_units",
        "number_of_apartments",
        "number_of_shops",
        "number_of_floors",
        "latitude",
        "longitude",
        "building_geometry_wkt",
        "address",
        "notes",
    ),
    EntityKind.PROPERTY_UNIT: (
        "unit_identifier",
        "unit_type",
        "unit_status",
        "floor_number",
        "area_square_meters",
        "description",
    ),
    EntityKind.HOUSEHOLD: (
        "head_of_household_name",
        "household_size",
        "male_count",
        "female_count",
        "notes",
    ),
    EntityKind.PERSON: (
        "first_name_arabic",
        "father_name_arabic",
        "family_name_arabic",
        "mother_name_arabic",
        "national_id",
        "year_of_birth",
        "gender",
        "nationality",
        "mobile_number",
        "phone_number",
        "relationship_to_head",
    ),
    EntityKind.RELATION: (
        "relation_type",
        "ownership_share",
        "contract_type",
        "start_date",
        "end_date",
        "notes",
    ),
    EntityKind.EVIDENCE: (
        "evidence_type",
        "description",
        "original_file_name",
        "file_path",
        "file_size_bytes",
        "mime_type",
        "file_hash",
    ),
    EntityKind.CLAIM: ("claim_type", "case_priority", "description"),
    EntityKind.SURVEY: (
        "survey_date",
        "reference_code",
        "survey_type",
        "survey_source",
        "survey_status",
        "notes",
    ),
}


@dataclass(frozen=True)
class Reference:
    """A staging attribute pointing at another record of the package."""

    attribute: str
    parent: EntityKind
    target: str
    required: bool


REFERENCES: dict[EntityKind, tuple[Reference, ...]] = {
    EntityKind.PROPERTY_UNIT: (
        Reference("original_building_id", EntityKind.BUILDING, "building_id", True),
    ),
    EntityKind.HOUSEHOLD: (
        Reference("original_property_unit_id", EntityKind.PROPERTY_UNIT, "property_unit_id", True),
    ),
    EntityKind.PERSON: (
        Reference("original_household_id", EntityKind.HOUSEHOLD, "household_id", False),
    ),
    EntityKind.RELATION: (
        Reference("original_person_id", EntityKind.PERSON, "person_id", True),
        Reference("original_property_unit_id", EntityKind.PROPERTY_UNIT, "property_unit_id", True),
    ),
    EntityKind.EVIDENCE: (
        Reference("original_person_id", EntityKind.PERSON, "person_id", False),
        Reference("original_relation_id", EntityKind.RELATION, "relation_id", False),
    ),
    EntityKind.CLAIM: (
        Reference("original_property_unit_id", EntityKind.PROPERTY_UNIT, "property_unit_id", True),
        Reference("original_primary_claimant_id", EntityKind.PERSON, "primary_claimant_id", False),
    ),
    EntityKind.SURVEY: (
        Reference("original_building_id", EntityKind.BUILDING, "building_id", True),
        Reference("original_property_unit_id", EntityKind.PROPERTY_UNIT, "property_unit_id", False),
    ),
}

# Links written after their target kind has been promoted
BACKFILLS: tuple[tuple[EntityKind, Reference], ...] = (
    (
        EntityKind.HOUSEHOLD,
        Reference("original_head_person_id", EntityKind.PERSON, "head_person_id", False),
    ),
    (
        EntityKind.EVIDENCE,
        Reference("original_claim_id", EntityKind.CLAIM, "claim_id", False),
    ),
)

CONFLICT_ENTITY_KINDS: dict[str, EntityKind] = {
    "Person": EntityKind.PERSON,
    "Building": EntityKind.BUILDING,
    "PropertyUnit": EntityKind.PROPERTY_UNIT,
}


class CommitError(Exception):
    """Raised when a package cannot be committed."""


@dataclass(frozen=True)
class Fold:
    """How a resolved conflict folds a staged record.

    ``production_id`` is set when the record folds into an existing
    production row; ``survivor_id`` when it folds into another staged record
    of the same package.
    """

    action: ResolutionAction
    production_id: str | None = None
    survivor_id: int | None = None
    overlay: dict[str, str] = field(default_factory=dict)


@dataclass
class CommitReport:
    """Outcome of one commit invocation."""

    successful: int = 0
    failed: int = 0
    skipped: int = 0
    created: dict[str, int] = field(default_factory=dict)
    folded: dict[str, int] = field(default_factory=dict)
    failures: list[dict[str, str]] = field(default_factory=list)

    @property
    def outcome(self) -> PackageStatus:
        if self.failed == 0:
            return PackageStatus.COMPLETED
        if self.successful > 0:
            return PackageStatus.PARTIALLY_COMPLETED
        return PackageStatus.FAILED

    def to_dict(self) -> dict[str, object]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "created": self.created,
            "folded": self.folded,
            "failures": self.failures,
            "outcome": self.outcome.value,
        }


class CommitEngine:
    """Promotes one package's approved staging records.

    Args:
        session: Session whose transaction receives every write.
        package: Package in Committing status.
        fail_after: Raise after this many promotions (failure injection).
    """

    def __init__(
        self, session: Session, package: ImportPackage, fail_after: int | None = None
    ) -> None:
        self._session = session
        self._package = package
        self._fail_after = fail_after
        self._promotions = 0
        self._report = CommitReport()
        self._id_map: dict[EntityKind, dict[str, str]] = defaultdict(dict)
        self._excluded: dict[EntityKind, set[str]] = defaultdict(set)
        self._folds: dict[tuple[EntityKind, int], Fold] = {}

    def run(self) -> CommitReport:
        if self._package.status != PackageStatus.COMMITTING.value:
            raise CommitError(
                f"Package {self._package.package_number} is {self._package.status}, "
                "not Committing"
            )
        staged = load_staging(self._session, self._package.id)
        self._plan_folds(staged)

        promoted: dict[EntityKind, list[StagingMixin]] = {}
        for kind, records in staged.items():
            approved = []
            for record in records:
                if record.is_approved_for_commit and record.is_committable:
                    approved.append(record)
                else:
                    self._report.skipped += 1
            promoted[kind] = self._promote_kind(kind, approved)

        for kind, reference in BACKFILLS:
            for record in promoted.get(kind, []):
                self._backfill(kind, record, reference)

        self._session.flush()
        logger.info(
            "Commit of package %s: %d promoted, %d failed, %d skipped",
            self._package.package_number,
            self._report.successful,
            self._report.failed,
            self._report.skipped,
        )
        return self._report

    # === Planning ===

    def _plan_folds(self, staged: dict[EntityKind, list[StagingMixin]]) -> None:
        """Turn resolved conflicts into per-record fold decisions."""
        by_id = {
            (kind, record.id): record for kind, records in staged.items() for record in records
        }
        stmt = select(ConflictResolution).where(
            ConflictResolution.import_package_id == self._package.id,
            ConflictResolution.status == ConflictStatus.RESOLVED.value,
            ConflictResolution.resolution_action.in_(
                [
                    ResolutionAction.KEEP_FIRST.value,
                    ResolutionAction.KEEP_SECOND.value,
                    ResolutionAction.MERGE.value,
                ]
            ),
        )
        for conflict in self._session.scalars(stmt):
            kind = CONFLICT_ENTITY_KINDS.get(conflict.entity_type)
            if kind is None:
                continue
            action = ResolutionAction(conflict.resolution_action)
            mapping: dict[str, str] = json.loads(conflict.merge_mapping_json or "{}")

            if conflict.second_entity_source == EntitySource.PRODUCTION.value:
                staged_id = int(conflict.first_entity_id)
                overlay = {}
                if action == ResolutionAction.KEEP_FIRST:
                    overlay = {name: FIRST for name in MERGEABLE_FIELDS[conflict.entity_type]}
                elif action == ResolutionAction.MERGE:
                    overlay = {k: v for k, v in mapping.items() if v == FIRST}
                self._folds[(kind, staged_id)] = Fold(
                    action=action, production_id=conflict.second_entity_id, overlay=overlay
                )
                continue

            survivor = int(conflict.merged_entity_id or conflict.first_entity_id)
            discarded = int(conflict.discarded_entity_id or conflict.second_entity_id)
            if (kind, survivor) not in by_id or (kind, discarded) not in by_id:
                continue
            if action == ResolutionAction.MERGE:
                # Fields taken from the discarded side are copied onto the survivor
                discarded_side = FIRST if str(discarded) == conflict.first_entity_id else SECOND
                source = by_id[(kind, discarded)]
                target = by_id[(kind, survivor)]
                for name, side in mapping.items():
                    if side == discarded_side:
                        setattr(target, name, getattr(source, name))
            self._folds[(kind, discarded)] = Fold(action=action, survivor_id=survivor)

    # === Promotion ===

    def _fail(self, kind: EntityKind, record: StagingMixin, reason: str) -> None:
        self._excluded[kind].add(record.original_entity_id)
        self._report.failed += 1
        self._report.failures.append(
            {"kind": kind.value, "originalEntityId": record.original_entity_id, "reason": reason}
        )
        logger.warning(
            "Package %s: %s %s not committed: %s",
            self._package.package_number,
            kind.value,
            record.original_entity_id,
            reason,
        )

    def _tick(self) -> None:
        if self._fail_after is not None and self._promotions >= self._fail_after:
            raise CommitError(f"Injected failure after {self._promotions} promotions")
        self._promotions += 1

    def _resolve_parents(
        self, kind: EntityKind, record: StagingMixin
    ) -> tuple[dict[str, str | None], str | None]:
        """Map a record's references to production ids.

        Returns:
            Tuple of (target attribute -> production id, failure reason).
        """
        links: dict[str, str | None] = {}
        for ref in REFERENCES.get(kind, ()):
            local_id = getattr(record, ref.attribute)
            production_id = self._id_map[ref.parent].get(local_id) if local_id else None
            if production_id is None and ref.required:
                if not local_id:
                    return links, f"missing {ref.parent.value} reference"
                return links, f"{ref.parent.value} {local_id} was not committed"
            links[ref.target] = production_id
        return links, None

    def _promote_kind(self, kind: EntityKind, records: list[StagingMixin]) -> list[StagingMixin]:
        promoted: list[StagingMixin] = []
        deferred: list[tuple[StagingMixin, Fold]] = []
        for record in records:
            links, reason = self._resolve_parents(kind, record)
            if reason is not None:
                self._fail(kind, record, reason)
                continue

            fold = self._folds.get((kind, record.id))
            if fold is not None and fold.survivor_id is not None:
                deferred.append((record, fold))
                continue
            if fold is not None and fold.production_id is not None:
                self._tick()
                production_id = self._fold_into_production(kind, record, fold)
                if production_id is None:
                    self._fail(kind, record, f"production {kind.value} {fold.production_id} is gone")
                    continue
                self._finish(kind, record, production_id, folded=True)
                promoted.append(record)
                continue

            if kind == EntityKind.BUILDING and self._building_code_taken(record):
                self._fail(kind, record, "building code already registered in production")
                continue
            self._tick()
            entity = self._create(kind, record, links)
            self._finish(kind, record, entity.id, folded=False)
            promoted.append(record)

        survivors = {r.id: r for r in records}
        for record, fold in deferred:
            target = survivors.get(fold.survivor_id)  # type: ignore[arg-type]
            if target is None or target.committed_entity_id is None:
                self._fail(kind, record, f"surviving {kind.value} was not committed")
                continue
            self._tick()
            self._finish(kind, record, target.committed_entity_id, folded=True)
            promoted.append(record)
        return promoted

    def _finish(self, kind: EntityKind, record: StagingMixin, production_id: str, folded: bool) -> None:
        record.committed_entity_id = production_id
        self._id_map[kind][record.original_entity_id] = production_id
        self._report.successful += 1
        counter = self._report.folded if folded else self._report.created
        counter[kind.value] = counter.get(kind.value, 0) + 1

    def _building_code_taken(self, record: StagingMixin) -> bool:
        code = record.composite_code  # type: ignore[attr-defined]
        stmt = select(Building.id).where(Building.building_code == code)
        return self._session.execute(stmt).first() is not None

    def _values(self, kind: EntityKind, record: StagingMixin) -> dict[str, Any]:
        return {name: getattr(record, name) for name in COPIED_FIELDS[kind]}

    def _create(self, kind: EntityKind, record: StagingMixin, links: dict[str, str | None]) -> Any:
        values = self._values(kind, record)
        values.update(links)
        values["source_package_id"] = self._package.id
        if kind == EntityKind.BUILDING:
            values["building_code"] = record.composite_code  # type: ignore[attr-defined]
        elif kind == EntityKind.CLAIM:
            values["lifecycle_stage"] = CLAIM_INITIAL_STAGE
            values["claim_status"] = CLAIM_INITIAL_STATUS
            values["claim_source"] = CLAIM_SOURCE_FIELD_COLLECTION
        elif kind == EntityKind.SURVEY:
            values["field_collector_id"] = self._package.exported_by_user_id
        entity = PRODUCTION_MODELS[kind](**values)
        self._session.add(entity)
        self._session.flush()
        return entity

    def _fold_into_production(
        self, kind: EntityKind, record: StagingMixin, fold: Fold
    ) -> str | None:
        entity = self._session.get(PRODUCTION_MODELS[kind], fold.production_id)
        if entity is None:
            return None
        for name in fold.overlay:
            setattr(entity, name, getattr(record, name))
        self._session.flush()
        return entity.id

    def _backfill(self, kind: EntityKind, record: StagingMixin, reference: Reference) -> None:
        local_id = getattr(record, reference.attribute)
        production_id = self._id_map[reference.parent].get(local_id) if local_id else None
        if production_id is None or record.committed_entity_id is None:
            return
        entity = self._session.get(PRODUCTION_MODELS[kind], record.committed_entity_id)
        if entity is not None and getattr(entity, reference.target) is None:
            setattr(entity, reference.target, production_id)


def commit_package(
    session: Session, package: ImportPackage, fail_after: int | None = None
) -> CommitReport:
    """Promote a Committing package's approved records; see :class:`CommitEngine`."""
    return CommitEngine(session, package, fail_after).run()
