"""Duplicate detection engine.

Two passes per entity family:
- staged vs production: each staged record against existing records
- staged vs staged: each unordered pair inside the same package once

Every pair scoring at or above the lowest reportable threshold becomes one
ConflictResolution row. Production data is only read here.
"""

from __future__ import annotations

import json
import logging
import math
from collections import defaultdict
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldsync.core.config import PipelineSettings
from fieldsync.core.types import (
    ConflictType,
    EntityKind,
    EntitySource,
)
from fieldsync.server.models import (
    Building,
    ConflictResolution,
    Person,
    PropertyUnit,
    StagingBuilding,
    StagingPerson,
    StagingPropertyUnit,
)
from fieldsync.server.pipeline.matching import (
    BuildingProfile,
    MatchResult,
    PersonProfile,
    confidence_for,
    priority_for,
    score_buildings,
    score_persons,
)
from fieldsync.server.pipeline.numbering import CONFLICT_PREFIX, next_number
from fieldsync.server.pipeline.staging import load_staging

logger = logging.getLogger(__name__)

METERS_PER_DEGREE = 111_320.0
PRODUCTION_BATCH_SIZE = 1000


@dataclass
class DetectionReport:
    """Outcome of duplicate detection for a package."""

    person_duplicates: int = 0
    property_duplicates: int = 0
    pairs_compared: int = 0
    conflict_ids: list[int] = field(default_factory=list)

    @property
    def conflict_count(self) -> int:
        return len(self.conflict_ids)


def _pair_key(source_a: str, id_a: str, source_b: str, id_b: str) -> frozenset[str]:
    return frozenset({f"{source_a}:{id_a}", f"{source_b}:{id_b}"})


def staged_person_profile(p: StagingPerson) -> PersonProfile:
    return PersonProfile(
        entity_id=str(p.id),
        source=EntitySource.STAGING,
        first_name=p.first_name_arabic,
        father_name=p.father_name_arabic,
        family_name=p.family_name_arabic,
        national_id=p.national_id,
        year_of_birth=p.year_of_birth,
        gender=p.gender,
        phones=tuple(n for n in (p.mobile_number, p.phone_number) if n),
    )


def production_person_profile(p: Person) -> PersonProfile:
    return PersonProfile(
        entity_id=p.id,
        source=EntitySource.PRODUCTION,
        first_name=p.first_name_arabic,
        father_name=p.father_name_arabic,
        family_name=p.family_name_arabic,
        national_id=p.national_id,
        year_of_birth=p.year_of_birth,
        gender=p.gender,
        phones=tuple(n for n in (p.mobile_number, p.phone_number) if n),
    )


def staged_building_profile(b: StagingBuilding) -> BuildingProfile:
    return BuildingProfile(
        entity_id=str(b.id),
        source=EntitySource.STAGING,
        building_code=b.composite_code,
        building_type=b.building_type,
        latitude=b.latitude,
        longitude=b.longitude,
    )


def production_building_profile(b: Building) -> BuildingProfile:
    return BuildingProfile(
        entity_id=b.id,
        source=EntitySource.PRODUCTION,
        building_code=b.building_code,
        building_type=b.building_type,
        latitude=b.latitude,
        longitude=b.longitude,
    )


class DuplicateDetector:
    """Runs both detection passes for one package.

    Args:
        session: Open database session; the caller owns the transaction.
        package_id: Package whose staged records are examined.
        settings: Pipeline settings (thresholds and default SLA).
    """

    def __init__(self, session: Session, package_id: int, settings: PipelineSettings) -> None:
        self._session = session
        self._package_id = package_id
        self._settings = settings
        self._thresholds = settings.duplicates
        self._report = DetectionReport()
        self._seen: set[frozenset[str]] = set()

    def run(self) -> DetectionReport:
        """Detect person and property duplicates and persist conflicts."""
        self._load_existing_pairs()
        staged = load_staging(self._session, self._package_id)
        persons = [p for p in staged[EntityKind.PERSON] if p.is_committable]
        buildings = [b for b in staged[EntityKind.BUILDING] if b.is_committable]
        units = [u for u in staged[EntityKind.PROPERTY_UNIT] if u.is_committable]

        self._detect_persons(persons)  # type: ignore[arg-type]
        self._detect_properties(buildings, units)  # type: ignore[arg-type]
        self._session.flush()

        logger.info(
            "Duplicate detection for package %d: %d person, %d property duplicates "
            "(%d pairs compared)",
            self._package_id,
            self._report.person_duplicates,
            self._report.property_duplicates,
            self._report.pairs_compared,
        )
        return self._report

    def _load_existing_pairs(self) -> None:
        stmt = select(ConflictResolution).where(
            ConflictResolution.import_package_id == self._package_id
        )
        for c in self._session.scalars(stmt):
            self._seen.add(
                _pair_key(
                    c.first_entity_source,
                    c.first_entity_id,
                    c.second_entity_source,
                    c.second_entity_id,
                )
            )

    # === Persons ===

    def _production_persons(self) -> Iterator[Person]:
        stmt = select(Person).execution_options(yield_per=PRODUCTION_BATCH_SIZE)
        yield from self._session.scalars(stmt)

    def _detect_persons(self, persons: list[StagingPerson]) -> None:
        if not persons:
            return
        profiles = [staged_person_profile(p) for p in persons]

        for existing in self._production_persons():
            candidate = production_person_profile(existing)
            for profile in profiles:
                self._report.pairs_compared += 1
                result = score_persons(profile, candidate)
                if self._record(
                    ConflictType.PERSON_DUPLICATE, "Person", profile, candidate, result
                ):
                    self._report.person_duplicates += 1

        for a, b in _unordered_pairs(profiles):
            self._report.pairs_compared += 1
            result = score_persons(a, b)
            if self._record(ConflictType.PERSON_DUPLICATE_WITHIN_BATCH, "Person", a, b, result):
                self._report.person_duplicates += 1

    # === Buildings and units ===

    def _production_candidates(self, building: BuildingProfile) -> list[Building]:
        """Production buildings sharing the code or inside the search box."""
        found: dict[str, Building] = {}
        if building.building_code:
            stmt = select(Building).where(Building.building_code == building.building_code)
            for b in self._session.scalars(stmt):
                found[b.id] = b
        if building.latitude is not None and building.longitude is not None:
            radius = self._thresholds.property_proximity_meters
            delta_lat = radius / METERS_PER_DEGREE
            cos_lat = max(math.cos(math.radians(building.latitude)), 1e-6)
            delta_lng = radius / (METERS_PER_DEGREE * cos_lat)
            stmt = select(Building).where(
                Building.latitude.between(building.latitude - delta_lat, building.latitude + delta_lat),
                Building.longitude.between(
                    building.longitude - delta_lng, building.longitude + delta_lng
                ),
            )
            for b in self._session.scalars(stmt):
                found[b.id] = b
        return list(found.values())

    def _detect_properties(
        self, buildings: list[StagingBuilding], units: list[StagingPropertyUnit]
    ) -> None:
        units_by_building: dict[str, list[StagingPropertyUnit]] = defaultdict(list)
        for u in units:
            if u.original_building_id:
                units_by_building[u.original_building_id].append(u)

        radius = self._thresholds.property_proximity_meters
        for staged in buildings:
            profile = staged_building_profile(staged)
            for existing in self._production_candidates(profile):
                self._report.pairs_compared += 1
                candidate = production_building_profile(existing)
                result = score_buildings(profile, candidate, radius)
                if result is None:
                    continue
                if self._record(
                    ConflictType.PROPERTY_DUPLICATE, "Building", profile, candidate, result
                ):
                    self._report.property_duplicates += 1
                self._match_units_against_production(
                    units_by_building.get(staged.original_entity_id, []), existing, result
                )

        profiles = {b.original_entity_id: staged_building_profile(b) for b in buildings}
        for a, b in _unordered_pairs(buildings):
            self._report.pairs_compared += 1
            pa, pb = profiles[a.original_entity_id], profiles[b.original_entity_id]
            result = score_buildings(pa, pb, radius)
            if result is None:
                continue
            if self._record(
                ConflictType.PROPERTY_DUPLICATE_WITHIN_BATCH, "Building", pa, pb, result
            ):
                self._report.property_duplicates += 1
            self._match_units_within_batch(
                units_by_building.get(a.original_entity_id, []),
                units_by_building.get(b.original_entity_id, []),
                result,
            )

    def _match_units_against_production(
        self, staged_units: list[StagingPropertyUnit], building: Building, result: MatchResult
    ) -> None:
        if not staged_units:
            return
        stmt = select(PropertyUnit).where(PropertyUnit.building_id == building.id)
        existing = {u.unit_identifier.strip().casefold(): u for u in self._session.scalars(stmt)}
        for unit in staged_units:
            match = existing.get((unit.unit_identifier or "").strip().casefold())
            if match is None:
                continue
            self._report.pairs_compared += 1
            if self._record_unit(
                ConflictType.PROPERTY_DUPLICATE,
                _UnitRef(str(unit.id), EntitySource.STAGING, unit.unit_identifier or ""),
                _UnitRef(match.id, EntitySource.PRODUCTION, match.unit_identifier),
                result,
                building.building_code,
            ):
                self._report.property_duplicates += 1

    def _match_units_within_batch(
        self,
        units_a: list[StagingPropertyUnit],
        units_b: list[StagingPropertyUnit],
        result: MatchResult,
    ) -> None:
        by_code = {(u.unit_identifier or "").strip().casefold(): u for u in units_b}
        for unit in units_a:
            match = by_code.get((unit.unit_identifier or "").strip().casefold())
            if match is None or not unit.unit_identifier:
                continue
            self._report.pairs_compared += 1
            first, second = sorted((unit, match), key=lambda u: u.id)
            if self._record_unit(
                ConflictType.PROPERTY_DUPLICATE_WITHIN_BATCH,
                _UnitRef(str(first.id), EntitySource.STAGING, first.unit_identifier or ""),
                _UnitRef(str(second.id), EntitySource.STAGING, second.unit_identifier or ""),
                result,
                None,
            ):
                self._report.property_duplicates += 1

    # === Conflict creation ===

    def _record(
        self,
        conflict_type: ConflictType,
        entity_type: str,
        first: PersonProfile | BuildingProfile,
        second: PersonProfile | BuildingProfile,
        result: MatchResult,
    ) -> bool:
        return self._create_conflict(
            conflict_type=conflict_type,
            entity_type=entity_type,
            first=(first.entity_id, first.source, first.label, first.as_comparison()),
            second=(second.entity_id, second.source, second.label, second.as_comparison()),
            result=result,
        )

    def _record_unit(
        self,
        conflict_type: ConflictType,
        first: _UnitRef,
        second: _UnitRef,
        result: MatchResult,
        building_code: str | None,
    ) -> bool:
        criteria = dict(result.criteria)
        criteria["unitIdentifierMatch"] = True
        if building_code:
            criteria["productionBuildingCode"] = building_code
        return self._create_conflict(
            conflict_type=conflict_type,
            entity_type="PropertyUnit",
            first=(first.entity_id, first.source, first.label, {"unitIdentifier": first.code}),
            second=(second.entity_id, second.source, second.label, {"unitIdentifier": second.code}),
            result=MatchResult(
                score=result.score, criteria=criteria, spatial_only=result.spatial_only
            ),
        )

    def _create_conflict(
        self,
        conflict_type: ConflictType,
        entity_type: str,
        first: tuple[str, EntitySource, str, dict[str, object]],
        second: tuple[str, EntitySource, str, dict[str, object]],
        result: MatchResult,
    ) -> bool:
        """Persist a conflict for a scored pair.

        Returns:
            True if a conflict was created, False if the score is below the
            reportable threshold or the pair already has one.
        """
        confidence = confidence_for(result.score, self._thresholds, result.spatial_only)
        if confidence is None:
            return False
        first_id, first_source, first_label, first_data = first
        second_id, second_source, second_label, second_data = second
        key = _pair_key(first_source.value, first_id, second_source.value, second_id)
        if key in self._seen:
            return False
        self._seen.add(key)

        where = "in the same package" if second_source == EntitySource.STAGING else "in production"
        conflict = ConflictResolution(
            conflict_number=next_number(self._session, CONFLICT_PREFIX),
            conflict_type=conflict_type.value,
            entity_type=entity_type,
            first_entity_id=first_id,
            first_entity_source=first_source.value,
            first_entity_label=first_label,
            second_entity_id=second_id,
            second_entity_source=second_source.value,
            second_entity_label=second_label,
            import_package_id=self._package_id,
            similarity_score=result.score,
            confidence_level=confidence.value,
            description=(
                f"Possible duplicate {entity_type}: {first_label} matches {second_label} "
                f"{where} (score {result.score:g}, {confidence.value} confidence)"
            ),
            matching_criteria_json=json.dumps(result.criteria, ensure_ascii=False),
            data_comparison_json=json.dumps(
                {"first": first_data, "second": second_data}, ensure_ascii=False
            ),
            priority=priority_for(result.score, confidence).value,
            target_resolution_hours=self._settings.target_resolution_hours,
            is_auto_detected=True,
            detected_by="system",
        )
        self._session.add(conflict)
        self._session.flush()
        self._report.conflict_ids.append(conflict.id)
        return True


@dataclass(frozen=True)
class _UnitRef:
    entity_id: str
    source: EntitySource
    code: str

    @property
    def label(self) -> str:
        return f"Unit {self.code}"


def _unordered_pairs(items: Iterable) -> Iterator[tuple]:  # type: ignore[type-arg]
    ordered = list(items)
    for i, a in enumerate(ordered):
        for b in ordered[i + 1 :]:
            yield a, b


def detect_duplicates(
    session: Session, package_id: int, settings: PipelineSettings
) -> DetectionReport:
    """Run duplicate detection for a package; see :class:`DuplicateDetector`."""
    return DuplicateDetector(session, package_id, settings).run()
