"""Validation levels for staged package data.

Each level is a plain function that scans the staged batch, annotates
records through :class:`Findings` and returns how many records it checked.
Levels never raise for bad data; they record errors (blocking) or warnings
(non-blocking) on the records themselves.
"""

from __future__ import annotations

import re
from collections import Counter, defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from fieldsync.core.types import EntityKind
from fieldsync.server.models import (
    StagingBuilding,
    StagingClaim,
    StagingEvidence,
    StagingHousehold,
    StagingMixin,
    StagingPerson,
    StagingPropertyUnit,
    StagingRelation,
    StagingSurvey,
)

# Operating-country bounding box
LATITUDE_RANGE = (32.0, 37.5)
LONGITUDE_RANGE = (35.5, 42.5)

GEOMETRY_KEYWORDS = ("MULTIPOLYGON", "POLYGON", "POINT")

# Administrative code parts and their digit lengths
CODE_LENGTHS: tuple[tuple[str, int], ...] = (
    ("governorate_code", 2),
    ("district_code", 2),
    ("sub_district_code", 2),
    ("community_code", 3),
    ("neighborhood_code", 3),
    ("building_number", 5),
)
BUILDING_CODE_LENGTH = 17

NATIONAL_ID_PATTERN = re.compile(r"^\d{11}$")
MIN_BIRTH_YEAR = 1900
KNOWN_GENDERS = frozenset({"m", "male", "f", "female", "ذكر", "أنثى", "انثى"})

# Permitted initial state of an imported claim
CLAIM_INITIAL_STAGE = "DraftPendingSubmission"
CLAIM_INITIAL_STATUS = "Draft"
CLAIM_SOURCE_FIELD_COLLECTION = 1

OWNER_RELATION = "owner"

# (kind, attribute) -> vocabulary name
VOCABULARY_FIELDS: tuple[tuple[EntityKind, str, str], ...] = (
    (EntityKind.BUILDING, "building_type", "building_type"),
    (EntityKind.BUILDING, "building_status", "building_status"),
    (EntityKind.BUILDING, "damage_level", "damage_level"),
    (EntityKind.PROPERTY_UNIT, "unit_type", "property_unit_type"),
    (EntityKind.PROPERTY_UNIT, "unit_status", "property_unit_status"),
    (EntityKind.CLAIM, "claim_source", "claim_source"),
    (EntityKind.CLAIM, "case_priority", "case_priority"),
)


@dataclass
class StagingBatch:
    """All staged records of one package, plus reference data."""

    package_id: int
    records: dict[EntityKind, list[StagingMixin]]
    vocabulary_codes: dict[str, set[int]] = field(default_factory=dict)

    def of(self, kind: EntityKind) -> list[StagingMixin]:
        return self.records.get(kind, [])

    def ids(self, kind: EntityKind) -> set[str]:
        return {r.original_entity_id for r in self.of(kind)}

    @property
    def buildings(self) -> list[StagingBuilding]:
        return self.of(EntityKind.BUILDING)  # type: ignore[return-value]

    @property
    def units(self) -> list[StagingPropertyUnit]:
        return self.of(EntityKind.PROPERTY_UNIT)  # type: ignore[return-value]

    @property
    def persons(self) -> list[StagingPerson]:
        return self.of(EntityKind.PERSON)  # type: ignore[return-value]

    @property
    def households(self) -> list[StagingHousehold]:
        return self.of(EntityKind.HOUSEHOLD)  # type: ignore[return-value]

    @property
    def relations(self) -> list[StagingRelation]:
        return self.of(EntityKind.RELATION)  # type: ignore[return-value]

    @property
    def evidences(self) -> list[StagingEvidence]:
        return self.of(EntityKind.EVIDENCE)  # type: ignore[return-value]

    @property
    def claims(self) -> list[StagingClaim]:
        return self.of(EntityKind.CLAIM)  # type: ignore[return-value]

    @property
    def surveys(self) -> list[StagingSurvey]:
        return self.of(EntityKind.SURVEY)  # type: ignore[return-value]


@dataclass
class Findings:
    """Counts what one level recorded while annotating records."""

    errors: int = 0
    warnings: int = 0

    def error(self, record: StagingMixin, message: str) -> None:
        record.add_error(message)
        self.errors += 1

    def warning(self, record: StagingMixin, message: str) -> None:
        record.add_warning(message)
        self.warnings += 1


@dataclass(frozen=True)
class Validator:
    """A named validation level."""

    level: int
    name: str
    check: Callable[[StagingBatch, Findings], int]


def _blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _label(record: StagingMixin) -> str:
    return f"{record.KIND.value} {record.original_entity_id}"


# === Level 1: data consistency ===


def check_data_consistency(batch: StagingBatch, findings: Findings) -> int:
    """Required fields, code formats and per-field bounds."""
    current_year = datetime.now(UTC).year

    for b in batch.buildings:
        for attr, length in CODE_LENGTHS:
            value = getattr(b, attr)
            if _blank(value):
                findings.error(b, f"{attr} is required")
            elif not (value.isdigit() and len(value) == length):
                findings.error(b, f"{attr} must be {length} digits (got {value!r})")
        if b.building_type is None:
            findings.warning(b, "building_type is missing")
        for attr in (
            "number_of_property_units",
            "number_of_apartments",
            "number_of_shops",
            "number_of_floors",
        ):
            value = getattr(b, attr)
            if value is not None and value < 0:
                findings.error(b, f"{attr} cannot be negative")

    for u in batch.units:
        if _blank(u.unit_identifier):
            findings.error(u, "unit_identifier is required")
        if _blank(u.original_building_id):
            findings.error(u, "building_id is required")
        if u.area_square_meters is not None and u.area_square_meters <= 0:
            findings.warning(u, "area_square_meters should be positive")
        if u.floor_number is not None and not -5 <= u.floor_number <= 200:
            findings.warning(u, f"floor_number {u.floor_number} looks implausible")

    for p in batch.persons:
        if _blank(p.first_name_arabic):
            findings.error(p, "first_name_arabic is required")
        if _blank(p.family_name_arabic):
            findings.error(p, "family_name_arabic is required")
        if _blank(p.national_id):
            findings.warning(p, "national_id is missing")
        elif not NATIONAL_ID_PATTERN.match(p.national_id):
            findings.warning(p, f"national_id {p.national_id!r} is not an 11-digit number")
        if p.year_of_birth is not None and not MIN_BIRTH_YEAR <= p.year_of_birth <= current_year:
            findings.error(p, f"year_of_birth {p.year_of_birth} is out of range")
        if not _blank(p.gender) and p.gender.strip().lower() not in KNOWN_GENDERS:
            findings.warning(p, f"gender {p.gender!r} is not recognized")

    for h in batch.households:
        if _blank(h.original_property_unit_id):
            findings.error(h, "property_unit_id is required")
        for attr in ("household_size", "male_count", "female_count"):
            value = getattr(h, attr)
            if value is not None and value < 0:
                findings.error(h, f"{attr} cannot be negative")

    for r in batch.relations:
        if _blank(r.original_person_id):
            findings.error(r, "person_id is required")
        if _blank(r.original_property_unit_id):
            findings.error(r, "property_unit_id is required")
        if _blank(r.relation_type):
            findings.error(r, "relation_type is required")
        if r.ownership_share is not None and not 0 <= r.ownership_share <= 100:
            findings.error(r, f"ownership_share {r.ownership_share} must be between 0 and 100")

    for e in batch.evidences:
        if _blank(e.evidence_type):
            findings.warning(e, "evidence_type is missing")
        if e.file_size_bytes is not None and e.file_size_bytes < 0:
            findings.error(e, "file_size_bytes cannot be negative")

    for c in batch.claims:
        if _blank(c.original_property_unit_id):
            findings.error(c, "property_unit_id is required")
        if _blank(c.claim_type):
            findings.warning(c, "claim_type is missing")

    for s in batch.surveys:
        if _blank(s.original_building_id):
            findings.error(s, "building_id is required")
        if not _blank(s.survey_date):
            try:
                date.fromisoformat(s.survey_date[:10])
            except ValueError:
                findings.warning(s, f"survey_date {s.survey_date!r} is not an ISO date")

    return sum(len(records) for records in batch.records.values())


# === Level 2: cross-entity relations ===


def check_cross_entity_relations(batch: StagingBatch, findings: Findings) -> int:
    """Package-local references must resolve inside the same package."""
    for kind, records in batch.records.items():
        counts = Counter(r.original_entity_id for r in records)
        for record in records:
            if record.original_entity_id and counts[record.original_entity_id] > 1:
                findings.error(
                    record, f"duplicate {kind.value} id {record.original_entity_id} in package"
                )

    buildings = batch.ids(EntityKind.BUILDING)
    units = batch.ids(EntityKind.PROPERTY_UNIT)
    persons = batch.ids(EntityKind.PERSON)
    households = batch.ids(EntityKind.HOUSEHOLD)
    relations = batch.ids(EntityKind.RELATION)
    claims = batch.ids(EntityKind.CLAIM)

    def require(record: StagingMixin, ref: str | None, known: set[str], what: str) -> None:
        if not _blank(ref) and ref not in known:
            findings.error(record, f"{_label(record)} references unknown {what} {ref}")

    for u in batch.units:
        require(u, u.original_building_id, buildings, "building")
    for p in batch.persons:
        require(p, p.original_household_id, households, "household")
    for h in batch.households:
        require(h, h.original_property_unit_id, units, "property unit")
    for r in batch.relations:
        require(r, r.original_person_id, persons, "person")
        require(r, r.original_property_unit_id, units, "property unit")
    for e in batch.evidences:
        require(e, e.original_person_id, persons, "person")
        require(e, e.original_relation_id, relations, "relation")
        require(e, e.original_claim_id, claims, "claim")
    for c in batch.claims:
        require(c, c.original_property_unit_id, units, "property unit")
        require(c, c.original_primary_claimant_id, persons, "person")
    for s in batch.surveys:
        require(s, s.original_building_id, buildings, "building")
        require(s, s.original_property_unit_id, units, "property unit")

    return sum(len(records) for records in batch.records.values())


# === Level 3: ownership evidence ===


def check_ownership_evidence(batch: StagingBatch, findings: Findings) -> int:
    """Owner relations should carry evidence; evidence needs a file."""
    evidenced = {e.original_relation_id for e in batch.evidences if e.original_relation_id}
    for r in batch.relations:
        is_owner = (r.relation_type or "").strip().lower() == OWNER_RELATION
        if is_owner and r.original_entity_id not in evidenced:
            findings.warning(r, "Owner relation has no supporting evidence")
    for e in batch.evidences:
        if _blank(e.file_path):
            findings.warning(e, "evidence has no file reference")
    return len(batch.relations) + len(batch.evidences)


# === Level 4: household structure ===


def check_household_structure(batch: StagingBatch, findings: Findings) -> int:
    """Declared sizes should match members; the head must be in the batch."""
    members: dict[str, int] = defaultdict(int)
    for p in batch.persons:
        if p.original_household_id:
            members[p.original_household_id] += 1
    persons = batch.ids(EntityKind.PERSON)

    for h in batch.households:
        size = h.household_size
        counted = members.get(h.original_entity_id, 0)
        if size is not None and counted != size:
            findings.warning(h, f"household_size {size} but {counted} members in package")
        gender_total = (h.male_count or 0) + (h.female_count or 0)
        if size is not None and gender_total > 0 and gender_total != size:
            findings.warning(
                h, f"male_count + female_count = {gender_total} but household_size is {size}"
            )
        head = h.original_head_person_id
        if not _blank(head) and head not in persons:
            findings.warning(h, f"head of household {head} is not in the package")
    return len(batch.households)


# === Level 5: spatial geometry ===


def check_spatial_geometry(batch: StagingBatch, findings: Findings) -> int:
    """Coordinates inside the bounding box, given as a pair; known WKT."""
    for b in batch.buildings:
        lat, lng = b.latitude, b.longitude
        if (lat is None) != (lng is None):
            findings.error(b, "latitude and longitude must be supplied together")
        elif lat is not None and lng is not None:
            if not LATITUDE_RANGE[0] <= lat <= LATITUDE_RANGE[1]:
                findings.error(b, f"latitude {lat} is outside {LATITUDE_RANGE[0]}-{LATITUDE_RANGE[1]}")
            if not LONGITUDE_RANGE[0] <= lng <= LONGITUDE_RANGE[1]:
                findings.error(
                    b, f"longitude {lng} is outside {LONGITUDE_RANGE[0]}-{LONGITUDE_RANGE[1]}"
                )
        wkt = (b.building_geometry_wkt or "").strip().upper()
        if wkt and not wkt.startswith(GEOMETRY_KEYWORDS):
            findings.warning(b, "building_geometry_wkt is not a POINT, POLYGON or MULTIPOLYGON")
    return len(batch.buildings)


# === Level 6: claim lifecycle ===


def check_claim_lifecycle(batch: StagingBatch, findings: Findings) -> int:
    """Imported claims must arrive in the initial submitted-by-import state."""
    for c in batch.claims:
        if c.lifecycle_stage != CLAIM_INITIAL_STAGE:
            findings.warning(
                c, f"lifecycle_stage {c.lifecycle_stage!r} will be set to {CLAIM_INITIAL_STAGE}"
            )
        if c.claim_status != CLAIM_INITIAL_STATUS:
            findings.warning(c, f"status {c.claim_status!r} will be set to {CLAIM_INITIAL_STATUS}")
        if c.claim_source != CLAIM_SOURCE_FIELD_COLLECTION:
            findings.warning(c, f"claim_source {c.claim_source!r} will be set to field collection")
    return len(batch.claims)


# === Level 7: vocabulary membership ===


def check_vocabulary_membership(batch: StagingBatch, findings: Findings) -> int:
    """Coded values should exist in the active vocabularies."""
    checked = 0
    for kind, attr, vocabulary in VOCABULARY_FIELDS:
        codes = batch.vocabulary_codes.get(vocabulary)
        if codes is None:
            continue
        for record in batch.of(kind):
            checked += 1
            value = getattr(record, attr)
            if value is not None and value not in codes:
                findings.warning(record, f"{attr} code {value} is not in vocabulary {vocabulary}")
    return checked


# === Level 8: identifier uniqueness ===


def check_identifier_uniqueness(batch: StagingBatch, findings: Findings) -> int:
    """Composite building codes and unit codes must be unique."""
    composites = Counter(b.composite_code for b in batch.buildings)
    for b in batch.buildings:
        code = b.composite_code
        if len(code) != BUILDING_CODE_LENGTH or not code.isdigit():
            findings.error(b, f"building code {code!r} must be {BUILDING_CODE_LENGTH} digits")
            continue
        if not _blank(b.building_code) and b.building_code != code:
            findings.warning(b, f"building_id {b.building_code} differs from composite code {code}")
        if composites[code] > 1:
            findings.error(b, f"building code {code} appears {composites[code]} times in package")

    unit_codes: Counter[tuple[str, str]] = Counter(
        (u.original_building_id or "", u.unit_identifier.strip().casefold())
        for u in batch.units
        if not _blank(u.unit_identifier)
    )
    for u in batch.units:
        if _blank(u.unit_identifier):
            continue
        key = (u.original_building_id or "", u.unit_identifier.strip().casefold())
        if unit_codes[key] > 1:
            findings.error(
                u, f"unit_identifier {u.unit_identifier} is duplicated in building {key[0]}"
            )
    return len(batch.buildings) + len(batch.units)


VALIDATORS: tuple[Validator, ...] = (
    Validator(1, "DataConsistency", check_data_consistency),
    Validator(2, "CrossEntityRelation", check_cross_entity_relations),
    Validator(3, "OwnershipEvidence", check_ownership_evidence),
    Validator(4, "HouseholdStructure", check_household_structure),
    Validator(5, "SpatialGeometry", check_spatial_geometry),
    Validator(6, "ClaimLifecycle", check_claim_lifecycle),
    Validator(7, "VocabularyVersion", check_vocabulary_membership),
    Validator(8, "BuildingUnitCode", check_identifier_uniqueness),
)
