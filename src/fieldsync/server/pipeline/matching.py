"""Similarity scoring for duplicate detection.

Every score here is symmetric: ``score(a, b) == score(b, a)``.

Person score (0-100):
- Same national id: 100, nothing else considered
- Same phone number: +30
- Arabic full-name similarity: up to +40
- Same year of birth: +15
- Same gender: +15

Building score (0-100):
- Same 17-digit building code: 100
- Same building type within the proximity radius: 20 + 80 * (1 - d / radius),
  never above Medium confidence since no identifying field agrees
"""

from __future__ import annotations

import math
import re
import unicodedata
from dataclasses import dataclass, field

from fieldsync.core.config import DuplicateDetectionSettings
from fieldsync.core.types import ConfidenceLevel, ConflictPriority, EntitySource

EARTH_RADIUS_METERS = 6_371_000

PHONE_WEIGHT = 30.0
NAME_WEIGHT = 40.0
YEAR_OF_BIRTH_WEIGHT = 15.0
GENDER_WEIGHT = 15.0

# Full-name similarity weights
FIRST_NAME_WEIGHT = 0.3
FATHER_NAME_WEIGHT = 0.3
FAMILY_NAME_WEIGHT = 0.4

ARABIC_NORMALIZATIONS = {
    "أ": "ا",
    "إ": "ا",
    "آ": "ا",
    "ٱ": "ا",  # Alef variants
    "ة": "ه",  # Taa marbuta
    "ى": "ي",  # Alef maksura
    "ؤ": "و",  # Waw with hamza
    "ئ": "ي",  # Yaa with hamza
}
TATWEEL = "ـ"

COUNTRY_CALLING_CODE = "963"
MIN_PHONE_DIGITS = 7

MALE_VALUES = frozenset({"m", "male", "ذكر"})
FEMALE_VALUES = frozenset({"f", "female", "أنثى", "انثى"})


def normalize_arabic(text: str | None) -> str:
    """Normalize Arabic text for comparison.

    Strips diacritics and tatweel, folds letter variants and collapses
    whitespace.
    """
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(
        ch for ch in decomposed if unicodedata.category(ch) not in ("Mn", "Me") and ch != TATWEEL
    )
    for original, replacement in ARABIC_NORMALIZATIONS.items():
        stripped = stripped.replace(original, replacement)
    return " ".join(stripped.split()).lower()


def edit_distance(s1: str, s2: str) -> int:
    """Levenshtein distance between two strings."""
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            cost = 0 if c1 == c2 else 1
            current.append(
                min(
                    previous[j] + 1,  # Deletion
                    current[j - 1] + 1,  # Insertion
                    previous[j - 1] + cost,  # Substitution
                )
            )
        previous = current
    return previous[-1]


def name_similarity(name1: str | None, name2: str | None) -> float:
    """Similarity of two names in percent, rounded to one decimal.

    Returns 0 when either name is empty after normalization.
    """
    norm1 = normalize_arabic(name1)
    norm2 = normalize_arabic(name2)
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 100.0
    distance = edit_distance(norm1, norm2)
    return round((1 - distance / max(len(norm1), len(norm2))) * 100, 1)


def full_name_similarity(a: PersonProfile, b: PersonProfile) -> float:
    """Weighted similarity of first, father and family names (0-100)."""
    score = (
        name_similarity(a.first_name, b.first_name) * FIRST_NAME_WEIGHT
        + name_similarity(a.father_name, b.father_name) * FATHER_NAME_WEIGHT
        + name_similarity(a.family_name, b.family_name) * FAMILY_NAME_WEIGHT
    )
    return round(score, 1)


def normalize_phone(value: str | None) -> str:
    """Reduce a phone number to its national significant digits."""
    if not value:
        return ""
    digits = re.sub(r"\D", "", value)
    if len(digits) > 9 and digits.startswith(COUNTRY_CALLING_CODE):
        digits = digits[len(COUNTRY_CALLING_CODE) :]
    if len(digits) > 9 and digits.startswith("0"):
        digits = digits[1:]
    return digits


def normalize_gender(value: str | None) -> str | None:
    if not value:
        return None
    folded = value.strip().lower()
    if folded in MALE_VALUES:
        return "M"
    if folded in FEMALE_VALUES:
        return "F"
    return None


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)
    a = math.sin(delta_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass(frozen=True)
class PersonProfile:
    """Comparable view of a staged or production person."""

    entity_id: str
    source: EntitySource
    first_name: str | None = None
    father_name: str | None = None
    family_name: str | None = None
    national_id: str | None = None
    year_of_birth: int | None = None
    gender: str | None = None
    phones: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        name = " ".join(p for p in (self.first_name, self.father_name, self.family_name) if p)
        return f"{name} (NID: {self.national_id or '-'})"

    @property
    def normalized_phones(self) -> set[str]:
        return {
            n for n in (normalize_phone(p) for p in self.phones) if len(n) >= MIN_PHONE_DIGITS
        }

    def as_comparison(self) -> dict[str, object]:
        return {
            "firstName": self.first_name,
            "fatherName": self.father_name,
            "familyName": self.family_name,
            "nationalId": self.national_id,
            "yearOfBirth": self.year_of_birth,
            "gender": self.gender,
            "phones": list(self.phones),
        }


@dataclass(frozen=True)
class BuildingProfile:
    """Comparable view of a staged or production building."""

    entity_id: str
    source: EntitySource
    building_code: str
    building_type: int | None = None
    latitude: float | None = None
    longitude: float | None = None

    @property
    def label(self) -> str:
        return f"Building {self.building_code}"

    def as_comparison(self) -> dict[str, object]:
        return {
            "buildingCode": self.building_code,
            "buildingType": self.building_type,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass(frozen=True)
class MatchResult:
    """Score of a candidate pair and the evidence behind it."""

    score: float
    criteria: dict[str, object] = field(default_factory=dict)
    spatial_only: bool = False


def score_persons(a: PersonProfile, b: PersonProfile) -> MatchResult:
    """Score two persons."""
    nid_a = (a.national_id or "").strip()
    nid_b = (b.national_id or "").strip()
    if nid_a and nid_a == nid_b:
        return MatchResult(score=100.0, criteria={"nationalIdMatch": True})

    criteria: dict[str, object] = {"nationalIdMatch": False}
    score = 0.0

    phone_match = bool(a.normalized_phones & b.normalized_phones)
    criteria["phoneMatch"] = phone_match
    if phone_match:
        score += PHONE_WEIGHT

    name_score = full_name_similarity(a, b)
    criteria["nameSimilarity"] = name_score
    score += name_score * NAME_WEIGHT / 100

    year_match = a.year_of_birth is not None and a.year_of_birth == b.year_of_birth
    criteria["yearOfBirthMatch"] = year_match
    if year_match:
        score += YEAR_OF_BIRTH_WEIGHT

    gender_a = normalize_gender(a.gender)
    gender_match = gender_a is not None and gender_a == normalize_gender(b.gender)
    criteria["genderMatch"] = gender_match
    if gender_match:
        score += GENDER_WEIGHT

    return MatchResult(score=round(min(score, 100.0), 1), criteria=criteria)


def score_buildings(
    a: BuildingProfile, b: BuildingProfile, proximity_meters: float
) -> MatchResult | None:
    """Score two buildings, or None if they are not comparable."""
    if a.building_code and a.building_code == b.building_code:
        return MatchResult(score=100.0, criteria={"buildingCodeMatch": True})

    if None in (a.latitude, a.longitude, b.latitude, b.longitude):
        return None
    if a.building_type is None or a.building_type != b.building_type:
        return None

    distance = haversine_meters(a.latitude, a.longitude, b.latitude, b.longitude)  # type: ignore[arg-type]
    if distance > proximity_meters:
        return None
    score = 80 * (1 - distance / proximity_meters) + 20
    return MatchResult(
        score=round(score, 1),
        criteria={
            "buildingCodeMatch": False,
            "distanceMeters": round(distance, 2),
            "sameBuildingType": True,
        },
        spatial_only=True,
    )


def confidence_for(
    score: float, settings: DuplicateDetectionSettings, spatial_only: bool = False
) -> ConfidenceLevel | None:
    """Confidence tier of a score, or None below the reportable threshold.

    High confidence needs an identifying field to agree, so a match found
    by proximity alone tops out at Medium.
    """
    if score >= settings.high_confidence_threshold:
        return ConfidenceLevel.MEDIUM if spatial_only else ConfidenceLevel.HIGH
    if score >= settings.medium_confidence_threshold:
        return ConfidenceLevel.MEDIUM
    if score >= settings.low_confidence_threshold:
        return ConfidenceLevel.LOW
    return None


def priority_for(score: float, confidence: ConfidenceLevel) -> ConflictPriority:
    """Initial review priority of a conflict."""
    if confidence == ConfidenceLevel.HIGH and score >= 90:
        return ConflictPriority.HIGH
    if confidence == ConfidenceLevel.MEDIUM or score >= 70:
        return ConflictPriority.NORMAL
    return ConflictPriority.LOW
