"""Semantic version helpers.

Versions coming from devices are not always well formed, so parsing is
tolerant: missing parts default to 0 and non-numeric parts read as 0.
"""

from __future__ import annotations

from typing import NamedTuple


class SemVer(NamedTuple):
    """A parsed MAJOR.MINOR.PATCH version."""

    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def _part(value: str) -> int:
    digits = ""
    for ch in value.strip():
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else 0


def parse_version(value: str | None) -> SemVer:
    """Parse a version string.

    Args:
        value: Version text such as "2.1.0", "2.1" or "v3".

    Returns:
        Parsed version; unparseable input yields 0.0.0.
    """
    if not value:
        return SemVer(0, 0, 0)
    text = value.strip().lstrip("vV")
    parts = text.split(".")
    numbers = [_part(p) for p in parts[:3]]
    while len(numbers) < 3:
        numbers.append(0)
    return SemVer(*numbers)


def normalize_version(value: str | None) -> str:
    """Return the canonical "MAJOR.MINOR.PATCH" form of a version."""
    return str(parse_version(value))
