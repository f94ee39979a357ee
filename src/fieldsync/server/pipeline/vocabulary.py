"""Vocabulary compatibility between a package and the server.

MAJOR differences block the package, MINOR differences are reported as
warnings and PATCH differences are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from fieldsync.core.versions import SemVer, parse_version

if TYPE_CHECKING:
    from fieldsync.server.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VocabularyIssue:
    """One reported difference between package and server versions.

    The message names the vocabulary and the server version only, so two
    packages that are incompatible in the same way report the same text
    whatever their own version is. The package version is kept alongside.
    """

    name: str
    message: str
    blocking: bool
    package_version: str
    server_version: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass
class VocabularyReport:
    """Result of comparing version maps."""

    issues: list[VocabularyIssue] = field(default_factory=list)

    @property
    def is_compatible(self) -> bool:
        return not any(issue.blocking for issue in self.issues)

    @property
    def messages(self) -> list[str]:
        return [issue.message for issue in self.issues]

    @property
    def blocking_messages(self) -> list[str]:
        return [issue.message for issue in self.issues if issue.blocking]


def check_vocabulary_compatibility(
    package_versions: dict[str, str],
    server_versions: dict[str, str],
) -> VocabularyReport:
    """Compare the package's vocabulary versions against the server's.

    Issues are ordered by vocabulary name, so the report depends only on the
    two maps and never on upload order.

    Args:
        package_versions: Vocabulary name -> version recorded by the device.
        server_versions: Vocabulary name -> current server version.

    Returns:
        VocabularyReport with one issue per MAJOR/MINOR difference or
        unknown vocabulary.
    """
    issues: list[VocabularyIssue] = []
    for name in sorted(package_versions):
        package_version = parse_version(package_versions[name])
        if name not in server_versions:
            issues.append(
                VocabularyIssue(
                    name=name,
                    message=f"{name}: unknown vocabulary, not known to the server",
                    blocking=False,
                    package_version=str(package_version),
                )
            )
            continue

        server_version = parse_version(server_versions[name])
        if package_version.major != server_version.major:
            issues.append(
                VocabularyIssue(
                    name=name,
                    message=f"{name}: MAJOR version mismatch (server v{server_version})",
                    blocking=True,
                    package_version=str(package_version),
                    server_version=str(server_version),
                )
            )
        elif package_version.minor != server_version.minor:
            issues.append(
                VocabularyIssue(
                    name=name,
                    message=f"{name}: minor version difference (server v{server_version})",
                    blocking=False,
                    package_version=str(package_version),
                    server_version=str(server_version),
                )
            )
    return VocabularyReport(issues=issues)


def _export_values(entry: dict[str, Any]) -> list[dict[str, Any]]:
    values = []
    for value in entry.get("values") or []:
        values.append(
            {
                "code": int(value["code"]),
                "labelArabic": value.get("labelArabic") or value.get("labelAr"),
                "labelEnglish": value.get("labelEnglish") or value.get("labelEn"),
                "order": value.get("displayOrder", value.get("order")),
            }
        )
    return values


def import_vocabulary_export(db: Database, payload: dict[str, Any]) -> list[str]:
    """Upsert vocabularies from an export document.

    The document is ``{"vocabularies": [...]}``, each entry carrying
    ``vocabularyName``, display names, ``category``, flags and ``values``.
    An entry without a version creates 1.0.0, or bumps the MINOR version of
    an existing vocabulary.

    Returns:
        One message per vocabulary created or updated.

    Raises:
        ValueError: If the document has no vocabulary list or an entry has
            no name or an invalid code.
    """
    entries = payload.get("vocabularies")
    if not isinstance(entries, list):
        raise ValueError("Export document has no 'vocabularies' list")

    current = db.vocabulary_versions()
    messages = []
    for entry in entries:
        name = entry.get("vocabularyName") or entry.get("name")
        if not name:
            raise ValueError("Vocabulary entry without a name")
        try:
            values = _export_values(entry)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"{name}: invalid value code") from e

        previous = current.get(name)
        if entry.get("version"):
            version = str(parse_version(entry["version"]))
        elif previous is None:
            version = "1.0.0"
        else:
            old = parse_version(previous)
            version = str(SemVer(old.major, old.minor + 1, 0))

        db.upsert_vocabulary(
            name=name,
            version=version,
            values=values,
            display_name_arabic=entry.get("displayNameArabic"),
            display_name_english=entry.get("displayNameEnglish"),
            category=entry.get("category"),
            is_system=bool(entry.get("isSystemVocabulary", entry.get("isSystem", False))),
            allow_custom_values=bool(entry.get("allowCustomValues", False)),
        )
        if previous is None:
            messages.append(f"Created vocabulary '{name}' v{version}")
        else:
            messages.append(f"Updated vocabulary '{name}' from v{previous} to v{version}")

    logger.info("Vocabulary import completed: %d vocabularies", len(messages))
    return messages
