"""Reader for ``.uhc`` package containers.

A container is a SQLite database produced on the device. It holds a
``manifest`` key/value table, one table per entity kind keyed by a
package-local ``id`` column, and an optional ``attachments`` table of
evidence blobs.
"""

from __future__ import annotations

import hashlib
import json
import logging
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import DatabaseError

from fieldsync.core.types import EntityKind

logger = logging.getLogger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"
MANIFEST_TABLE = "manifest"
ATTACHMENTS_TABLE = "attachments"

# Container table per entity kind
ENTITY_TABLES: dict[EntityKind, str] = {
    EntityKind.BUILDING: "buildings",
    EntityKind.PROPERTY_UNIT: "property_units",
    EntityKind.HOUSEHOLD: "households",
    EntityKind.PERSON: "persons",
    EntityKind.RELATION: "person_property_relations",
    EntityKind.EVIDENCE: "evidences",
    EntityKind.CLAIM: "claims",
    EntityKind.SURVEY: "surveys",
}

# Manifest keys holding the declared record count per kind
COUNT_KEYS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.BUILDING: ("building_count",),
    EntityKind.PROPERTY_UNIT: ("property_unit_count",),
    EntityKind.HOUSEHOLD: ("household_count",),
    EntityKind.PERSON: ("person_count",),
    EntityKind.RELATION: ("relation_count",),
    EntityKind.EVIDENCE: ("evidence_count", "document_count"),
    EntityKind.CLAIM: ("claim_count",),
    EntityKind.SURVEY: ("survey_count",),
}


class PackageFormatError(Exception):
    """Raised when uploaded bytes are not a readable package container."""


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass
class PackageManifest:
    """Parsed manifest of a package container."""

    package_id: str
    schema_version: str = "1.0.0"
    created_utc: datetime | None = None
    exported_date_utc: datetime | None = None
    device_id: str | None = None
    app_version: str | None = None
    exported_by_user_id: str | None = None
    checksum: str | None = None
    digital_signature: str | None = None
    form_schema_version: str | None = None
    total_attachment_size_bytes: int = 0
    declared_counts: dict[EntityKind, int] = field(default_factory=dict)
    vocab_versions: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: dict[str, str | None]) -> PackageManifest:
        """Build a manifest from raw key/value rows.

        Raises:
            PackageFormatError: If ``package_id`` is missing or
                ``vocab_versions`` is not a JSON object.
        """
        package_id = (entries.get("package_id") or "").strip()
        if not package_id:
            raise PackageFormatError("Manifest has no package_id")

        vocab_raw = entries.get("vocab_versions") or "{}"
        try:
            vocab_versions = json.loads(vocab_raw)
        except json.JSONDecodeError as e:
            raise PackageFormatError(f"Manifest vocab_versions is not valid JSON: {e}") from e
        if not isinstance(vocab_versions, dict):
            raise PackageFormatError("Manifest vocab_versions must be a JSON object")

        declared: dict[EntityKind, int] = {}
        for kind, keys in COUNT_KEYS.items():
            for key in keys:
                count = _parse_int(entries.get(key))
                if count is not None:
                    declared[kind] = count
                    break

        return cls(
            package_id=package_id,
            schema_version=entries.get("schema_version") or "1.0.0",
            created_utc=_parse_timestamp(entries.get("created_utc")),
            exported_date_utc=_parse_timestamp(entries.get("exported_date_utc")),
            device_id=entries.get("device_id"),
            app_version=entries.get("app_version"),
            exported_by_user_id=entries.get("exported_by_user_id"),
            checksum=(entries.get("checksum") or "").strip().lower() or None,
            digital_signature=entries.get("digital_signature") or None,
            form_schema_version=entries.get("form_schema_version"),
            total_attachment_size_bytes=_parse_int(entries.get("total_attachment_size_bytes")) or 0,
            declared_counts=declared,
            vocab_versions={str(k): str(v) for k, v in vocab_versions.items()},
        )


def _render_value(value: Any) -> str:
    """Render a cell for the content checksum."""
    if value is None:
        return "\0"
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, float):
        return repr(value)
    return str(value)


class PackageContainer:
    """Read-only view over an opened container file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._engine = create_engine(f"sqlite:///{self._path}")
        try:
            self._tables = set(inspect(self._engine).get_table_names())
        except DatabaseError as e:
            self._engine.dispose()
            raise PackageFormatError(f"Package is not a readable SQLite container: {e}") from e
        if MANIFEST_TABLE not in self._tables:
            self._engine.dispose()
            raise PackageFormatError("Package has no manifest table")
        self.manifest = PackageManifest.from_entries(self._read_manifest())

    def close(self) -> None:
        self._engine.dispose()

    def _read_manifest(self) -> dict[str, str | None]:
        with self._engine.connect() as conn:
            result = conn.execute(text(f"SELECT key, value FROM {MANIFEST_TABLE}"))
            return {str(key): (None if value is None else str(value)) for key, value in result}

    @property
    def tables(self) -> set[str]:
        return set(self._tables)

    def has_table(self, name: str) -> bool:
        return name in self._tables

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Return every row of a table, ordered by rowid."""
        if table not in self._tables:
            return []
        with self._engine.connect() as conn:
            result = conn.execute(text(f'SELECT * FROM "{table}" ORDER BY rowid'))
            return [dict(row._mapping) for row in result]

    def entity_rows(self, kind: EntityKind) -> list[dict[str, Any]]:
        return self.rows(ENTITY_TABLES[kind])

    def count(self, table: str) -> int:
        if table not in self._tables:
            return 0
        with self._engine.connect() as conn:
            return int(conn.execute(text(f'SELECT COUNT(*) FROM "{table}"')).scalar_one())

    def attachments(self) -> Iterator[tuple[str, bytes]]:
        """Yield ``(evidence_id, data)`` pairs from the attachments table."""
        for row in self.rows(ATTACHMENTS_TABLE):
            data = row.get("data")
            if row.get("evidence_id") is None or data is None:
                continue
            yield str(row["evidence_id"]), bytes(data)

    def content_checksum(self) -> str:
        """Recompute the checksum the device stored in the manifest.

        Covers every data table (sorted by name) except the manifest, the
        attachments and SQLite internals. Each table contributes a
        ``TABLE:{name}`` line followed by one line per row, ordered by rowid,
        made of tab-joined ``column=value`` pairs sorted by column name.
        """
        hasher = hashlib.sha256()
        tables = sorted(
            t
            for t in self._tables
            if t not in (MANIFEST_TABLE, ATTACHMENTS_TABLE) and not t.startswith("sqlite_")
        )
        for table in tables:
            hasher.update(f"TABLE:{table}\n".encode())
            for row in self.rows(table):
                line = "\t".join(f"{col}={_render_value(row[col])}" for col in sorted(row))
                hasher.update(f"{line}\n".encode())
        return hasher.hexdigest()


@contextmanager
def open_container(data: bytes) -> Iterator[PackageContainer]:
    """Open package bytes as a container for the duration of the block.

    Raises:
        PackageFormatError: If the bytes are not a SQLite container with a
            usable manifest.
    """
    if not data.startswith(SQLITE_HEADER):
        raise PackageFormatError("Package is not a SQLite container")

    with tempfile.TemporaryDirectory(prefix="fieldsync-") as tmp:
        path = Path(tmp) / "package.uhc"
        path.write_bytes(data)
        container = PackageContainer(path)
        try:
            yield container
        finally:
            container.close()
