"""Shared fixtures: databases, pipelines and ``.uhc`` package files.

Package files are real SQLite containers written with the standard sqlite3
module. Their manifest checksum is computed here, independently of the
server code, with the same rules the device uses.
"""

from __future__ import annotations

import copy
import hashlib
import json
import os
import sqlite3
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

# The server module configures logging and opens its default database on
# import; keep those files out of the working tree.
_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="fieldsync-tests-"))
os.environ.setdefault("FIELDSYNC_DB_PATH", str(_RUNTIME_DIR / "fieldsync.db"))
os.environ.setdefault("FIELDSYNC_LOG_PATH", str(_RUNTIME_DIR / "fieldsync-server.log"))
os.environ.setdefault("FIELDSYNC_STORAGE_PATH", str(_RUNTIME_DIR / "packages"))

from fieldsync.core.config import PipelineSettings  # noqa: E402
from fieldsync.core.crypto import sign_checksum  # noqa: E402
from fieldsync.server.database import Database  # noqa: E402
from fieldsync.server.pipeline.orchestrator import ImportPipeline  # noqa: E402
from fieldsync.server.storage import LocalFSStorage  # noqa: E402

BUILDING_CODE = "01020300400500001"

SAMPLE_TABLES: dict[str, list[dict[str, Any]]] = {
    "buildings": [
        {
            "id": "b1",
            "building_id": BUILDING_CODE,
            "governorate_code": "01",
            "district_code": "02",
            "sub_district_code": "03",
            "community_code": "004",
            "neighborhood_code": "005",
            "building_number": "00001",
            "building_type": 1,
            "building_status": 1,
            "number_of_property_units": 1,
            "number_of_floors": 2,
            "latitude": 33.5138,
            "longitude": 36.2765,
            "address": "Al-Midan street",
        }
    ],
    "property_units": [
        {
            "id": "u1",
            "building_id": "b1",
            "unit_identifier": "A1",
            "unit_type": 1,
            "status": 1,
            "floor_number": 1,
            "area_square_meters": 120.5,
        }
    ],
    "households": [
        {
            "id": "h1",
            "property_unit_id": "u1",
            "head_of_household_person_id": "p1",
            "head_of_household_name": "محمد أحمد الخطيب",
            "household_size": 1,
            "male_count": 1,
            "female_count": 0,
        }
    ],
    "persons": [
        {
            "id": "p1",
            "first_name_arabic": "محمد",
            "father_name_arabic": "أحمد",
            "family_name_arabic": "الخطيب",
            "national_id": "12345678901",
            "year_of_birth": 1980,
            "gender": "M",
            "mobile_number": "0912345678",
            "household_id": "h1",
        }
    ],
    "person_property_relations": [
        {
            "id": "r1",
            "person_id": "p1",
            "property_unit_id": "u1",
            "relation_type": "owner",
            "ownership_share": 100.0,
        }
    ],
    "evidences": [
        {
            "id": "e1",
            "person_id": "p1",
            "person_property_relation_id": "r1",
            "evidence_type": "deed",
            "original_file_name": "deed.pdf",
            "file_path": "evidence/e1.pdf",
            "file_size_bytes": 2048,
            "mime_type": "application/pdf",
        }
    ],
    "claims": [
        {
            "id": "c1",
            "property_unit_id": "u1",
            "primary_claimant_id": "p1",
            "claim_type": "ownership",
            "claim_source": 1,
            "priority": 1,
            "lifecycle_stage": "DraftPendingSubmission",
            "status": "Draft",
        }
    ],
    "surveys": [
        {
            "id": "s1",
            "building_id": "b1",
            "property_unit_id": "u1",
            "survey_date": "2026-03-01",
            "reference_code": "SRV-0001",
            "type": "field",
            "source": "mobile",
            "status": "Finalized",
        }
    ],
}

COUNT_KEYS = {
    "buildings": "building_count",
    "property_units": "property_unit_count",
    "households": "household_count",
    "persons": "person_count",
    "person_property_relations": "relation_count",
    "evidences": "evidence_count",
    "claims": "claim_count",
    "surveys": "survey_count",
}


def sample_tables() -> dict[str, list[dict[str, Any]]]:
    """A fresh copy of a complete, valid package: one of every entity."""
    return copy.deepcopy(SAMPLE_TABLES)


def person_only_tables(**overrides: Any) -> dict[str, list[dict[str, Any]]]:
    """A package holding a single person with no household."""
    person = {
        "id": "p1",
        "first_name_arabic": "محمد",
        "father_name_arabic": "أحمد",
        "family_name_arabic": "الخطيب",
        "national_id": "12345678901",
        "year_of_birth": 1980,
        "gender": "M",
    }
    person.update(overrides)
    return {"persons": [person]}


def _render(value: Any) -> str:
    if value is None:
        return "\0"
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, float):
        return repr(value)
    return str(value)


def content_checksum(conn: sqlite3.Connection) -> str:
    """SHA-256 over every data table, the way devices compute it."""
    names = sorted(
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        if row[0] not in ("manifest", "attachments") and not row[0].startswith("sqlite_")
    )
    hasher = hashlib.sha256()
    for name in names:
        hasher.update(f"TABLE:{name}\n".encode())
        cursor = conn.execute(f'SELECT * FROM "{name}" ORDER BY rowid')
        columns = [d[0] for d in cursor.description]
        for values in cursor:
            row = dict(zip(columns, values, strict=True))
            line = "\t".join(f"{col}={_render(row[col])}" for col in sorted(row))
            hasher.update(f"{line}\n".encode())
    return hasher.hexdigest()


def write_package(
    path: Path,
    tables: dict[str, list[dict[str, Any]]],
    package_id: str = "dev-pkg-0001",
    schema_version: str = "1.0.0",
    vocab_versions: dict[str, str] | None = None,
    manifest: dict[str, Any] | None = None,
    checksum: str | None = None,
    counts: dict[str, int] | None = None,
    attachments: dict[str, bytes] | None = None,
    private_key: bytes | None = None,
) -> bytes:
    """Write a ``.uhc`` container and return its bytes.

    Args:
        path: Where to write the file.
        tables: Container table name -> rows.
        package_id: Manifest package id.
        schema_version: Manifest schema version.
        vocab_versions: Vocabulary versions recorded by the device.
        manifest: Extra or overriding manifest entries.
        checksum: Manifest checksum; computed from the tables when None.
        counts: Manifest count key -> declared count, overriding the real
            table sizes.
        attachments: Evidence id -> blob for the attachments table.
        private_key: Raw Ed25519 key used to sign the checksum.
    """
    if path.exists():
        path.unlink()
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE manifest (key TEXT PRIMARY KEY, value TEXT)")
        for table, rows in tables.items():
            columns = sorted({column for row in rows for column in row}) or ["id"]
            column_sql = ", ".join(f'"{c}"' for c in columns)
            conn.execute(f'CREATE TABLE "{table}" ({column_sql})')
            for row in rows:
                placeholders = ", ".join("?" for _ in columns)
                conn.execute(
                    f'INSERT INTO "{table}" ({column_sql}) VALUES ({placeholders})',
                    [row.get(c) for c in columns],
                )
        if attachments:
            conn.execute("CREATE TABLE attachments (evidence_id TEXT, data BLOB)")
            conn.executemany(
                "INSERT INTO attachments (evidence_id, data) VALUES (?, ?)",
                list(attachments.items()),
            )
        conn.commit()

        entries: dict[str, Any] = {
            "package_id": package_id,
            "schema_version": schema_version,
            "created_utc": "2026-03-01T08:00:00Z",
            "exported_date_utc": "2026-03-01T17:30:00Z",
            "device_id": "tablet-017",
            "app_version": "2.3.1",
            "exported_by_user_id": "collector-7",
            "vocab_versions": json.dumps(vocab_versions or {}),
        }
        for table, rows in tables.items():
            if table in COUNT_KEYS:
                entries[COUNT_KEYS[table]] = len(rows)
        entries.update(counts or {})
        entries["checksum"] = checksum if checksum is not None else content_checksum(conn)
        if private_key is not None:
            entries["digital_signature"] = sign_checksum(entries["checksum"], private_key)
        entries.update(manifest or {})
        conn.executemany(
            "INSERT INTO manifest (key, value) VALUES (?, ?)",
            [(k, None if v is None else str(v)) for k, v in entries.items()],
        )
        conn.commit()
    finally:
        conn.close()
    return path.read_bytes()


PackageFactory = Callable[..., bytes]


@pytest.fixture
def make_package(tmp_path: Path) -> PackageFactory:
    """Build package files under tmp_path; defaults to the sample tables."""
    counter = iter(range(1, 10_000))

    def factory(tables: dict[str, list[dict[str, Any]]] | None = None, **kwargs: Any) -> bytes:
        path = tmp_path / "uploads" / f"package-{next(counter)}.uhc"
        path.parent.mkdir(parents=True, exist_ok=True)
        return write_package(path, sample_tables() if tables is None else tables, **kwargs)

    return factory


@pytest.fixture
def tables() -> dict[str, list[dict[str, Any]]]:
    """A mutable copy of the sample package tables."""
    return sample_tables()


@pytest.fixture
def person_tables() -> Callable[..., dict[str, list[dict[str, Any]]]]:
    """Factory for single-person packages; keyword arguments override fields."""
    return person_only_tables


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def storage(tmp_path: Path) -> LocalFSStorage:
    """Create a test storage."""
    return LocalFSStorage(tmp_path / "storage")


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings()


@pytest.fixture
def pipeline(db: Database, settings: PipelineSettings, storage: LocalFSStorage) -> ImportPipeline:
    """Create an import pipeline over the test database and storage."""
    return ImportPipeline(db, settings=settings, storage=storage)
