"""Pipeline configuration for fieldsync.

Settings are read from ``FIELDSYNC_*`` environment variables, with defaults
suitable for a single-node deployment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from fieldsync.core.versions import normalize_version


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


@dataclass
class DuplicateDetectionSettings:
    """Thresholds used when scoring duplicate candidates.

    Attributes:
        high_confidence_threshold: Minimum score for a High confidence match.
        medium_confidence_threshold: Minimum score for a Medium confidence match.
        low_confidence_threshold: Lowest reportable score (Low confidence).
        property_proximity_meters: Radius for spatial building matches.
    """

    high_confidence_threshold: int = 90
    medium_confidence_threshold: int = 70
    low_confidence_threshold: int = 50
    property_proximity_meters: float = 50.0


@dataclass
class PipelineSettings:
    """Configuration of the import pipeline and sync server.

    Attributes:
        db_path: SQLite database file.
        log_path: Server log file.
        max_upload_mb: Largest accepted package, in MiB.
        require_signature: Reject packages without a valid signature.
        signing_public_key: Hex-encoded Ed25519 public key trusted for packages.
        supported_schema_versions: Container schema versions the loader can read.
        target_resolution_hours: Default SLA applied to new conflicts.
        session_timeout_hours: Age after which an open sync session times out.
        staging_retention_days: Age after which staging rows of finished
            packages are purged.
        duplicates: Duplicate detection thresholds.
    """

    db_path: Path = Path("fieldsync.db")
    log_path: Path = Path("fieldsync-server.log")
    max_upload_mb: int = 500
    require_signature: bool = False
    signing_public_key: str | None = None
    supported_schema_versions: frozenset[str] = frozenset({"1.0.0"})
    target_resolution_hours: int = 72
    session_timeout_hours: int = 24
    staging_retention_days: int = 90
    duplicates: DuplicateDetectionSettings = field(default_factory=DuplicateDetectionSettings)

    def __post_init__(self) -> None:
        """Normalize schema versions so "1.0" and "1.0.0" compare equal."""
        self.supported_schema_versions = frozenset(
            normalize_version(v) for v in self.supported_schema_versions
        )

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> PipelineSettings:
        """Build settings from ``FIELDSYNC_*`` environment variables."""
        schema_versions = os.environ.get("FIELDSYNC_SUPPORTED_SCHEMA_VERSIONS", "1.0.0")
        duplicates = DuplicateDetectionSettings(
            high_confidence_threshold=_env_int("FIELDSYNC_DUP_HIGH_THRESHOLD", 90),
            medium_confidence_threshold=_env_int("FIELDSYNC_DUP_MEDIUM_THRESHOLD", 70),
            low_confidence_threshold=_env_int("FIELDSYNC_DUP_LOW_THRESHOLD", 50),
            property_proximity_meters=float(
                os.environ.get("FIELDSYNC_DUP_PROXIMITY_METERS", "50")
            ),
        )
        return cls(
            db_path=Path(os.environ.get("FIELDSYNC_DB_PATH", "fieldsync.db")),
            log_path=Path(os.environ.get("FIELDSYNC_LOG_PATH", "fieldsync-server.log")),
            max_upload_mb=_env_int("FIELDSYNC_MAX_UPLOAD_MB", 500),
            require_signature=_env_bool("FIELDSYNC_REQUIRE_SIGNATURE", False),
            signing_public_key=os.environ.get("FIELDSYNC_SIGNING_PUBLIC_KEY") or None,
            supported_schema_versions=frozenset(
                v.strip() for v in schema_versions.split(",") if v.strip()
            ),
            target_resolution_hours=_env_int("FIELDSYNC_TARGET_RESOLUTION_HOURS", 72),
            session_timeout_hours=_env_int("FIELDSYNC_SESSION_TIMEOUT_HOURS", 24),
            staging_retention_days=_env_int("FIELDSYNC_STAGING_RETENTION_DAYS", 90),
            duplicates=duplicates,
        )


def build_storage_config() -> dict[str, str | None]:
    """Build package storage configuration from environment variables."""
    # S3 storage if bucket is configured
    s3_bucket = os.environ.get("FIELDSYNC_S3_BUCKET")
    if s3_bucket:
        return {
            "type": "s3",
            "bucket": s3_bucket,
            "endpoint_url": os.environ.get("FIELDSYNC_S3_ENDPOINT"),
            "access_key": os.environ.get("FIELDSYNC_S3_ACCESS_KEY"),
            "secret_key": os.environ.get("FIELDSYNC_S3_SECRET_KEY"),
            "region": os.environ.get("FIELDSYNC_S3_REGION", "us-east-1"),
        }

    # Local storage (default)
    return {
        "type": "local",
        "local_path": os.environ.get("FIELDSYNC_STORAGE_PATH", "packages"),
    }
