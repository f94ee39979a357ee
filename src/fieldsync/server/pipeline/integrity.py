"""Integrity verification of package containers.

Checks run before anything in a package is trusted:
- Content checksum recomputed from the data tables vs the manifest value
- Ed25519 signature over the checksum, when present or required
- Container schema version against the supported set
- Declared per-kind record counts vs actual table sizes

Any failed check fails the whole package closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fieldsync.core.config import PipelineSettings
from fieldsync.core.crypto import verify_checksum_signature
from fieldsync.core.versions import normalize_version
from fieldsync.server.pipeline.container import ENTITY_TABLES, PackageContainer

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    """Outcome of the integrity checks.

    Attributes:
        computed_checksum: Content checksum recomputed from the container.
        is_checksum_valid: Whether it matches the manifest checksum.
        is_signature_valid: True/False when verified, None when the
            signature was absent or no trusted key is configured.
        is_schema_valid: Whether the schema version is supported.
        issues: Human-readable reasons for every failed check.
    """

    computed_checksum: str
    is_checksum_valid: bool
    is_signature_valid: bool | None
    is_schema_valid: bool
    issues: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.issues


def verify_integrity(container: PackageContainer, settings: PipelineSettings) -> IntegrityReport:
    """Run every integrity check against an opened container.

    Args:
        container: Opened package container.
        settings: Pipeline settings (signature policy, schema versions).

    Returns:
        IntegrityReport; ``passed`` is False if any check failed.
    """
    manifest = container.manifest
    issues: list[str] = []

    computed = container.content_checksum()
    if not manifest.checksum:
        checksum_ok = False
        issues.append("Manifest has no checksum")
    else:
        checksum_ok = manifest.checksum == computed
        if not checksum_ok:
            issues.append(
                f"Checksum mismatch: manifest {manifest.checksum}, computed {computed}"
            )

    signature_ok: bool | None = None
    if manifest.digital_signature:
        if settings.signing_public_key:
            signature_ok = verify_checksum_signature(
                manifest.checksum or computed,
                manifest.digital_signature,
                settings.signing_public_key,
            )
            if not signature_ok:
                issues.append("Digital signature verification failed")
        elif settings.require_signature:
            signature_ok = False
            issues.append("Digital signature required but no trusted key is configured")
        else:
            logger.debug("Signature present but no trusted key configured; not verified")
    elif settings.require_signature:
        signature_ok = False
        issues.append("Digital signature required but not provided in package")

    schema = normalize_version(manifest.schema_version)
    schema_ok = schema in settings.supported_schema_versions
    if not schema_ok:
        supported = ", ".join(sorted(settings.supported_schema_versions))
        issues.append(f"Unsupported schema version {manifest.schema_version} (supported: {supported})")

    for kind, declared in sorted(manifest.declared_counts.items(), key=lambda kv: kv[0].value):
        actual = container.count(ENTITY_TABLES[kind])
        if actual != declared:
            issues.append(f"{kind.value} count mismatch: manifest {declared}, container {actual}")

    if issues:
        logger.warning("Package %s failed integrity: %s", manifest.package_id, "; ".join(issues))

    return IntegrityReport(
        computed_checksum=computed,
        is_checksum_valid=checksum_ok,
        is_signature_valid=signature_ok,
        is_schema_valid=schema_ok,
        issues=issues,
    )
