"""Core module - Shared settings, hashing, versions and enums."""

from fieldsync.core.config import DuplicateDetectionSettings, PipelineSettings
from fieldsync.core.crypto import (
    compute_bytes_hash,
    compute_file_hash,
    sign_checksum,
    verify_checksum_signature,
)
from fieldsync.core.versions import SemVer, normalize_version, parse_version

__all__ = [
    # Config
    "DuplicateDetectionSettings",
    "PipelineSettings",
    # Crypto
    "compute_bytes_hash",
    "compute_file_hash",
    "sign_checksum",
    "verify_checksum_signature",
    # Versions
    "SemVer",
    "normalize_version",
    "parse_version",
]
