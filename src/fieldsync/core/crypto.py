"""Cryptographic functions for fieldsync.

This module provides:
- Package hashing with SHA-256
- Ed25519 signature creation and verification for package checksums
"""

import base64
import binascii
import hashlib
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)


def compute_bytes_hash(data: bytes) -> str:
    """Compute the lowercase hex SHA-256 of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file.

    Reads the file in chunks to handle large packages efficiently.

    Args:
        path: Path to the file to hash.

    Returns:
        Hexadecimal SHA-256 hash string.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(8192), b""):
            hasher.update(block)
    return hasher.hexdigest()


def sign_checksum(checksum: str, private_key: bytes) -> str:
    """Sign a package checksum with an Ed25519 private key.

    Devices sign the manifest checksum before export; the server only needs
    this for tooling and tests.

    Args:
        checksum: Hex checksum text to sign.
        private_key: 32-byte raw Ed25519 private key.

    Returns:
        Base64-encoded signature.
    """
    key = Ed25519PrivateKey.from_private_bytes(private_key)
    return base64.b64encode(key.sign(checksum.encode("utf-8"))).decode("ascii")


def verify_checksum_signature(checksum: str, signature: str, public_key_hex: str) -> bool:
    """Verify a base64 Ed25519 signature over a checksum.

    Args:
        checksum: Hex checksum text that was signed.
        signature: Base64-encoded signature from the manifest.
        public_key_hex: Hex-encoded 32-byte raw public key.

    Returns:
        True if the signature is valid, False for a bad signature or
        malformed signature/key material.
    """
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
        raw_signature = base64.b64decode(signature, validate=True)
    except (ValueError, binascii.Error):
        return False
    try:
        key.verify(raw_signature, checksum.encode("utf-8"))
    except InvalidSignature:
        return False
    return True
