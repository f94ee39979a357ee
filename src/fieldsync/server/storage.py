"""Storage for uploaded package files and their attachments.

This module provides:
- Abstract interface for package storage
- LocalFSStorage for development/testing
- S3Storage for production (AWS, MinIO, any S3-compatible store)

Keys are relative paths such as ``packages/PKG-2026-000001.uhc`` or
``attachments/{package_id}/{evidence_id}``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any

ARCHIVE_PREFIX = "archive"


class PackageFileNotFoundError(Exception):
    """Raised when a stored package file is not found."""


def package_key(package_number: str) -> str:
    return f"packages/{package_number}.uhc"


def attachment_key(package_id: str, evidence_id: str) -> str:
    return f"attachments/{package_id}/{evidence_id}"


def archive_key(key: str) -> str:
    return f"{ARCHIVE_PREFIX}/{key}"


class PackageStore(ABC):
    """Abstract interface for package file storage."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where files are stored."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store a file under ``key``, replacing any previous content."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Retrieve a stored file.

        Raises:
            PackageFileNotFoundError: If nothing is stored under ``key``.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a file exists in storage."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a file.

        Returns:
            True if the file was deleted, False if it didn't exist.
        """

    def move(self, key: str, new_key: str) -> None:
        """Move a stored file to a new key."""
        self.put(new_key, self.get(key))
        self.delete(key)


class LocalFSStorage(PackageStore):
    """Local filesystem storage for development and testing."""

    def __init__(self, base_path: Path | str) -> None:
        """Initialize local storage.

        Args:
            base_path: Base directory for stored files.
        """
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    def _path(self, key: str) -> Path:
        path = (self._base_path / key).resolve()
        if not path.is_relative_to(self._base_path):
            raise ValueError(f"Storage key escapes base directory: {key}")
        return path

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise PackageFileNotFoundError(f"File not found: {key}")
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def move(self, key: str, new_key: str) -> None:
        """Move a file with a rename instead of copy and delete."""
        source = self._path(key)
        if not source.exists():
            raise PackageFileNotFoundError(f"File not found: {key}")
        target = self._path(new_key)
        target.parent.mkdir(parents=True, exist_ok=True)
        source.replace(target)


class S3Storage(PackageStore):
    """S3-compatible storage for production."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        """Initialize S3 storage.

        Args:
            bucket: S3 bucket name.
            endpoint_url: Custom endpoint URL (for MinIO and similar).
            access_key: AWS access key ID.
            secret_key: AWS secret access key.
            region: AWS region (default: us-east-1).
        """
        import boto3

        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._client: Any = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @property
    def location(self) -> str:
        """Return the S3 bucket location."""
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}/{self._bucket}"
        return f"S3: s3://{self._bucket}"

    def put(self, key: str, data: bytes) -> None:
        self._client.put_object(Bucket=self._bucket, Key=key, Body=data)

    def get(self, key: str) -> bytes:
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            body: bytes = response["Body"].read()
            return body
        except ClientError as e:
            if e.response["Error"]["Code"] == "NoSuchKey":
                raise PackageFileNotFoundError(f"File not found: {key}") from e
            raise

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError:
            return False

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        self._client.delete_object(Bucket=self._bucket, Key=key)
        return True

    def move(self, key: str, new_key: str) -> None:
        """Move an object with a server-side copy."""
        if not self.exists(key):
            raise PackageFileNotFoundError(f"File not found: {key}")
        self._client.copy_object(
            Bucket=self._bucket,
            Key=new_key,
            CopySource={"Bucket": self._bucket, "Key": key},
        )
        self._client.delete_object(Bucket=self._bucket, Key=key)


def create_storage(config: dict[str, str | None]) -> PackageStore:
    """Factory function to create storage from configuration.

    Args:
        config: Storage configuration dict with keys:
            - type: "local" or "s3"
            - For local: local_path
            - For S3: bucket, endpoint_url, access_key, secret_key, region

    Returns:
        Configured PackageStore instance.

    Raises:
        ValueError: If storage type is unknown.
    """
    storage_type = config.get("type", "local")

    if storage_type == "local":
        return LocalFSStorage(config.get("local_path") or "./packages")

    if storage_type == "s3":
        bucket = config.get("bucket")
        if not bucket:
            raise ValueError("S3 storage requires 'bucket' configuration")
        return S3Storage(
            bucket=bucket,
            endpoint_url=config.get("endpoint_url"),
            access_key=config.get("access_key"),
            secret_key=config.get("secret_key"),
            region=config.get("region") or "us-east-1",
        )

    raise ValueError(f"Unknown storage type: {storage_type}")
