"""Tests for package storage implementations."""

from pathlib import Path

import pytest

from fieldsync.server.storage import (
    LocalFSStorage,
    PackageFileNotFoundError,
    PackageStore,
    S3Storage,
    archive_key,
    attachment_key,
    create_storage,
    package_key,
)


class TestKeys:
    """Tests for storage key helpers."""

    def test_package_key(self) -> None:
        assert package_key("PKG-2026-000001") == "packages/PKG-2026-000001.uhc"

    def test_attachment_key(self) -> None:
        assert attachment_key("dev-pkg-0001", "e1") == "attachments/dev-pkg-0001/e1"

    def test_archive_key(self) -> None:
        """Archived files keep their key under the archive prefix."""
        assert archive_key("packages/PKG-1.uhc") == "archive/packages/PKG-1.uhc"


class TestLocalFSStorage:
    """Tests for LocalFSStorage implementation."""

    @pytest.fixture
    def storage(self, tmp_path: Path) -> LocalFSStorage:
        """Create a LocalFSStorage instance for testing."""
        return LocalFSStorage(tmp_path / "packages")

    def test_put_creates_nested_file(self, storage: LocalFSStorage) -> None:
        """put() should create intermediate directories from the key."""
        storage.put("attachments/pkg/e1", b"scan")

        assert (storage._base_path / "attachments" / "pkg" / "e1").exists()

    def test_get_returns_data(self, storage: LocalFSStorage) -> None:
        """get() should return the stored data."""
        storage.put("packages/PKG-1.uhc", b"SQLite format 3\x00rest")

        assert storage.get("packages/PKG-1.uhc") == b"SQLite format 3\x00rest"

    def test_get_raises_on_missing(self, storage: LocalFSStorage) -> None:
        """get() should raise PackageFileNotFoundError for missing keys."""
        with pytest.raises(PackageFileNotFoundError, match="File not found"):
            storage.get("packages/missing.uhc")

    def test_exists(self, storage: LocalFSStorage) -> None:
        storage.put("a", b"data")

        assert storage.exists("a") is True
        assert storage.exists("b") is False

    def test_delete(self, storage: LocalFSStorage) -> None:
        """delete() should report whether something was removed."""
        storage.put("a", b"data")

        assert storage.delete("a") is True
        assert storage.delete("a") is False
        assert storage.exists("a") is False

    def test_move(self, storage: LocalFSStorage) -> None:
        """move() should rename the file to the new key."""
        storage.put("packages/PKG-1.uhc", b"data")

        storage.move("packages/PKG-1.uhc", archive_key("packages/PKG-1.uhc"))

        assert not storage.exists("packages/PKG-1.uhc")
        assert storage.get("archive/packages/PKG-1.uhc") == b"data"

    def test_move_missing_raises(self, storage: LocalFSStorage) -> None:
        with pytest.raises(PackageFileNotFoundError):
            storage.move("missing", "elsewhere")

    def test_rejects_escaping_keys(self, storage: LocalFSStorage) -> None:
        """Keys must stay inside the base directory."""
        with pytest.raises(ValueError, match="escapes"):
            storage.put("../outside", b"data")

    def test_location(self, storage: LocalFSStorage) -> None:
        assert storage.location.startswith("Local filesystem: ")


class TestS3Storage:
    """Tests for S3Storage using moto mock."""

    @pytest.fixture
    def mock_s3(self) -> None:
        """Set up moto mock for S3."""
        pytest.importorskip("moto")
        import boto3
        from moto import mock_aws

        with mock_aws():
            client = boto3.client("s3", region_name="us-east-1")
            client.create_bucket(Bucket="test-bucket")
            yield

    @pytest.fixture
    def storage(self, mock_s3: None) -> S3Storage:
        """Create an S3Storage instance for testing."""
        return S3Storage(bucket="test-bucket", region="us-east-1")

    def test_put_and_get(self, storage: S3Storage) -> None:
        storage.put("packages/PKG-1.uhc", b"s3 data")

        assert storage.get("packages/PKG-1.uhc") == b"s3 data"

    def test_get_raises_on_missing(self, storage: S3Storage) -> None:
        with pytest.raises(PackageFileNotFoundError, match="File not found"):
            storage.get("packages/missing.uhc")

    def test_delete(self, storage: S3Storage) -> None:
        storage.put("a", b"data")

        assert storage.delete("a") is True
        assert storage.delete("a") is False

    def test_move(self, storage: S3Storage) -> None:
        """move() should copy server-side and remove the source."""
        storage.put("packages/PKG-1.uhc", b"data")

        storage.move("packages/PKG-1.uhc", "archive/packages/PKG-1.uhc")

        assert storage.exists("packages/PKG-1.uhc") is False
        assert storage.get("archive/packages/PKG-1.uhc") == b"data"


class TestCreateStorage:
    """Tests for create_storage factory function."""

    def test_create_local_storage(self, tmp_path: Path) -> None:
        storage = create_storage({"type": "local", "local_path": str(tmp_path / "pk")})

        assert isinstance(storage, LocalFSStorage)
        assert isinstance(storage, PackageStore)

    def test_s3_requires_bucket(self) -> None:
        with pytest.raises(ValueError, match="bucket"):
            create_storage({"type": "s3"})

    def test_unknown_type(self) -> None:
        with pytest.raises(ValueError, match="Unknown storage type"):
            create_storage({"type": "ftp"})
