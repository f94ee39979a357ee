"""Tests for the operator import package endpoints."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from fieldsync.core.config import PipelineSettings
from fieldsync.server.app import create_app
from fieldsync.server.database import Database
from fieldsync.server.pipeline.orchestrator import ImportPipeline
from fieldsync.server.storage import LocalFSStorage


@pytest.fixture
def client(db: Database, storage: LocalFSStorage) -> TestClient:
    """Create a test client over the test database and storage."""
    app = create_app(db, storage, PipelineSettings())
    return TestClient(app)


@pytest.fixture
def ready_id(pipeline: ImportPipeline, make_package: Any) -> int:
    return pipeline.import_package(make_package(), "a.uhc").package.id


@pytest.fixture
def quarantined_id(pipeline: ImportPipeline, make_package: Any) -> int:
    data = make_package(package_id="dev-pkg-0002", checksum="0" * 64)
    return pipeline.import_package(data, "b.uhc").package.id


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check(self, client: TestClient) -> None:
        """Health endpoint should return OK."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestPackageEndpoints:
    """Tests for reading packages."""

    def test_get_package(self, client: TestClient, ready_id: int) -> None:
        response = client.get(f"/api/imports/{ready_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["packageId"] == "dev-pkg-0001"
        assert data["status"] == "ReadyToCommit"
        assert data["isChecksumValid"] is True
        assert data["areConflictsResolved"] is True
        assert data["vocabularyIssues"] == []

    def test_get_unknown_package(self, client: TestClient) -> None:
        response = client.get("/api/imports/999")

        assert response.status_code == 404
        assert response.json()["detail"] == "Import package not found: 999"

    def test_validation_report(self, client: TestClient, ready_id: int) -> None:
        response = client.get(f"/api/imports/{ready_id}/validation")

        assert response.status_code == 200
        report = response.json()
        assert report["validRecords"] == 8
        assert [level["level"] for level in report["levels"]] == list(range(1, 9))

    def test_validation_report_of_quarantined_package(
        self, client: TestClient, quarantined_id: int
    ) -> None:
        response = client.get(f"/api/imports/{quarantined_id}/validation")

        assert response.status_code == 404
        assert "has not been validated" in response.json()["detail"]

    def test_staging_summary(self, client: TestClient, ready_id: int) -> None:
        response = client.get(f"/api/imports/{ready_id}/staging")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 8
        assert data["counts"]["building"]["total"] == 1


class TestApproveAndCommit:
    """Tests for approving and committing through the API."""

    def test_approve_all(self, client: TestClient, ready_id: int) -> None:
        response = client.post(f"/api/imports/{ready_id}/approve", json={})

        assert response.status_code == 200
        assert response.json() == {"approved": 8}

    def test_approve_unknown_kind(self, client: TestClient, ready_id: int) -> None:
        response = client.post(
            f"/api/imports/{ready_id}/approve", json={"recordIds": {"spaceship": [1]}}
        )

        assert response.status_code == 400

    def test_approve_unknown_record(self, client: TestClient, ready_id: int) -> None:
        response = client.post(
            f"/api/imports/{ready_id}/approve", json={"recordIds": {"building": [999]}}
        )

        assert response.status_code == 409

    def test_approve_quarantined(self, client: TestClient, quarantined_id: int) -> None:
        response = client.post(f"/api/imports/{quarantined_id}/approve", json={})

        assert response.status_code == 409
        assert "Cannot approve" in response.json()["detail"]

    def test_commit(self, client: TestClient, ready_id: int) -> None:
        client.post(f"/api/imports/{ready_id}/approve", json={})

        response = client.post(f"/api/imports/{ready_id}/commit")

        assert response.status_code == 200
        data = response.json()
        assert data["package"]["status"] == "Completed"
        assert data["package"]["successfulImportCount"] == 8
        assert data["summary"]["outcome"] == "Completed"
        assert data["summary"]["created"]["person"] == 1

    def test_commit_twice(self, client: TestClient, ready_id: int) -> None:
        client.post(f"/api/imports/{ready_id}/approve", json={})
        client.post(f"/api/imports/{ready_id}/commit")

        response = client.post(f"/api/imports/{ready_id}/commit")

        assert response.status_code == 409

    def test_commit_without_approval(self, client: TestClient, ready_id: int) -> None:
        response = client.post(f"/api/imports/{ready_id}/commit")

        assert response.status_code == 409
        assert "No records approved" in response.json()["detail"]

    def test_commit_unknown_package(self, client: TestClient) -> None:
        assert client.post("/api/imports/999/commit").status_code == 404


class TestOperatorActions:
    """Tests for cancel, quarantine, reset and archive endpoints."""

    def test_cancel(self, client: TestClient, ready_id: int) -> None:
        response = client.post(f"/api/imports/{ready_id}/cancel", json={"reason": "resurvey"})

        assert response.status_code == 200
        assert response.json()["status"] == "Cancelled"
        assert response.json()["cancellationReason"] == "resurvey"
        assert client.get(f"/api/imports/{ready_id}/staging").json()["total"] == 0

    def test_cancel_keeping_staging(self, client: TestClient, ready_id: int) -> None:
        client.post(
            f"/api/imports/{ready_id}/cancel", json={"reason": "hold", "discardStaging": False}
        )

        assert client.get(f"/api/imports/{ready_id}/staging").json()["total"] == 8

    def test_cancel_requires_reason(self, client: TestClient, ready_id: int) -> None:
        response = client.post(f"/api/imports/{ready_id}/cancel", json={"reason": ""})

        assert response.status_code == 422

    def test_cancel_twice(self, client: TestClient, ready_id: int) -> None:
        client.post(f"/api/imports/{ready_id}/cancel", json={"reason": "x"})

        response = client.post(f"/api/imports/{ready_id}/cancel", json={"reason": "x"})

        assert response.status_code == 409

    def test_quarantine(self, client: TestClient, ready_id: int) -> None:
        response = client.post(
            f"/api/imports/{ready_id}/quarantine", json={"reason": "device reported stolen"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "Quarantined"
        assert response.json()["quarantineReason"] == "device reported stolen"

    def test_reset_commit_requires_committing(self, client: TestClient, ready_id: int) -> None:
        response = client.post(f"/api/imports/{ready_id}/reset-commit")

        assert response.status_code == 409

    def test_archive(self, client: TestClient, ready_id: int, storage: LocalFSStorage) -> None:
        client.post(f"/api/imports/{ready_id}/cancel", json={"reason": "x"})

        response = client.post(f"/api/imports/{ready_id}/archive")

        assert response.status_code == 200
        data = response.json()
        assert data["isArchived"] is True
        assert storage.exists(data["archivePath"])

    def test_archive_open_package(self, client: TestClient, ready_id: int) -> None:
        assert client.post(f"/api/imports/{ready_id}/archive").status_code == 409
