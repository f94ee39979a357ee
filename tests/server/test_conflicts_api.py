"""Tests for the conflict review endpoints."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from fieldsync.server.app import create_app
from fieldsync.server.database import Database
from fieldsync.server.pipeline.orchestrator import ImportPipeline
from fieldsync.server.storage import LocalFSStorage


@pytest.fixture
def client(db: Database, storage: LocalFSStorage) -> TestClient:
    return TestClient(create_app(db, storage))


@pytest.fixture
def package_id(pipeline: ImportPipeline, make_package: Any, person_tables: Any) -> int:
    """A package whose two persons share a national id."""
    tables = person_tables()
    tables["persons"].append(dict(tables["persons"][0], id="p2", mobile_number="0999888777"))
    return pipeline.import_package(make_package(tables), "a.uhc").package.id


@pytest.fixture
def conflict(client: TestClient, package_id: int) -> dict[str, Any]:
    [listed] = client.get("/api/conflicts", params={"packageId": package_id}).json()
    return listed


class TestListing:
    """Tests for the review queue."""

    def test_list(self, client: TestClient, conflict: dict[str, Any], package_id: int) -> None:
        assert conflict["conflictType"] == "PersonDuplicate_WithinBatch"
        assert conflict["importPackageId"] == package_id
        assert conflict["status"] == "PendingReview"
        assert conflict["priority"] == "High"
        assert conflict["matchingCriteria"] == {"nationalIdMatch": True}
        assert conflict["isOverdue"] is False
        assert conflict["reviewHistory"] == []

    @pytest.mark.parametrize(
        ("params", "expected"),
        [
            ({"status": "PendingReview"}, 1),
            ({"status": "Resolved"}, 0),
            ({"priority": "High"}, 1),
            ({"priority": "Low"}, 0),
            ({"overdueOnly": "true"}, 0),
        ],
    )
    def test_filters(
        self, client: TestClient, package_id: int, params: dict[str, str], expected: int
    ) -> None:
        response = client.get("/api/conflicts", params=params)

        assert response.status_code == 200
        assert len(response.json()) == expected

    def test_invalid_status_filter(self, client: TestClient) -> None:
        assert client.get("/api/conflicts", params={"status": "Bogus"}).status_code == 422

    def test_summary(self, client: TestClient, package_id: int) -> None:
        response = client.get("/api/conflicts/summary", params={"packageId": package_id})

        assert response.status_code == 200
        assert response.json()["byStatus"] == {"PendingReview": 1}
        assert response.json()["total"] == 1

    def test_get(self, client: TestClient, conflict: dict[str, Any]) -> None:
        response = client.get(f"/api/conflicts/{conflict['id']}")

        assert response.status_code == 200
        assert response.json()["conflictNumber"] == conflict["conflictNumber"]

    def test_get_unknown(self, client: TestClient) -> None:
        assert client.get("/api/conflicts/999").status_code == 404


class TestResolution:
    """Tests for resolving and ignoring conflicts."""

    def test_resolve_advances_package(
        self, client: TestClient, conflict: dict[str, Any], package_id: int
    ) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/resolve",
            json={"action": "KeepBoth", "user": "reviewer", "reason": "twins"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "Resolved"
        assert response.json()["resolutionAction"] == "KeepBoth"
        assert response.json()["resolvedBy"] == "reviewer"
        package = client.get(f"/api/imports/{package_id}").json()
        assert package["status"] == "ReadyToCommit"
        assert package["areConflictsResolved"] is True

    def test_resolve_twice(self, client: TestClient, conflict: dict[str, Any]) -> None:
        url = f"/api/conflicts/{conflict['id']}/resolve"
        client.post(url, json={"action": "KeepBoth", "user": "r", "reason": "x"})

        response = client.post(url, json={"action": "KeepFirst", "user": "r", "reason": "y"})

        assert response.status_code == 409
        assert "it is Resolved" in response.json()["detail"]

    def test_merge(self, client: TestClient, conflict: dict[str, Any]) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/resolve",
            json={
                "action": "Merge",
                "user": "reviewer",
                "reason": "entered twice",
                "mergedEntityId": conflict["firstEntityId"],
                "discardedEntityId": conflict["secondEntityId"],
                "mergeMapping": {"mobile_number": "second"},
            },
        )

        assert response.status_code == 200
        assert response.json()["mergeMapping"] == {"mobile_number": "second"}

    def test_merge_without_mapping(self, client: TestClient, conflict: dict[str, Any]) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/resolve",
            json={
                "action": "Merge",
                "user": "reviewer",
                "reason": "x",
                "mergedEntityId": conflict["firstEntityId"],
                "discardedEntityId": conflict["secondEntityId"],
            },
        )

        assert response.status_code == 409

    def test_unknown_action(self, client: TestClient, conflict: dict[str, Any]) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/resolve",
            json={"action": "Delete", "user": "r", "reason": "x"},
        )

        assert response.status_code == 422

    def test_resolve_unknown_conflict(self, client: TestClient) -> None:
        response = client.post(
            "/api/conflicts/999/resolve", json={"action": "KeepBoth", "user": "r", "reason": "x"}
        )

        assert response.status_code == 404

    def test_ignore(self, client: TestClient, conflict: dict[str, Any], package_id: int) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/ignore", json={"user": "r", "reason": "false positive"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "Ignored"
        assert client.get(f"/api/imports/{package_id}").json()["status"] == "ReadyToCommit"

    def test_auto_resolve(self, client: TestClient, conflict: dict[str, Any]) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/auto-resolve",
            json={"action": "KeepFirst", "rule": "same-device-reentry"},
        )

        assert response.status_code == 200
        assert response.json()["isAutoResolved"] is True
        assert response.json()["resolvedBy"] == "system"


class TestReviewOperations:
    """Tests for operations that keep a conflict open."""

    def test_assign(self, client: TestClient, conflict: dict[str, Any]) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/assign",
            json={"user": "reviewer", "targetResolutionHours": 24},
        )

        assert response.status_code == 200
        assert response.json()["assignedTo"] == "reviewer"
        assert response.json()["targetResolutionHours"] == 24
        assert response.json()["status"] == "PendingReview"

    def test_assign_rejects_zero_target(self, client: TestClient, conflict: dict[str, Any]) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/assign",
            json={"user": "reviewer", "targetResolutionHours": 0},
        )

        assert response.status_code == 422

    def test_escalate(self, client: TestClient, conflict: dict[str, Any]) -> None:
        client.post(f"/api/conflicts/{conflict['id']}/priority", json={"priority": "Low"})

        response = client.post(
            f"/api/conflicts/{conflict['id']}/escalate", json={"user": "lead", "reason": "dispute"}
        )

        assert response.status_code == 200
        assert response.json()["isEscalated"] is True
        assert response.json()["priority"] == "High"
        assert response.json()["escalationReason"] == "dispute"

    def test_review_attempts(self, client: TestClient, conflict: dict[str, Any]) -> None:
        url = f"/api/conflicts/{conflict['id']}/review-attempts"
        client.post(url, json={"notes": "called household"})

        response = client.post(url, json={"notes": "no answer"})

        data = response.json()
        assert data["reviewAttemptCount"] == 2
        assert [h["notes"] for h in data["reviewHistory"]] == ["called household", "no answer"]

    def test_priority(self, client: TestClient, conflict: dict[str, Any]) -> None:
        response = client.post(
            f"/api/conflicts/{conflict['id']}/priority", json={"priority": "Normal"}
        )

        assert response.status_code == 200
        assert response.json()["priority"] == "Normal"

    def test_priority_of_escalated_conflict(self, client: TestClient, conflict: dict[str, Any]) -> None:
        client.post(
            f"/api/conflicts/{conflict['id']}/escalate", json={"user": "lead", "reason": "dispute"}
        )

        response = client.post(
            f"/api/conflicts/{conflict['id']}/priority", json={"priority": "Low"}
        )

        assert response.status_code == 409
        assert client.get(f"/api/conflicts/{conflict['id']}").json()["priority"] == "High"

    def test_priority_of_closed_conflict(self, client: TestClient, conflict: dict[str, Any]) -> None:
        client.post(
            f"/api/conflicts/{conflict['id']}/ignore", json={"user": "r", "reason": "noise"}
        )

        response = client.post(
            f"/api/conflicts/{conflict['id']}/priority", json={"priority": "Low"}
        )

        assert response.status_code == 409
