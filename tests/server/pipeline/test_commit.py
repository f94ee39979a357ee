"""Tests for committing staged packages into production."""

from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import func, select

from fieldsync.core.types import EntityKind, PackageStatus, ResolutionAction
from fieldsync.server.database import Database
from fieldsync.server.models import (
    Building,
    Claim,
    Evidence,
    Household,
    ImportPackage,
    Person,
    PersonPropertyRelation,
    PropertyUnit,
    StagingBuilding,
    Survey,
)
from fieldsync.server.pipeline.commit import CommitError, CommitReport
from fieldsync.server.pipeline.orchestrator import ImportPipeline
from fieldsync.server.pipeline.states import InvalidTransitionError


def _count(db: Database, model: type) -> int:
    with db.session() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def _persons(db: Database) -> list[Person]:
    with db.session() as session:
        return list(session.scalars(select(Person)))


def _ready(pipeline: ImportPipeline, data: bytes) -> ImportPackage:
    package = pipeline.import_package(data, "a.uhc").package
    assert package.status == PackageStatus.READY_TO_COMMIT.value
    pipeline.approve(package.id)
    return package


def _resolve_all(
    pipeline: ImportPipeline, db: Database, package_id: int, action: ResolutionAction, **kwargs: Any
) -> None:
    for conflict in db.list_conflicts(package_id=package_id):
        pipeline.resolve_conflict(conflict.id, action, user="reviewer", reason="checked", **kwargs)


class TestFullCommit:
    """A clean package is promoted completely."""

    def test_every_entity_is_created(
        self, pipeline: ImportPipeline, db: Database, make_package: Any
    ) -> None:
        package = _ready(pipeline, make_package())

        report = pipeline.commit(package.id)

        assert report.outcome == PackageStatus.COMPLETED
        assert report.successful == 8
        assert report.failed == 0
        assert report.skipped == 0
        assert report.created == {kind.value: 1 for kind in EntityKind}
        for model in (Building, PropertyUnit, Household, Person, PersonPropertyRelation, Evidence, Claim, Survey):
            assert _count(db, model) == 1

        stored = db.require_package(package.id)
        assert stored.status == PackageStatus.COMPLETED.value
        assert stored.successful_import_count == 8
        assert stored.completed_at is not None

    def test_local_ids_are_remapped(
        self, pipeline: ImportPipeline, db: Database, make_package: Any
    ) -> None:
        package = _ready(pipeline, make_package())
        pipeline.commit(package.id)

        with db.session() as session:
            building = session.scalars(select(Building)).one()
            unit = session.scalars(select(PropertyUnit)).one()
            household = session.scalars(select(Household)).one()
            person = session.scalars(select(Person)).one()
            relation = session.scalars(select(PersonPropertyRelation)).one()
            evidence = session.scalars(select(Evidence)).one()
            claim = session.scalars(select(Claim)).one()
            survey = session.scalars(select(Survey)).one()

            assert building.building_code == "01020300400500001"
            assert building.source_package_id == package.id
            assert unit.building_id == building.id
            assert household.property_unit_id == unit.id
            assert household.head_person_id == person.id
            assert person.household_id == household.id
            assert relation.person_id == person.id
            assert relation.property_unit_id == unit.id
            assert evidence.person_id == person.id
            assert evidence.relation_id == relation.id
            assert claim.property_unit_id == unit.id
            assert claim.primary_claimant_id == person.id
            assert survey.building_id == building.id
            assert survey.property_unit_id == unit.id

    def test_claim_and_survey_initial_values(
        self, pipeline: ImportPipeline, db: Database, make_package: Any, tables: dict
    ) -> None:
        tables["claims"][0].update(claim_source=3)
        package = _ready(pipeline, make_package(tables))
        pipeline.commit(package.id)

        with db.session() as session:
            claim = session.scalars(select(Claim)).one()
            survey = session.scalars(select(Survey)).one()

        assert claim.lifecycle_stage == "DraftPendingSubmission"
        assert claim.claim_status == "Draft"
        assert claim.claim_source == 1
        assert survey.field_collector_id == "collector-7"

    def test_staging_records_point_at_production(
        self, pipeline: ImportPipeline, make_package: Any
    ) -> None:
        package = _ready(pipeline, make_package())
        pipeline.commit(package.id)

        summary = pipeline.staging_summary(package.id)

        assert all(counts["committed"] == 1 for counts in summary.counts.values())


class TestCommitPreconditions:
    """Commit refuses packages that are not ready."""

    def test_nothing_approved(self, pipeline: ImportPipeline, db: Database, make_package: Any) -> None:
        package = pipeline.import_package(make_package(), "a.uhc").package

        with pytest.raises(CommitError, match="No records approved"):
            pipeline.commit(package.id)

        assert db.require_package(package.id).status == PackageStatus.READY_TO_COMMIT.value

    def test_open_conflicts(
        self, pipeline: ImportPipeline, make_package: Any, person_tables: Any
    ) -> None:
        tables = person_tables()
        tables["persons"].append(dict(tables["persons"][0], id="p2"))
        package = pipeline.import_package(make_package(tables), "a.uhc").package

        with pytest.raises(InvalidTransitionError, match="not ReadyToCommit"):
            pipeline.commit(package.id)

    def test_unapproved_records_are_skipped(
        self, pipeline: ImportPipeline, db: Database, make_package: Any
    ) -> None:
        package = pipeline.import_package(make_package(), "a.uhc").package
        summary = pipeline.staging_summary(package.id)
        assert summary.counts["building"]["total"] == 1
        with db.session() as session:
            building_id = session.scalars(select(StagingBuilding.id)).one()
        pipeline.approve(package.id, {EntityKind.BUILDING: [building_id]})

        report = pipeline.commit(package.id)

        assert report.successful == 1
        assert report.skipped == 7
        assert report.outcome == PackageStatus.COMPLETED


class TestAtomicity:
    """A failing commit leaves production untouched."""

    def test_injected_failure_rolls_back(
        self, pipeline: ImportPipeline, db: Database, make_package: Any
    ) -> None:
        package = _ready(pipeline, make_package())

        with pytest.raises(CommitError, match="Injected failure after 3 promotions"):
            pipeline.commit(package.id, fail_after=3)

        for model in (Building, PropertyUnit, Household, Person):
            assert _count(db, model) == 0
        stored = db.require_package(package.id)
        assert stored.status == PackageStatus.FAILED.value
        assert stored.error_message == "Commit rolled back: Injected failure after 3 promotions"
        summary = pipeline.staging_summary(package.id)
        assert all(counts["committed"] == 0 for counts in summary.counts.values())

    def test_failed_is_terminal(self, pipeline: ImportPipeline, make_package: Any) -> None:
        package = _ready(pipeline, make_package())
        with pytest.raises(CommitError):
            pipeline.commit(package.id, fail_after=0)

        with pytest.raises(InvalidTransitionError):
            pipeline.commit(package.id)


class TestPartialCommit:
    """Records whose dependencies fail are reported, not promoted."""

    def test_building_code_already_registered(
        self, pipeline: ImportPipeline, db: Database, make_package: Any
    ) -> None:
        pipeline.commit(_ready(pipeline, make_package()).id)
        second = pipeline.import_package(make_package(package_id="dev-pkg-0002"), "b.uhc").package
        _resolve_all(pipeline, db, second.id, ResolutionAction.KEEP_BOTH)
        pipeline.approve(second.id)

        report = pipeline.commit(second.id)

        assert report.outcome == PackageStatus.PARTIALLY_COMPLETED
        assert report.successful == 2
        assert report.failed == 6
        reasons = {f["kind"]: f["reason"] for f in report.failures}
        assert reasons["building"] == "building code already registered in production"
        assert reasons["property_unit"] == "building b1 was not committed"
        assert reasons["survey"] == "building b1 was not committed"
        assert _count(db, Building) == 1
        assert _count(db, Person) == 2
        assert db.require_package(second.id).status == PackageStatus.PARTIALLY_COMPLETED.value

    def test_report_outcomes(self) -> None:
        assert CommitReport(successful=0, failed=2).outcome == PackageStatus.FAILED
        assert CommitReport(successful=3, failed=0, skipped=4).outcome == PackageStatus.COMPLETED


class TestConflictFolding:
    """Resolved conflicts decide how duplicates are promoted."""

    @pytest.fixture
    def second_package(
        self, pipeline: ImportPipeline, make_package: Any, person_tables: Any
    ) -> ImportPackage:
        pipeline.commit(_ready(pipeline, make_package(person_tables())).id)
        data = make_package(person_tables(mobile_number="0999888777"), package_id="dev-pkg-0002")
        return pipeline.import_package(data, "b.uhc").package

    def test_keep_first_overwrites_production(
        self, pipeline: ImportPipeline, db: Database, second_package: ImportPackage
    ) -> None:
        _resolve_all(pipeline, db, second_package.id, ResolutionAction.KEEP_FIRST)
        pipeline.approve(second_package.id)

        report = pipeline.commit(second_package.id)

        assert report.folded == {"person": 1}
        [person] = _persons(db)
        assert person.mobile_number == "0999888777"

    def test_keep_second_keeps_production(
        self, pipeline: ImportPipeline, db: Database, second_package: ImportPackage
    ) -> None:
        _resolve_all(pipeline, db, second_package.id, ResolutionAction.KEEP_SECOND)
        pipeline.approve(second_package.id)

        report = pipeline.commit(second_package.id)

        assert report.folded == {"person": 1}
        [person] = _persons(db)
        assert person.mobile_number is None

    def test_merge_with_production(
        self, pipeline: ImportPipeline, db: Database, second_package: ImportPackage
    ) -> None:
        [conflict] = db.list_conflicts(package_id=second_package.id)
        pipeline.resolve_conflict(
            conflict.id,
            ResolutionAction.MERGE,
            user="reviewer",
            reason="same person",
            merged_entity_id=conflict.second_entity_id,
            discarded_entity_id=conflict.first_entity_id,
            merge_mapping={"mobile_number": "first", "first_name_arabic": "second"},
        )
        pipeline.approve(second_package.id)

        pipeline.commit(second_package.id)

        [person] = _persons(db)
        assert person.mobile_number == "0999888777"
        assert person.first_name_arabic == "محمد"

    def test_keep_both_creates_second_person(
        self, pipeline: ImportPipeline, db: Database, second_package: ImportPackage
    ) -> None:
        _resolve_all(pipeline, db, second_package.id, ResolutionAction.KEEP_BOTH)
        pipeline.approve(second_package.id)

        report = pipeline.commit(second_package.id)

        assert report.created == {"person": 1}
        assert len(_persons(db)) == 2

    def test_within_batch_merge(
        self, pipeline: ImportPipeline, db: Database, make_package: Any, person_tables: Any
    ) -> None:
        tables = person_tables()
        tables["persons"].append(dict(tables["persons"][0], id="p2", mobile_number="0999888777"))
        package = pipeline.import_package(make_package(tables), "a.uhc").package
        [conflict] = db.list_conflicts(package_id=package.id)
        pipeline.resolve_conflict(
            conflict.id,
            ResolutionAction.MERGE,
            user="reviewer",
            reason="entered twice",
            merged_entity_id=conflict.first_entity_id,
            discarded_entity_id=conflict.second_entity_id,
            merge_mapping={"mobile_number": "second"},
        )
        pipeline.approve(package.id)

        report = pipeline.commit(package.id)

        assert report.created == {"person": 1}
        assert report.folded == {"person": 1}
        [person] = _persons(db)
        assert person.mobile_number == "0999888777"
