"""Tests for CLI commands - import, status, approve, commit, cancel, vocab, server."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from fieldsync.cli import cli

PACKAGE_NUMBER = f"PKG-{datetime.now(UTC).year}-000001"


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Database path for the commands; package files go to a temporary store."""
    monkeypatch.setenv("FIELDSYNC_STORAGE_PATH", str(tmp_path / "store"))
    return str(tmp_path / "cli.db")


@pytest.fixture
def package_file(tmp_path: Path, make_package: Any) -> Path:
    path = tmp_path / "field-data.uhc"
    path.write_bytes(make_package())
    return path


@pytest.fixture
def imported(runner: CliRunner, db_path: str, package_file: Path) -> str:
    result = runner.invoke(cli, ["import", str(package_file), "--db-path", db_path])
    assert result.exit_code == 0, result.output
    return PACKAGE_NUMBER


class TestImportCommand:
    """Tests for 'fieldsync import'."""

    def test_import(self, runner: CliRunner, db_path: str, package_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["import", str(package_file), "--db-path", db_path])

        assert result.exit_code == 0
        assert f"Package accepted as {PACKAGE_NUMBER} (ReadyToCommit)" in result.output
        assert (tmp_path / "store" / "packages" / f"{PACKAGE_NUMBER}.uhc").exists()

    def test_import_twice(self, runner: CliRunner, db_path: str, package_file: Path, imported: str) -> None:
        result = runner.invoke(cli, ["import", str(package_file), "--db-path", db_path])

        assert result.exit_code == 0
        assert f"Package already received as {imported}" in result.output

    def test_import_not_a_package(self, runner: CliRunner, db_path: str, tmp_path: Path) -> None:
        junk = tmp_path / "junk.uhc"
        junk.write_bytes(b"not sqlite at all")

        result = runner.invoke(cli, ["import", str(junk), "--db-path", db_path])

        assert result.exit_code == 1
        assert "Package is not a SQLite container" in result.output

    def test_import_missing_file(self, runner: CliRunner, db_path: str, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["import", str(tmp_path / "missing.uhc"), "--db-path", db_path])

        assert result.exit_code != 0


class TestPackageCommands:
    """Tests for status, approve, commit and cancel."""

    def test_status(self, runner: CliRunner, db_path: str, imported: str) -> None:
        result = runner.invoke(cli, ["status", imported, "--db-path", db_path])

        assert result.exit_code == 0
        assert f"Package:   {imported} (dev-pkg-0001)" in result.output
        assert "Status:    ReadyToCommit" in result.output
        assert "Validation: 0 error(s), 0 warning(s)" in result.output
        assert "building" in result.output

    def test_status_unknown_package(self, runner: CliRunner, db_path: str, imported: str) -> None:
        result = runner.invoke(cli, ["status", "PKG-1999-000001", "--db-path", db_path])

        assert result.exit_code == 1
        assert "Package not found: PKG-1999-000001" in result.output

    def test_status_without_database(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["status", PACKAGE_NUMBER, "--db-path", str(tmp_path / "none.db")])

        assert result.exit_code == 1
        assert "Database not found" in result.output

    def test_approve_and_commit(self, runner: CliRunner, db_path: str, imported: str) -> None:
        approved = runner.invoke(cli, ["approve", imported, "--db-path", db_path])
        assert approved.exit_code == 0
        assert f"Approved 8 record(s) in {imported}." in approved.output

        result = runner.invoke(cli, ["commit", imported, "--db-path", db_path])

        assert result.exit_code == 0
        assert f"{imported}: Completed (8 committed, 0 failed, 0 skipped)" in result.output
        status = runner.invoke(cli, ["status", imported, "--db-path", db_path])
        assert "Commit: 8 committed, 0 failed, 0 skipped" in status.output

    def test_commit_without_approval(self, runner: CliRunner, db_path: str, imported: str) -> None:
        result = runner.invoke(cli, ["commit", imported, "--db-path", db_path])

        assert result.exit_code == 1
        assert "No records approved" in result.output

    def test_commit_failure_injection(self, runner: CliRunner, db_path: str, imported: str) -> None:
        runner.invoke(cli, ["approve", imported, "--db-path", db_path])

        result = runner.invoke(cli, ["commit", imported, "--fail-after", "2", "--db-path", db_path])

        assert result.exit_code == 1
        assert "Injected failure after 2 promotions" in result.output
        status = runner.invoke(cli, ["status", imported, "--db-path", db_path])
        assert "Status:    Failed" in status.output

    def test_cancel(self, runner: CliRunner, db_path: str, imported: str) -> None:
        result = runner.invoke(cli, ["cancel", imported, "-r", "resurvey", "--db-path", db_path])

        assert result.exit_code == 0
        assert f"Cancelled {imported}." in result.output

    def test_cancel_requires_reason(self, runner: CliRunner, db_path: str, imported: str) -> None:
        result = runner.invoke(cli, ["cancel", imported, "--db-path", db_path])

        assert result.exit_code != 0

    def test_cancel_twice(self, runner: CliRunner, db_path: str, imported: str) -> None:
        runner.invoke(cli, ["cancel", imported, "-r", "x", "--db-path", db_path])

        result = runner.invoke(cli, ["cancel", imported, "-r", "x", "--db-path", db_path])

        assert result.exit_code == 1


class TestVocabCommands:
    """Tests for 'fieldsync vocab'."""

    @pytest.fixture
    def export_file(self, tmp_path: Path) -> Path:
        path = tmp_path / "vocabularies.json"
        path.write_text(
            json.dumps(
                {
                    "vocabularies": [
                        {
                            "vocabularyName": "building_type",
                            "displayNameEnglish": "Building type",
                            "values": [{"code": 1, "labelEnglish": "Residential"}],
                        }
                    ]
                }
            ),
            encoding="utf-8",
        )
        return path

    def test_import_and_list(self, runner: CliRunner, db_path: str, export_file: Path) -> None:
        result = runner.invoke(cli, ["vocab", "import", str(export_file), "--db-path", db_path])

        assert result.exit_code == 0
        assert "Created vocabulary 'building_type' v1.0.0" in result.output
        assert "Imported 1 vocabularies." in result.output

        listed = runner.invoke(cli, ["vocab", "list", "--db-path", db_path])
        assert "building_type" in listed.output
        assert "v1.0.0" in listed.output

    def test_import_invalid_json(self, runner: CliRunner, db_path: str, tmp_path: Path) -> None:
        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")

        result = runner.invoke(cli, ["vocab", "import", str(broken), "--db-path", db_path])

        assert result.exit_code == 1
        assert "is not valid JSON" in result.output

    def test_import_without_vocabulary_list(self, runner: CliRunner, db_path: str, tmp_path: Path) -> None:
        empty = tmp_path / "empty.json"
        empty.write_text("{}", encoding="utf-8")

        result = runner.invoke(cli, ["vocab", "import", str(empty), "--db-path", db_path])

        assert result.exit_code == 1
        assert "no 'vocabularies' list" in result.output


class TestServerCommands:
    """Tests for 'fieldsync server' maintenance commands."""

    def test_sweep_overdue(self, runner: CliRunner, db_path: str, imported: str) -> None:
        result = runner.invoke(cli, ["server", "sweep-overdue", "--db-path", db_path])

        assert result.exit_code == 0
        assert "Flagged 0 overdue conflict(s)." in result.output

    def test_expire_sessions(self, runner: CliRunner, db_path: str, imported: str) -> None:
        result = runner.invoke(
            cli, ["server", "expire-sessions", "--timeout-hours", "6", "--db-path", db_path]
        )

        assert result.exit_code == 0
        assert "Expired 0 session(s) older than 6 hours." in result.output

    def test_purge_staging(self, runner: CliRunner, db_path: str, imported: str) -> None:
        runner.invoke(cli, ["cancel", imported, "-r", "x", "--keep-staging", "--db-path", db_path])

        kept = runner.invoke(cli, ["server", "purge-staging", "--db-path", db_path])
        assert "No staging rows to purge." in kept.output

        result = runner.invoke(cli, ["server", "purge-staging", "--older-than-days=-1", "--db-path", db_path])

        assert result.exit_code == 0
        assert "Purged 8 staging row(s)." in result.output
