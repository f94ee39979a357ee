"""Package commands for fieldsync CLI.

Commands:
- import: Run a package file through the pipeline
- status: Show a package, its staging counts and conflicts
- approve: Approve staged records for commit
- commit: Commit approved records to production
- cancel: Cancel a package
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from fieldsync.cli.config import db_path_option, open_database, open_pipeline, require_package
from fieldsync.core.types import PackageStatus

COMMITTED_STATUSES = frozenset(
    {
        PackageStatus.COMPLETED.value,
        PackageStatus.PARTIALLY_COMPLETED.value,
        PackageStatus.FAILED.value,
    }
)


@click.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@db_path_option
def import_cmd(path: Path, db_path: str | None) -> None:
    """Import a .uhc package file.

    The file goes through integrity, vocabulary, staging, validation and
    duplicate detection. Importing the same file twice is a no-op.
    """
    from fieldsync.server.pipeline.container import PackageFormatError
    from fieldsync.server.pipeline.orchestrator import PackageConflictError, PackageTooLargeError

    db = open_database(db_path, must_exist=False)
    try:
        pipeline = open_pipeline(db)
        try:
            result = pipeline.import_package(path.read_bytes(), file_name=path.name)
        except (PackageFormatError, PackageConflictError, PackageTooLargeError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(result.message)
        click.echo(f"Status: {result.package.status}")
    finally:
        db.close()


@click.command()
@click.argument("package_number")
@db_path_option
def status(package_number: str, db_path: str | None) -> None:
    """Show the status of a package (e.g. PKG-2026-000001)."""
    db = open_database(db_path)
    try:
        package = require_package(db, package_number)
        pipeline = open_pipeline(db)
        click.echo(f"Package:   {package.package_number} ({package.package_id})")
        click.echo(f"Status:    {package.status}")
        click.echo(f"Device:    {package.device_id or '-'}")
        if package.quarantine_reason:
            click.echo(f"Quarantine: {package.quarantine_reason}")
        if package.error_message:
            click.echo(f"Error:     {package.error_message}")
        for issue in package.vocabulary_issues:
            click.echo(f"Vocabulary: {issue}")
        click.echo(
            f"Validation: {package.validation_error_count} error(s), "
            f"{package.validation_warning_count} warning(s)"
        )

        summary = pipeline.staging_summary(package.id)
        if summary.total:
            click.echo("Staging:")
            for kind, counts in summary.counts.items():
                if counts["total"]:
                    click.echo(
                        f"  {kind:<22} {counts['total']:>5} total, "
                        f"{counts['approved']:>5} approved, {counts['committed']:>5} committed"
                    )

        conflicts = db.list_conflicts(package_id=package.id)
        if conflicts:
            click.echo(f"Conflicts ({len(conflicts)}):")
            for conflict in conflicts:
                click.echo(
                    f"  {conflict.conflict_number} {conflict.status:<14} "
                    f"{conflict.priority:<6} {conflict.description}"
                )
        if package.status in COMMITTED_STATUSES:
            click.echo(
                f"Commit: {package.successful_import_count} committed, "
                f"{package.failed_import_count} failed, {package.skipped_record_count} skipped"
            )
    finally:
        db.close()


@click.command()
@click.argument("package_number")
@db_path_option
def approve(package_number: str, db_path: str | None) -> None:
    """Approve every valid staged record of a package."""
    from fieldsync.server.models import StagingError
    from fieldsync.server.pipeline.states import InvalidTransitionError

    db = open_database(db_path)
    try:
        package = require_package(db, package_number)
        try:
            approved = open_pipeline(db).approve(package.id)
        except (InvalidTransitionError, StagingError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Approved {approved} record(s) in {package_number}.")
    finally:
        db.close()


@click.command()
@click.argument("package_number")
@click.option(
    "--fail-after",
    type=int,
    default=None,
    hidden=True,
    help="Abort after N promotions (testing only).",
)
@db_path_option
def commit(package_number: str, fail_after: int | None, db_path: str | None) -> None:
    """Commit the approved records of a package to production."""
    from fieldsync.server.pipeline.commit import CommitError
    from fieldsync.server.pipeline.states import InvalidTransitionError

    db = open_database(db_path)
    try:
        package = require_package(db, package_number)
        try:
            report = open_pipeline(db).commit(package.id, fail_after=fail_after)
        except (InvalidTransitionError, CommitError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(
            f"{package_number}: {report.outcome.value} "
            f"({report.successful} committed, {report.failed} failed, {report.skipped} skipped)"
        )
        for failure in report.failures:
            click.echo(f"  {failure['kind']} {failure['originalEntityId']}: {failure['reason']}")
    finally:
        db.close()


@click.command()
@click.argument("package_number")
@click.option("--reason", "-r", required=True, help="Why the package is cancelled.")
@click.option("--keep-staging", is_flag=True, help="Keep staging rows for inspection.")
@db_path_option
def cancel(package_number: str, reason: str, keep_staging: bool, db_path: str | None) -> None:
    """Cancel a package."""
    from fieldsync.server.pipeline.states import InvalidTransitionError

    db = open_database(db_path)
    try:
        package = require_package(db, package_number)
        try:
            open_pipeline(db).cancel(package.id, reason, discard=not keep_staging)
        except InvalidTransitionError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Cancelled {package_number}.")
    finally:
        db.close()
