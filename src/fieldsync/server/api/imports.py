"""Import package API routes for operators."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from fieldsync.core.types import EntityKind
from fieldsync.server.api.deps import get_db, get_pipeline
from fieldsync.server.database import Database, PackageNotFoundError
from fieldsync.server.models import StagingError
from fieldsync.server.pipeline.commit import CommitError
from fieldsync.server.pipeline.orchestrator import ImportPipeline
from fieldsync.server.pipeline.states import InvalidTransitionError
from fieldsync.server.schemas import (
    ApproveRequest,
    ApproveResponse,
    CommitResponse,
    PackageResponse,
    ReasonRequest,
    StagingSummaryResponse,
    package_to_response,
)

router = APIRouter(prefix="/api/imports", tags=["imports"])


def _not_found(e: PackageNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/{package_id}", response_model=PackageResponse)
def get_package(
    package_id: int,
    db: Database = Depends(get_db),
) -> PackageResponse:
    """Get an import package."""
    try:
        package = db.require_package(package_id)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    return package_to_response(package)


@router.get("/{package_id}/validation")
def get_validation_report(
    package_id: int,
    db: Database = Depends(get_db),
) -> dict[str, Any]:
    """Get the per-level validation report of a package."""
    try:
        package = db.require_package(package_id)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    if package.validation_report_json is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Package {package.package_number} has not been validated",
        )
    report: dict[str, Any] = json.loads(package.validation_report_json)
    return report


@router.get("/{package_id}/staging", response_model=StagingSummaryResponse)
def get_staging_summary(
    package_id: int,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> StagingSummaryResponse:
    """Count staged records per kind and validation status."""
    try:
        summary = pipeline.staging_summary(package_id)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    return StagingSummaryResponse(total=summary.total, counts=summary.counts)


@router.post("/{package_id}/approve", response_model=ApproveResponse)
def approve_records(
    package_id: int,
    body: ApproveRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> ApproveResponse:
    """Approve staged records for commit."""
    record_ids = None
    if body.record_ids is not None:
        try:
            record_ids = {EntityKind(kind): ids for kind, ids in body.record_ids.items()}
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(e),
            ) from e
    try:
        approved = pipeline.approve(package_id, record_ids)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    except (InvalidTransitionError, StagingError) as e:
        raise _conflict(e) from e
    return ApproveResponse(approved=approved)


@router.post("/{package_id}/commit", response_model=CommitResponse)
def commit_package(
    package_id: int,
    pipeline: ImportPipeline = Depends(get_pipeline),
    db: Database = Depends(get_db),
) -> CommitResponse:
    """Commit approved records to production."""
    try:
        report = pipeline.commit(package_id)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    except (InvalidTransitionError, CommitError) as e:
        raise _conflict(e) from e
    return CommitResponse(
        package=package_to_response(db.require_package(package_id)),
        summary=report.to_dict(),
    )


@router.post("/{package_id}/reset-commit", response_model=PackageResponse)
def reset_commit(
    package_id: int,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> PackageResponse:
    """Return a package stuck in Committing to ReadyToCommit."""
    try:
        package = pipeline.reset_commit(package_id)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e
    return package_to_response(package)


@router.post("/{package_id}/cancel", response_model=PackageResponse)
def cancel_package(
    package_id: int,
    body: ReasonRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> PackageResponse:
    """Cancel a package."""
    try:
        package = pipeline.cancel(package_id, body.reason, discard=body.discard_staging)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e
    return package_to_response(package)


@router.post("/{package_id}/quarantine", response_model=PackageResponse)
def quarantine_package(
    package_id: int,
    body: ReasonRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> PackageResponse:
    """Quarantine a package for manual inspection."""
    try:
        package = pipeline.quarantine(package_id, body.reason)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e
    return package_to_response(package)


@router.post("/{package_id}/archive", response_model=PackageResponse)
def archive_package(
    package_id: int,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> PackageResponse:
    """Archive a finished package."""
    try:
        package = pipeline.archive(package_id)
    except PackageNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e
    return package_to_response(package)
