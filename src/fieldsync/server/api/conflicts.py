"""Conflict review API routes."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from fieldsync.core.types import ConflictPriority, ConflictStatus
from fieldsync.server.api.deps import get_db, get_pipeline
from fieldsync.server.database import ConflictNotFoundError, Database
from fieldsync.server.pipeline import conflicts as workflow
from fieldsync.server.pipeline.conflicts import ConflictWorkflowError
from fieldsync.server.pipeline.orchestrator import ImportPipeline
from fieldsync.server.schemas import (
    AssignRequest,
    AutoResolveRequest,
    ConflictResponse,
    EscalateRequest,
    IgnoreRequest,
    PriorityRequest,
    ResolveRequest,
    ReviewAttemptRequest,
    conflict_to_response,
)

router = APIRouter(prefix="/api/conflicts", tags=["conflicts"])


def _apply(
    pipeline: ImportPipeline,
    conflict_id: int,
    operation: Callable[[workflow.ConflictState], workflow.ConflictState],
) -> ConflictResponse:
    try:
        conflict = pipeline.update_conflict(conflict_id, operation)
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ConflictWorkflowError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return conflict_to_response(conflict)


@router.get("", response_model=list[ConflictResponse])
def list_conflicts(
    conflict_status: ConflictStatus | None = Query(default=None, alias="status"),
    package_id: int | None = Query(default=None, alias="packageId"),
    priority: ConflictPriority | None = Query(default=None),
    overdue_only: bool = Query(default=False, alias="overdueOnly"),
    db: Database = Depends(get_db),
) -> list[ConflictResponse]:
    """List the conflict review queue, high priority first."""
    conflicts = db.list_conflicts(
        status=conflict_status,
        package_id=package_id,
        priority=priority.value if priority else None,
        overdue_only=overdue_only,
    )
    return [conflict_to_response(c) for c in conflicts]


@router.get("/summary")
def conflict_summary(
    package_id: int | None = Query(default=None, alias="packageId"),
    db: Database = Depends(get_db),
) -> dict[str, Any]:
    """Count conflicts by status and type."""
    return db.conflict_summary(package_id)


@router.get("/{conflict_id}", response_model=ConflictResponse)
def get_conflict(
    conflict_id: int,
    db: Database = Depends(get_db),
) -> ConflictResponse:
    """Get a conflict with its comparison data."""
    conflict = db.get_conflict(conflict_id)
    if conflict is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Conflict not found: {conflict_id}",
        )
    return conflict_to_response(conflict)


@router.post("/{conflict_id}/assign", response_model=ConflictResponse)
def assign_conflict(
    conflict_id: int,
    body: AssignRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> ConflictResponse:
    """Assign a conflict to a reviewer."""
    return _apply(
        pipeline,
        conflict_id,
        lambda s: workflow.assign(
            s, user=body.user, target_resolution_hours=body.target_resolution_hours
        ),
    )


@router.post("/{conflict_id}/resolve", response_model=ConflictResponse)
def resolve_conflict(
    conflict_id: int,
    body: ResolveRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> ConflictResponse:
    """Resolve a conflict with a reviewer decision."""
    try:
        conflict = pipeline.resolve_conflict(
            conflict_id,
            body.action,
            user=body.user,
            reason=body.reason,
            notes=body.notes,
            merged_entity_id=body.merged_entity_id,
            discarded_entity_id=body.discarded_entity_id,
            merge_mapping=body.merge_mapping,
        )
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ConflictWorkflowError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return conflict_to_response(conflict)


@router.post("/{conflict_id}/auto-resolve", response_model=ConflictResponse)
def auto_resolve_conflict(
    conflict_id: int,
    body: AutoResolveRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> ConflictResponse:
    """Resolve a conflict by a named automatic rule."""
    return _apply(
        pipeline, conflict_id, lambda s: workflow.auto_resolve(s, body.action, rule=body.rule)
    )


@router.post("/{conflict_id}/ignore", response_model=ConflictResponse)
def ignore_conflict(
    conflict_id: int,
    body: IgnoreRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> ConflictResponse:
    """Dismiss a conflict as a false positive."""
    return _apply(
        pipeline, conflict_id, lambda s: workflow.ignore(s, user=body.user, reason=body.reason)
    )


@router.post("/{conflict_id}/escalate", response_model=ConflictResponse)
def escalate_conflict(
    conflict_id: int,
    body: EscalateRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> ConflictResponse:
    """Escalate a conflict; priority becomes High."""
    return _apply(
        pipeline, conflict_id, lambda s: workflow.escalate(s, user=body.user, reason=body.reason)
    )


@router.post("/{conflict_id}/review-attempts", response_model=ConflictResponse)
def record_review_attempt(
    conflict_id: int,
    body: ReviewAttemptRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> ConflictResponse:
    """Record a review attempt that did not reach a decision."""
    return _apply(
        pipeline, conflict_id, lambda s: workflow.record_review_attempt(s, notes=body.notes)
    )


@router.post("/{conflict_id}/priority", response_model=ConflictResponse)
def update_priority(
    conflict_id: int,
    body: PriorityRequest,
    pipeline: ImportPipeline = Depends(get_pipeline),
) -> ConflictResponse:
    """Change the priority of an open conflict."""
    return _apply(
        pipeline, conflict_id, lambda s: workflow.update_priority(s, body.priority)
    )
