"""Device sync API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from fieldsync.server.api.deps import get_db, get_sync_service
from fieldsync.server.database import Database
from fieldsync.server.pipeline.orchestrator import PackageTooLargeError
from fieldsync.server.schemas import (
    AcknowledgeRequest,
    AcknowledgeResponse,
    AssignmentsRequest,
    AssignmentsResponse,
    SyncSessionResponse,
    UploadResponse,
    acknowledge_to_response,
    download_to_response,
    session_to_response,
    upload_to_response,
)
from fieldsync.server.sync import SessionError, SessionNotFoundError, SyncService

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _session_error(e: SessionError) -> HTTPException:
    code = (
        status.HTTP_404_NOT_FOUND
        if isinstance(e, SessionNotFoundError)
        else status.HTTP_409_CONFLICT
    )
    return HTTPException(status_code=code, detail=str(e))


@router.post("/assignments", response_model=AssignmentsResponse)
def download_assignments(
    body: AssignmentsRequest,
    request: Request,
    service: SyncService = Depends(get_sync_service),
) -> AssignmentsResponse:
    """Download pending assignments and the vocabulary snapshot."""
    try:
        download = service.download_assignments(
            field_collector_id=body.field_collector_id,
            device_id=body.device_id,
            session_id=body.sync_session_id,
            modified_since=body.modified_since_utc,
            client_address=request.client.host if request.client else None,
        )
    except SessionError as e:
        raise _session_error(e) from e
    return download_to_response(download)


@router.post("/sessions/{session_id}/packages/{package_id}", response_model=UploadResponse)
async def upload_package(
    session_id: int,
    package_id: str,
    request: Request,
    checksum: str | None = Query(default=None),
    service: SyncService = Depends(get_sync_service),
) -> UploadResponse:
    """Upload a package file as the raw request body."""
    data = await request.body()
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Empty package data",
        )
    try:
        # The whole import pipeline runs here, so keep it off the event loop
        result = await run_in_threadpool(
            service.upload_package, session_id, package_id, checksum, data
        )
    except SessionError as e:
        raise _session_error(e) from e
    except PackageTooLargeError as e:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=str(e),
        ) from e
    return upload_to_response(result)


@router.post("/acknowledge", response_model=AcknowledgeResponse)
def acknowledge(
    body: AcknowledgeRequest,
    service: SyncService = Depends(get_sync_service),
) -> AcknowledgeResponse:
    """Confirm that assignments reached the device."""
    try:
        result = service.acknowledge(body.session_id, body.assignment_ids)
    except SessionError as e:
        raise _session_error(e) from e
    return acknowledge_to_response(result)


@router.get("/sessions/{session_id}", response_model=SyncSessionResponse)
def get_session(
    session_id: int,
    db: Database = Depends(get_db),
) -> SyncSessionResponse:
    """Get a sync session."""
    sync_session = db.get_sync_session(session_id)
    if sync_session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync session not found: {session_id}",
        )
    return session_to_response(sync_session)


@router.post("/sessions/{session_id}/complete", response_model=SyncSessionResponse)
def complete_session(
    session_id: int,
    service: SyncService = Depends(get_sync_service),
) -> SyncSessionResponse:
    """Close a sync session."""
    try:
        sync_session = service.complete_session(session_id)
    except SessionError as e:
        raise _session_error(e) from e
    return session_to_response(sync_session)
