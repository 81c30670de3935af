"""
Endpoints for the lead import pipeline: upload, mapping and options, parse and
commit control, progress, row review and job housekeeping.
"""
import json
import logging
from typing import Any, Dict, Iterator, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse

from leadflow.api.dependencies import to_http_exception
from leadflow.api.schemas.imports import (
    CommitRequest,
    CreateImportResponse,
    DeleteImportResponse,
    DownloadUrlResponse,
    EditRowRequest,
    ImportJobListResponse,
    ImportJobResponse,
    ImportRowResponse,
    ImportRowsResponse,
    PrecheckResponse,
    ProgressSnapshot,
    RetryRequest,
    RowDecisionRequest,
    RowDecisionResponse,
    UiStateRequest,
    UpdateMappingRequest,
    UpdateMappingResponse,
    UpdateOptionsRequest,
)
from leadflow.core.config import settings
from leadflow.core.security import User, get_current_user, require_admin
from leadflow.domain.imports import service
from leadflow.domain.imports.error_report import build_error_report, error_report_filename
from leadflow.domain.imports.errors import ImportPipelineError
from leadflow.domain.imports.progress import Subscription, is_terminal_snapshot
from leadflow.integrations.storage import StorageError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _call(operation, *args, **kwargs):
    """Run a service call, translating pipeline and storage errors."""
    try:
        return operation(*args, **kwargs)
    except HTTPException:
        raise
    except (ImportPipelineError, StorageError) as e:
        raise to_http_exception(e)


def _job_response(job: Dict[str, Any]) -> ImportJobResponse:
    return ImportJobResponse(success=True, job=job)


@router.post("", response_model=CreateImportResponse)
def create_import(
    file: UploadFile = File(...),
    current_user: User = Depends(require_admin),
):
    """
    Upload a CSV or XLSX file and open an import job.

    Returns:
    - Job id and storage locator
    - Suggested column mapping with its completeness status
    - ``deduplicated`` when the same file was already uploaded by this user
    """
    content = file.file.read()
    logger.info("Upload of %s (%d bytes) by user %s", file.filename, len(content), current_user.id)
    result = _call(
        service.create_import_job,
        current_user.id,
        file.filename or "upload",
        content,
        file.content_type,
    )
    return CreateImportResponse(success=True, **result)


@router.get("", response_model=ImportJobListResponse)
def list_imports(
    owner_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
):
    jobs, total = service.list_import_jobs(owner_id=owner_id, status=status, limit=limit, offset=offset)
    return ImportJobListResponse(
        success=True,
        jobs=jobs,
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}", response_model=ImportJobResponse)
def get_import(job_id: str, current_user: User = Depends(get_current_user)):
    return _job_response(_call(service.get_import_job, job_id))


@router.put("/{job_id}/mapping", response_model=UpdateMappingResponse)
def update_mapping(
    job_id: str,
    request: UpdateMappingRequest,
    current_user: User = Depends(require_admin),
):
    mapping = [entry.model_dump(exclude_unset=True) for entry in request.column_mapping]
    result = _call(service.set_column_mapping, job_id, mapping)
    return UpdateMappingResponse(success=True, **result)


@router.put("/{job_id}/options", response_model=ImportJobResponse)
def update_options(
    job_id: str,
    request: UpdateOptionsRequest,
    current_user: User = Depends(require_admin),
):
    job = _call(
        service.set_options,
        job_id,
        assignment_config=request.assignment_config.model_dump() if request.assignment_config else None,
        duplicate_config=(
            request.duplicate_config.model_dump(exclude_unset=True) if request.duplicate_config else None
        ),
    )
    return _job_response(job)


@router.post("/{job_id}/parse", response_model=ImportJobResponse)
def start_parse(job_id: str, current_user: User = Depends(require_admin)):
    return _job_response(_call(service.enqueue_parse, job_id))


@router.post("/{job_id}/precheck", response_model=PrecheckResponse)
def precheck(job_id: str, current_user: User = Depends(require_admin)):
    return PrecheckResponse(success=True, **_call(service.precheck_duplicates, job_id))


@router.post("/{job_id}/commit", response_model=ImportJobResponse)
def start_commit(
    job_id: str,
    request: Optional[CommitRequest] = None,
    current_user: User = Depends(require_admin),
):
    config = request.model_dump(exclude_unset=True, exclude_none=True) if request else None
    return _job_response(_call(service.enqueue_commit, job_id, config or None))


@router.post("/{job_id}/cancel", response_model=ImportJobResponse)
def cancel_import(job_id: str, current_user: User = Depends(require_admin)):
    return _job_response(_call(service.cancel, job_id))


@router.post("/{job_id}/retry", response_model=ImportJobResponse)
def retry_import(
    job_id: str,
    request: Optional[RetryRequest] = None,
    current_user: User = Depends(require_admin),
):
    phase = request.phase if request else None
    return _job_response(_call(service.retry, job_id, phase))


@router.get("/{job_id}/status", response_model=ProgressSnapshot)
def get_status(job_id: str, current_user: User = Depends(get_current_user)):
    return _call(service.poll_status, job_id)


def _format_event(snapshot: Dict[str, Any]) -> str:
    return f"event: progress\ndata: {json.dumps(snapshot)}\n\n"


def _event_stream(initial: Dict[str, Any], subscription: Subscription) -> Iterator[str]:
    try:
        yield _format_event(initial)
        if is_terminal_snapshot(initial):
            return
        while True:
            snapshot = subscription.next(timeout=settings.progress_heartbeat_seconds)
            if snapshot is None:
                if subscription.closed:
                    return
                yield ": heartbeat\n\n"
                continue
            yield _format_event(snapshot)
            if is_terminal_snapshot(snapshot):
                return
    finally:
        subscription.close()


@router.get("/{job_id}/events")
def stream_events(job_id: str, current_user: User = Depends(get_current_user)):
    """
    Server-Sent Events stream of progress snapshots.

    The first event is the current state; the stream ends after a terminal
    snapshot. Comment lines are sent as heartbeats while nothing changes.
    """
    initial, subscription = _call(service.subscribe_progress, job_id)
    return StreamingResponse(
        _event_stream(initial, subscription),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/{job_id}/rows", response_model=ImportRowsResponse)
def list_rows(
    job_id: str,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_user),
):
    result = _call(service.get_rows, job_id, status_filter=status, page=page, page_size=page_size)
    return ImportRowsResponse(success=True, **result)


@router.post("/{job_id}/rows/decisions", response_model=RowDecisionResponse)
def decide_rows(
    job_id: str,
    request: RowDecisionRequest,
    current_user: User = Depends(require_admin),
):
    """
    Record skip/import/update decisions on valid rows before the commit.

    Target rows by ``row_numbers``, by ``status`` filter, or leave both out
    to cover every valid row. A null ``decision`` clears earlier ones.
    """
    result = _call(
        service.set_row_decisions,
        job_id,
        request.decision,
        row_numbers=request.row_numbers,
        status_filter=request.status,
    )
    return RowDecisionResponse(success=True, **result)


@router.patch("/{job_id}/rows/{row_number}", response_model=ImportRowResponse)
def edit_row(
    job_id: str,
    row_number: int,
    request: EditRowRequest,
    current_user: User = Depends(require_admin),
):
    row = _call(service.edit_row, job_id, row_number, request.values)
    return ImportRowResponse(success=True, row=row)


@router.patch("/{job_id}/ui-state", response_model=ImportJobResponse)
def update_ui_state(
    job_id: str,
    request: UiStateRequest,
    current_user: User = Depends(require_admin),
):
    return _job_response(_call(service.update_ui_state, job_id, request.ui_state))


@router.get("/{job_id}/error-report")
def download_error_report(job_id: str, current_user: User = Depends(get_current_user)):
    job = _call(service.get_import_job, job_id)
    return StreamingResponse(
        build_error_report(job_id),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{error_report_filename(job)}"',
            "X-Row-Count": str(job["invalid_rows"] or 0),
        },
    )


@router.get("/{job_id}/download-url", response_model=DownloadUrlResponse)
def get_download_url(job_id: str, current_user: User = Depends(get_current_user)):
    return DownloadUrlResponse(success=True, **_call(service.get_download_url, job_id))


@router.delete("/{job_id}", response_model=DeleteImportResponse)
def delete_import(job_id: str, current_user: User = Depends(require_admin)):
    _call(service.delete_import_job, job_id)
    return DeleteImportResponse(success=True, message=f"Import job {job_id} deleted")
