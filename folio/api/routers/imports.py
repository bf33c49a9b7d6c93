"""
Endpoints for starting book imports and following their progress.
"""
import json
import logging
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from folio.api.dependencies import get_current_user_id, get_registry, get_repository
from folio.api.schemas.imports import (
    ImportJobEvent,
    ImportJobEventsResponse,
    ImportJobListResponse,
    ImportJobSummary,
    StartImportRequest,
    StartImportResponse,
)
from folio.core.config import settings
from folio.db.repositories import CatalogRepository
from folio.domain.imports.jobs import ImportJob, ImportJobRegistry
from folio.domain.imports.orchestrator import run_import_job
from folio.domain.imports.processors.spreadsheet_processor import prepare_incoming_file

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/book-import", tags=["book-import"])

TERMINAL_EVENTS = {"job-completed", "job-failed"}


def _payload_size(request: StartImportRequest) -> int:
    size = 0
    for payload in request.files:
        if payload.csv_text:
            size += len(payload.csv_text.encode("utf-8"))
        elif payload.data:
            size += len(payload.data) * 3 // 4
    return size


def _get_owned_job(registry: ImportJobRegistry, job_id: str, user_id: str) -> ImportJob:
    job = registry.get_job(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("", status_code=202, response_model=StartImportResponse)
async def start_book_import(
    request: StartImportRequest,
    user_id: str = Depends(get_current_user_id),
    repository: CatalogRepository = Depends(get_repository),
    registry: ImportJobRegistry = Depends(get_registry),
):
    """
    Queue an import of one or more files and return the initial job summary.

    Processing continues in the background; follow it with the job, events or
    status endpoints.
    """
    if not request.files:
        raise HTTPException(status_code=400, detail="No files provided")

    max_bytes = settings.import_max_request_mb * 1024 * 1024
    if _payload_size(request) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Import payload exceeds {settings.import_max_request_mb} MB",
        )

    prepared_files = [prepare_incoming_file(payload) for payload in request.files]
    job = registry.create_job(
        user_id,
        [{"file_name": f.file_name, "file_type": f.file_type} for f in prepared_files],
    )
    registry.submit(job, run_import_job, registry, repository, prepared_files, request.book_name)
    return StartImportResponse(summary=registry.latest_snapshot(job))


@router.get("/jobs", response_model=ImportJobListResponse)
async def list_book_import_jobs(
    user_id: str = Depends(get_current_user_id),
    registry: ImportJobRegistry = Depends(get_registry),
):
    jobs = [registry.latest_snapshot(job) for job in registry.list_jobs(user_id)]
    return ImportJobListResponse(success=True, jobs=jobs, total_count=len(jobs))


@router.get("/jobs/{job_id}", response_model=ImportJobSummary)
async def get_book_import_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: ImportJobRegistry = Depends(get_registry),
):
    return registry.latest_snapshot(_get_owned_job(registry, job_id, user_id))


@router.get("/jobs/{job_id}/events", response_model=ImportJobEventsResponse)
async def get_book_import_events(
    job_id: str,
    after: int = Query(0, ge=0, description="Return events with sequence >= after"),
    user_id: str = Depends(get_current_user_id),
    registry: ImportJobRegistry = Depends(get_registry),
):
    job = _get_owned_job(registry, job_id, user_id)
    events = registry.events_since(job, after)
    next_cursor = events[-1].sequence + 1 if events else after
    return ImportJobEventsResponse(
        job_id=job.id,
        events=events,
        next_cursor=next_cursor,
        summary=registry.latest_snapshot(job),
    )


def format_sse(event: ImportJobEvent) -> str:
    data = json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
    return f"id: {event.sequence}\nevent: {event.type}\ndata: {data}\n\n"


def stream_job_events(registry: ImportJobRegistry, job: ImportJob, cursor: int = 0) -> Iterator[str]:
    """Replay the job's events from ``cursor``, then follow live ones until a terminal event."""
    while True:
        events = registry.wait_for_events(job, cursor, timeout=settings.import_status_poll_seconds)
        if not events:
            if job.is_finished:
                return
            yield ": keep-alive\n\n"
            continue
        for event in events:
            yield format_sse(event)
            cursor = event.sequence + 1
            if event.type in TERMINAL_EVENTS:
                return


@router.get("/status")
async def stream_book_import_status(
    job_id: str,
    after: Optional[int] = Query(None, ge=0),
    last_event_id: Optional[str] = Header(None),
    user_id: str = Depends(get_current_user_id),
    registry: ImportJobRegistry = Depends(get_registry),
):
    """Server-sent events for one job. Reconnecting clients resume after ``Last-Event-ID``."""
    job = _get_owned_job(registry, job_id, user_id)
    cursor = after or 0
    if after is None and last_event_id and last_event_id.isdigit():
        cursor = int(last_event_id) + 1

    return StreamingResponse(
        stream_job_events(registry, job, cursor),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
