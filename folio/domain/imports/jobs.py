"""
In-memory tracking for book import jobs.

The registry owns every job for the lifetime of the process: its summary, its
append-only event log and the background task that runs it. Every summary
mutation is followed by a full ``summary`` snapshot event so a subscriber that
reconnects mid-job can rebuild the current state from the latest snapshot.
Older ``summary`` events keep only a ``superseded_by`` pointer.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence

from folio.api.schemas.imports import (
    TERMINAL_STATUSES,
    FileSummary,
    ImportJobEvent,
    ImportJobSummary,
    JobStatus,
    utcnow,
)
from folio.core.config import settings

logger = logging.getLogger(__name__)

JOB_EVENT_TYPES = {
    "job-created",
    "job-started",
    "job-completed",
    "job-failed",
    "file-start",
    "file-complete",
    "file-error",
    "sheet-start",
    "sheet-complete",
    "row-success",
    "row-error",
    "summary",
}


class ImportJob:
    """State of one submission. Mutated only through ``ImportJobRegistry``."""

    def __init__(self, job_id: str, user_id: str, summary: ImportJobSummary):
        self.id = job_id
        self.user_id = user_id
        self.summary = summary
        self.events: List[ImportJobEvent] = []
        self.future: Optional[Future] = None
        self.latest_summary_sequence: Optional[int] = None
        self.condition = threading.Condition(threading.RLock())

    @property
    def status(self) -> JobStatus:
        return self.summary.status

    @property
    def is_finished(self) -> bool:
        return self.summary.status in TERMINAL_STATUSES


class ImportJobRegistry:
    """Creates jobs, runs them in the background and publishes their progress."""

    def __init__(self, max_workers: Optional[int] = None):
        self._jobs: Dict[str, ImportJob] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers or settings.import_job_workers),
            thread_name_prefix="book-import-job",
        )

    # -------------------------------------------------------------- lifecycle

    def create_job(self, user_id: str, files: Sequence[Dict[str, str]]) -> ImportJob:
        job_id = str(uuid.uuid4())
        summary = ImportJobSummary(
            job_id=job_id,
            user_id=user_id,
            files=[FileSummary(file_name=f["file_name"], file_type=f["file_type"]) for f in files],
        )
        job = ImportJob(job_id, user_id, summary)
        with self._lock:
            self._jobs[job_id] = job

        logger.info("Created import job %s for user %s with %d file(s)", job_id, user_id, len(files))
        self.emit(job, "job-created", {"job_id": job_id})
        self.publish_summary(job)
        return job

    def get_job(self, job_id: str) -> Optional[ImportJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, user_id: Optional[str] = None) -> List[ImportJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if user_id is not None:
            jobs = [job for job in jobs if job.user_id == user_id]
        return sorted(jobs, key=lambda job: job.summary.started_at, reverse=True)

    def submit(self, job: ImportJob, runner: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Run ``runner(job, *args)`` on the registry's executor; the registry owns the task."""

        def _run() -> Any:
            try:
                return runner(job, *args, **kwargs)
            except Exception as exc:
                logger.exception("Import job %s crashed", job.id)
                if not job.is_finished:
                    self.complete_job(job, "failed", str(exc) or "Import failed")
                return None

        job.future = self._executor.submit(_run)
        return job.future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ---------------------------------------------------------------- events

    def emit(self, job: ImportJob, event_type: str, payload: Optional[Dict[str, Any]] = None) -> ImportJobEvent:
        if event_type not in JOB_EVENT_TYPES:
            raise ValueError(f"Unknown import job event '{event_type}'")
        with job.condition:
            event = ImportJobEvent(sequence=len(job.events), type=event_type, payload=payload or {})
            job.events.append(event)
            job.condition.notify_all()
        logger.debug("Job %s event #%d %s", job.id, event.sequence, event_type)
        return event

    def publish_summary(self, job: ImportJob) -> ImportJobEvent:
        """
        Append a full ``summary`` event and shrink the previous one to a pointer.

        Only the newest snapshot is kept whole, so the log grows with the number
        of events rather than with events times summary size.
        """
        with job.condition:
            event = self.emit(job, "summary", self._snapshot_locked(job))
            previous = job.latest_summary_sequence
            if previous is not None:
                job.events[previous] = job.events[previous].model_copy(
                    update={"payload": {"superseded_by": event.sequence}}
                )
            job.latest_summary_sequence = event.sequence
            return event

    def update_summary(self, job: ImportJob, updater: Callable[[ImportJobSummary], Any]) -> Any:
        """Apply ``updater`` under the job lock and publish the new snapshot."""
        with job.condition:
            result = updater(job.summary)
            self.publish_summary(job)
            return result

    def complete_job(self, job: ImportJob, status: JobStatus, error: Optional[str] = None) -> None:
        def _finish(draft: ImportJobSummary) -> None:
            draft.status = status
            draft.finished_at = utcnow()
            if error:
                for file_summary in draft.files:
                    if file_summary.status in ("pending", "processing"):
                        file_summary.status = "failed"
                        file_summary.error = error

        with job.condition:
            self.update_summary(job, _finish)
            self.emit(
                job,
                "job-completed" if status == "completed" else "job-failed",
                {"job_id": job.id, "error": error},
            )
        logger.info(
            "Import job %s finished with status %s (created=%d, updated=%d, skipped=%d)",
            job.id,
            status,
            job.summary.total_created,
            job.summary.total_updated,
            job.summary.total_skipped,
        )

    # ------------------------------------------------------------- observers

    def _snapshot_locked(self, job: ImportJob) -> Dict[str, Any]:
        return job.summary.model_dump(mode="json")

    def latest_snapshot(self, job: ImportJob) -> ImportJobSummary:
        with job.condition:
            return job.summary.model_copy(deep=True)

    def events_since(self, job: ImportJob, cursor: int = 0) -> List[ImportJobEvent]:
        with job.condition:
            return list(job.events[max(cursor, 0):])

    def wait_for_events(self, job: ImportJob, cursor: int, timeout: Optional[float] = None) -> List[ImportJobEvent]:
        """
        Block until events after ``cursor`` exist, the job is finished, or
        ``timeout`` seconds elapse. Returns the (possibly empty) new events.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with job.condition:
            while len(job.events) <= cursor and not job.is_finished:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                job.condition.wait(remaining)
            return list(job.events[max(cursor, 0):])


_registry: Optional[ImportJobRegistry] = None
_registry_lock = threading.Lock()


def get_job_registry() -> ImportJobRegistry:
    """Process-wide registry used by the API routers."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ImportJobRegistry()
        return _registry


def shutdown_job_registry(wait: bool = True) -> None:
    """Stop the process-wide registry; the next ``get_job_registry`` call starts a fresh one."""
    global _registry
    with _registry_lock:
        registry, _registry = _registry, None
    if registry is not None:
        registry.shutdown(wait=wait)
