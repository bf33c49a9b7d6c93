"""
Book import orchestration.

One call to ``run_import_job`` drives a whole submission: files and their
sheets are processed one after another, the rows of each sheet in parallel.
Failures are contained at the level where they happen: a bad row skips the
row, a bad sheet fails the sheet and a bad file fails the file, while the
rest of the job keeps going.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from folio.api.schemas.imports import ImportJobSummary, SheetSummary
from folio.core.config import settings
from folio.db.repositories import CatalogRepository
from folio.domain.imports.columns import BOOK_COLUMN_ALIASES, pick_column, split_image_list, split_multi_values
from folio.domain.imports.entity_cache import EntityResolutionCache
from folio.domain.imports.jobs import ImportJob, ImportJobRegistry
from folio.domain.imports.lookup import DedupeKeySet, SequenceAllocator, TransactionLookupIndex
from folio.domain.imports.pipeline import SheetImportContext, import_rows, prepare_row_tasks
from folio.domain.imports.processors.spreadsheet_processor import (
    ImportFileError,
    PreparedFile,
    SheetRows,
    decode_file,
)

logger = logging.getLogger(__name__)

BOOK_SCALAR_FIELDS = (
    "library_number",
    "book_name",
    "book_summary",
    "page_numbers",
    "grade",
    "remark",
    "edition",
    "publisher_name",
    "cover_image_url",
)

_EDITOR_ROLE_RE = re.compile(r"^(?P<name>.*?)\s*\((?P<role>[^()]*)\)$")


class SheetStructureError(Exception):
    """A sheet cannot be imported as a whole (empty, unreadable, no parent book)."""


class JobImportContext:
    """State shared by every file and sheet of one job run."""

    def __init__(self, repository: CatalogRepository, user_id: str, explicit_book_name: Optional[str] = None):
        self.repository = repository
        self.user_id = user_id
        self.explicit_book_name = explicit_book_name.strip() if explicit_book_name else None
        self.cache = EntityResolutionCache(repository)
        self.dedupe_keys = DedupeKeySet()
        self.current_book: Optional[Dict[str, Any]] = None
        self._lookups: Dict[str, Tuple[TransactionLookupIndex, SequenceAllocator]] = {}

    def lookup_for(self, book_id: str) -> Tuple[TransactionLookupIndex, SequenceAllocator]:
        """Index and allocator of a book, built from storage on first use in the job."""
        if book_id not in self._lookups:
            refs = self.repository.list_transaction_refs(self.user_id, book_id)
            index = TransactionLookupIndex.from_records(book_id, refs)
            self._lookups[book_id] = (index, SequenceAllocator(index, self.dedupe_keys))
            logger.info("Indexed %d existing transaction(s) of book %s", len(index), book_id)
        return self._lookups[book_id]


def parse_editors(raw: Optional[str]) -> List[Dict[str, Optional[str]]]:
    """'Jane Doe (Translator); John Roe' -> [{name, role}, ...]"""
    editors = []
    for part in split_multi_values(raw):
        match = _EDITOR_ROLE_RE.match(part)
        if match and match.group("name"):
            editors.append({"name": match.group("name").strip(), "role": match.group("role").strip() or None})
        else:
            editors.append({"name": part, "role": None})
    return editors


def extract_book_data(row: Dict[str, str], explicit_book_name: Optional[str] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        field: pick_column(row, BOOK_COLUMN_ALIASES[field]) for field in BOOK_SCALAR_FIELDS
    }
    if explicit_book_name:
        data["book_name"] = explicit_book_name
    if not data.get("book_name"):
        data["book_name"] = data.get("library_number")
    data["editors"] = parse_editors(pick_column(row, BOOK_COLUMN_ALIASES["editors"]))
    data["images"] = split_image_list(pick_column(row, BOOK_COLUMN_ALIASES["book_images"]))
    return data


def resolve_sheet_book(context: JobImportContext, first_row: Dict[str, str]) -> Tuple[Dict[str, Any], bool]:
    """
    Book of a sheet, and whether ``first_row`` defined it.

    A first row without a Library Number is an ordinary transaction row of
    the book resolved earlier in the job.
    """
    data = extract_book_data(first_row, context.explicit_book_name)
    if not data.get("library_number"):
        if context.current_book is not None:
            logger.info("Sheet has no Library Number; reusing book %s", context.current_book["id"])
            return context.current_book, False
        raise SheetStructureError("Library Number is required in the first row of the sheet")

    book = context.cache.resolve_book(context.user_id, data)
    context.current_book = book
    return book, True


def _start_sheet(registry: ImportJobRegistry, job: ImportJob, file_index: int, sheet_name: str) -> int:
    def _append(draft: ImportJobSummary) -> int:
        sheets = draft.files[file_index].sheets
        sheets.append(SheetSummary(name=sheet_name, status="processing"))
        return len(sheets) - 1

    return registry.update_summary(job, _append)


def _finish_sheet(
    registry: ImportJobRegistry,
    job: ImportJob,
    file_index: int,
    sheet_index: int,
    error: Optional[str] = None,
) -> None:
    def _finish(draft: ImportJobSummary) -> SheetSummary:
        sheet = draft.files[file_index].sheets[sheet_index]
        sheet.status = "failed" if error else "completed"
        sheet.error = error
        return sheet.model_copy(deep=True)

    sheet = registry.update_summary(job, _finish)
    registry.emit(
        job,
        "sheet-complete",
        {
            "file_name": job.summary.files[file_index].file_name,
            "sheet": sheet.name,
            "status": sheet.status,
            "created": sheet.created,
            "updated": sheet.updated,
            "skipped": sheet.skipped,
            "error": error,
        },
    )


def import_sheet_rows(
    job: ImportJob,
    registry: ImportJobRegistry,
    context: JobImportContext,
    file_index: int,
    file_name: str,
    sheet: SheetRows,
    row_concurrency: int,
) -> bool:
    """Import one sheet; returns False when the sheet failed as a whole."""
    sheet_index = _start_sheet(registry, job, file_index, sheet.name)
    registry.emit(job, "sheet-start", {"file_name": file_name, "sheet": sheet.name, "rows": len(sheet.rows)})

    try:
        if sheet.error:
            raise SheetStructureError(sheet.error)
        if not sheet.rows:
            raise SheetStructureError("Sheet is empty")
        book, has_parent_row = resolve_sheet_book(context, sheet.rows[0])
        index, allocator = context.lookup_for(book["id"])
        tasks = prepare_row_tasks(sheet.rows, index, allocator, skip_parent_row=has_parent_row)
    except SheetStructureError as exc:
        logger.warning("Sheet '%s' of %s failed: %s", sheet.name, file_name, exc)
        _finish_sheet(registry, job, file_index, sheet_index, str(exc))
        return False
    except Exception as exc:
        logger.exception("Could not prepare sheet '%s' of %s", sheet.name, file_name)
        _finish_sheet(registry, job, file_index, sheet_index, f"Could not resolve book: {exc}")
        return False

    sheet_context = SheetImportContext(
        job=job,
        registry=registry,
        repository=context.repository,
        cache=context.cache,
        user_id=context.user_id,
        book_id=book["id"],
        index=index,
        file_index=file_index,
        sheet_index=sheet_index,
        file_name=file_name,
        sheet_name=sheet.name,
    )
    import_rows(sheet_context, tasks, row_concurrency)
    _finish_sheet(registry, job, file_index, sheet_index)
    return True


def _set_file_status(
    registry: ImportJobRegistry,
    job: ImportJob,
    file_index: int,
    status: str,
    error: Optional[str] = None,
) -> None:
    def _update(draft: ImportJobSummary) -> None:
        file_summary = draft.files[file_index]
        file_summary.status = status
        file_summary.error = error

    registry.update_summary(job, _update)


def process_single_file(
    job: ImportJob,
    registry: ImportJobRegistry,
    context: JobImportContext,
    file_index: int,
    prepared: PreparedFile,
    row_concurrency: int,
) -> bool:
    """Import every sheet of one file; returns False when the file failed."""
    file_name = prepared.file_name
    _set_file_status(registry, job, file_index, "processing")
    registry.emit(job, "file-start", {"file_name": file_name, "file_index": file_index})

    try:
        for sheet in decode_file(prepared):
            import_sheet_rows(job, registry, context, file_index, file_name, sheet, row_concurrency)
    except ImportFileError as exc:
        error = str(exc)
        logger.warning("File %s could not be imported: %s", file_name, error)
    except Exception as exc:
        error = str(exc) or exc.__class__.__name__
        logger.exception("Unexpected error while importing %s", file_name)
    else:
        _set_file_status(registry, job, file_index, "completed")
        registry.emit(job, "file-complete", {"file_name": file_name, "file_index": file_index})
        return True

    _set_file_status(registry, job, file_index, "failed", error)
    registry.emit(job, "file-error", {"file_name": file_name, "file_index": file_index, "error": error})
    return False


def run_import_job(
    job: ImportJob,
    registry: ImportJobRegistry,
    repository: CatalogRepository,
    files: Sequence[PreparedFile],
    explicit_book_name: Optional[str] = None,
    row_concurrency: Optional[int] = None,
) -> ImportJobSummary:
    """
    Run a whole import job to completion.

    Files are processed in submission order. A failed file does not stop the
    files after it; the job ends ``failed`` when any file failed and
    ``completed`` otherwise. Nothing already saved is rolled back.
    """
    limit = max(1, row_concurrency or settings.import_row_concurrency)

    def _start(draft: ImportJobSummary) -> None:
        draft.status = "processing"

    registry.update_summary(job, _start)
    registry.emit(job, "job-started", {"job_id": job.id, "files": len(files)})
    logger.info("Import job %s started with %d file(s)", job.id, len(files))

    context = JobImportContext(repository, job.user_id, explicit_book_name)
    failed_files = [
        prepared.file_name
        for file_index, prepared in enumerate(files)
        if not process_single_file(job, registry, context, file_index, prepared, limit)
    ]

    if failed_files:
        registry.complete_job(job, "failed", f"{len(failed_files)} file(s) failed: {', '.join(failed_files)}")
    else:
        registry.complete_job(job, "completed")
    return registry.latest_snapshot(job)
