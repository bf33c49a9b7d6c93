"""
Row processing for one sheet of a book import.

Transaction rows become ``RowTask`` objects. Sequence numbers are
settled for the whole sheet before any row is saved (explicit numbers are
claimed first, then the rest are allocated), after which rows are saved in
parallel with a bounded worker pool. A failing row turns into a ``RowError``
on the sheet summary; it never stops its siblings.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from folio.api.schemas.imports import ImportJobSummary, RowError, SheetSummary
from folio.db.repositories import CatalogRepository
from folio.domain.imports.columns import (
    TRANSACTION_COLUMN_ALIASES,
    maybe_parse_json,
    pick_column,
    pick_int,
    split_image_list,
    split_multi_values,
)
from folio.domain.imports.entity_cache import EntityResolutionCache
from folio.domain.imports.jobs import ImportJob, ImportJobRegistry
from folio.domain.imports.lookup import (
    SequenceAllocator,
    TransactionLookupIndex,
    row_label,
    title_key,
)
from folio.utils.text import normalize_text

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Plain text columns copied onto the transaction as-is.
TEXT_FIELDS = (
    "keywords",
    "foot_note",
    "paragraph_no",
    "page_no",
    "information_rating",
    "remark",
    "summary",
    "conclusion",
)


@dataclass
class RowTask:
    row_index: int
    row: Dict[str, str]
    title: Optional[str]
    title_key: str
    sr_no: Optional[int]
    explicit_sr_no: bool
    error: Optional[str] = None

    @property
    def label(self) -> str:
        return row_label(self.title_key, self.row_index)


@dataclass
class SheetImportContext:
    """Everything a row worker needs to save rows of one sheet."""

    job: ImportJob
    registry: ImportJobRegistry
    repository: CatalogRepository
    cache: EntityResolutionCache
    user_id: str
    book_id: str
    index: TransactionLookupIndex
    file_index: int
    sheet_index: int
    file_name: str
    sheet_name: str

    def sheet_summary(self, draft: ImportJobSummary) -> SheetSummary:
        return draft.files[self.file_index].sheets[self.sheet_index]


def prepare_row_tasks(
    rows: Sequence[Dict[str, str]],
    index: TransactionLookupIndex,
    allocator: SequenceAllocator,
    skip_parent_row: bool = True,
) -> List[RowTask]:
    """
    Build the tasks for the transaction rows of a sheet and settle their
    sequence numbers. ``row_index`` counts data rows from 1; when the first
    row defined the book it is not a task, so the first task is row 2.
    """
    first = 1 if skip_parent_row else 0
    tasks: List[RowTask] = []
    for row_index, row in enumerate(rows[first:], start=first + 1):
        title = pick_column(row, TRANSACTION_COLUMN_ALIASES["title"])
        sr_no = pick_int(row, TRANSACTION_COLUMN_ALIASES["sr_no"])
        tasks.append(
            RowTask(
                row_index=row_index,
                row=row,
                title=title,
                title_key=title_key(title),
                sr_no=sr_no,
                explicit_sr_no=sr_no is not None,
            )
        )

    # Explicit numbers first so allocation below steps around them.
    for task in tasks:
        if task.explicit_sr_no and not allocator.claim_explicit(task.sr_no, task.label):
            task.error = f"Sr No {task.sr_no} is already used by another row in this import"

    allocated_by_title: Dict[str, int] = {}
    for task in tasks:
        if task.explicit_sr_no:
            continue
        if task.title_key in allocated_by_title:
            task.sr_no = allocated_by_title[task.title_key]
            continue
        matched_id = index.by_title(task.title_key)
        if matched_id is not None:
            task.sr_no = index.sr_no_of(matched_id)
        if task.sr_no is None:
            task.sr_no = allocator.allocate(task.label)
        if task.title_key:
            allocated_by_title[task.title_key] = task.sr_no

    return tasks


def run_with_concurrency(items: Sequence[T], limit: int, worker: Callable[[T], R]) -> List[R]:
    """
    Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Every item is started and awaited even when some fail; the first failure
    is re-raised only after all of them settled. Results keep input order.
    """
    if not items:
        return []

    max_workers = max(1, min(limit, len(items)))
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="book-import-row") as executor:
        futures = [executor.submit(worker, item) for item in items]
        wait(futures)
    return [future.result() for future in futures]


def _unique_names(names: Sequence[str]) -> List[str]:
    seen = set()
    unique = []
    for name in names:
        key = normalize_text(name)
        if key and key not in seen:
            seen.add(key)
            unique.append(name)
    return unique


def resolve_row_terms(cache: EntityResolutionCache, row: Dict[str, str]) -> Tuple[List[str], List[str]]:
    """
    Resolve the generic subjects and specific tags named by a row.

    Categories line up with tag names by position; a single category applies
    to every tag of the row.
    """
    subject_names = _unique_names(
        split_multi_values(pick_column(row, TRANSACTION_COLUMN_ALIASES["generic_subject_names"]))
    )
    tag_names = split_multi_values(pick_column(row, TRANSACTION_COLUMN_ALIASES["tag_names"]))
    categories = split_multi_values(
        pick_column(row, TRANSACTION_COLUMN_ALIASES["tag_category"]),
        keep_empty=True,
    )
    if len(categories) == 1:
        categories = categories * len(tag_names)
    elif len(categories) != len(tag_names):
        categories = [None] * len(tag_names)

    subject_ids = [cache.resolve_generic_subject(name)["id"] for name in subject_names]

    tag_ids = []
    seen_tags = set()
    for name, category in zip(tag_names, categories):
        key = normalize_text(name)
        if key in seen_tags:
            continue
        seen_tags.add(key)
        tag_ids.append(cache.resolve_tag(name, category or None)["id"])
    return subject_ids, tag_ids


def build_transaction_data(task: RowTask) -> Tuple[Dict[str, Any], Optional[List[str]]]:
    """Scalar fields of a row, plus its image list (None when the row gives no images)."""
    row = task.row
    data: Dict[str, Any] = {"title": task.title}
    for field in TEXT_FIELDS:
        data[field] = pick_column(row, TRANSACTION_COLUMN_ALIASES[field])
    data["relevant_paragraph"] = maybe_parse_json(
        pick_column(row, TRANSACTION_COLUMN_ALIASES["relevant_paragraph"])
    )

    images = split_image_list(pick_column(row, TRANSACTION_COLUMN_ALIASES["images"]))
    if not images:
        return data, None
    data["image_url"] = images[0]
    return data, images


def _record_row_success(ctx: SheetImportContext, task: RowTask, mode: str, saved: Dict[str, Any]) -> None:
    def _count(draft: ImportJobSummary) -> None:
        sheet = ctx.sheet_summary(draft)
        if mode == "created":
            sheet.created += 1
            draft.total_created += 1
        else:
            sheet.updated += 1
            draft.total_updated += 1

    ctx.registry.update_summary(ctx.job, _count)
    ctx.registry.emit(
        ctx.job,
        "row-success",
        {
            "file_name": ctx.file_name,
            "sheet": ctx.sheet_name,
            "row_index": task.row_index,
            "mode": mode,
            "transaction_id": saved["id"],
            "sr_no": saved["sr_no"],
        },
    )


def _record_row_error(ctx: SheetImportContext, row_index: int, message: str, fields: List[str]) -> None:
    error = RowError(row_index=row_index, message=message, fields=fields)

    def _skip(draft: ImportJobSummary) -> None:
        sheet = ctx.sheet_summary(draft)
        sheet.errors.append(error)
        sheet.skipped += 1
        draft.total_skipped += 1

    ctx.registry.update_summary(ctx.job, _skip)
    ctx.registry.emit(
        ctx.job,
        "row-error",
        {
            "file_name": ctx.file_name,
            "sheet": ctx.sheet_name,
            "row_index": row_index,
            "message": message,
            "fields": fields,
        },
    )


def process_row(ctx: SheetImportContext, task: RowTask) -> Optional[str]:
    """
    Save one row as a new or updated transaction. Returns "created",
    "updated", or None when the row was skipped.
    """
    if task.error:
        _record_row_error(ctx, task.row_index, task.error, ["sr_no"])
        return None

    try:
        subject_ids, tag_ids = resolve_row_terms(ctx.cache, task.row)
        data, image_urls = build_transaction_data(task)

        with ctx.index.locked(task.sr_no, task.title_key):
            existing_id = ctx.index.match(task.sr_no if task.explicit_sr_no else None, task.title_key)
            if existing_id is not None:
                if task.explicit_sr_no:
                    data["sr_no"] = task.sr_no
                saved = ctx.repository.update_transaction(existing_id, data, subject_ids, tag_ids, image_urls)
                mode = "updated"
            else:
                data["sr_no"] = task.sr_no
                saved = ctx.repository.create_transaction(
                    ctx.user_id, ctx.book_id, data, subject_ids, tag_ids, image_urls
                )
                mode = "created"
            ctx.index.record(saved["id"], saved["sr_no"], task.title_key)
    except Exception as exc:
        logger.warning(
            "Row %d of %s::%s could not be saved: %s", task.row_index, ctx.file_name, ctx.sheet_name, exc
        )
        _record_row_error(ctx, task.row_index, str(exc) or exc.__class__.__name__, ["database"])
        return None

    _record_row_success(ctx, task, mode, saved)
    return mode


def import_rows(ctx: SheetImportContext, tasks: Sequence[RowTask], limit: int) -> List[Optional[str]]:
    logger.info(
        "Importing %d row(s) of %s::%s into book %s with %d worker(s)",
        len(tasks),
        ctx.file_name,
        ctx.sheet_name,
        ctx.book_id,
        limit,
    )
    return run_with_concurrency(tasks, limit, lambda task: process_row(ctx, task))
