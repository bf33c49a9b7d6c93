"""
CSV export of a book and its transactions.

The header row is built from the first alias of every column in the import
alias table, and the first data row carries the book itself, so a downloaded
file can be fed straight back into the importer.
"""
import csv
import json
import logging
import re
from io import StringIO
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from folio.api.schemas.imports import EXPORT_VARIANTS
from folio.core.config import settings
from folio.db.repositories import CatalogRepository
from folio.domain.imports.columns import (
    BOM,
    MULTI_VALUE_DELIMITER,
    TRANSACTION_COLUMN_ALIASES,
    export_label,
    join_multi_values,
)

logger = logging.getLogger(__name__)

TRANSACTIONS_VARIANT = "transactions"
OVERVIEW_VARIANT = "book-overview"

BOOK_EXPORT_FIELDS = (
    "library_number",
    "book_name",
    "book_summary",
    "page_numbers",
    "grade",
    "remark",
    "edition",
    "publisher_name",
)
OVERVIEW_ONLY_BOOK_FIELDS = ("cover_image_url", "editors", "book_images")
TRANSACTION_EXPORT_FIELDS = tuple(TRANSACTION_COLUMN_ALIASES)

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class UnknownExportVariantError(ValueError):
    pass


def book_fields_for(variant: str) -> Tuple[str, ...]:
    if variant not in EXPORT_VARIANTS:
        raise UnknownExportVariantError(
            f"Unknown export variant '{variant}'. Expected one of: {', '.join(EXPORT_VARIANTS)}"
        )
    if variant == OVERVIEW_VARIANT:
        return BOOK_EXPORT_FIELDS + OVERVIEW_ONLY_BOOK_FIELDS
    return BOOK_EXPORT_FIELDS


def export_header(variant: str) -> List[str]:
    book_labels = [export_label("book", field) for field in book_fields_for(variant)]
    transaction_labels = [export_label("transaction", field) for field in TRANSACTION_EXPORT_FIELDS]
    return book_labels + transaction_labels


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def format_editors(editors: Iterable[Dict[str, Any]]) -> str:
    parts = []
    for editor in editors:
        name = editor.get("name")
        if not name:
            continue
        parts.append(f"{name} ({editor['role']})" if editor.get("role") else name)
    return MULTI_VALUE_DELIMITER.join(parts)


def format_relevant_paragraph(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _transaction_images(transaction: Dict[str, Any]) -> List[str]:
    urls = []
    for url in [transaction.get("image_url")] + list(transaction.get("images") or []):
        if url and url not in urls:
            urls.append(url)
    return urls


def book_cells(book: Dict[str, Any], variant: str) -> List[str]:
    cells = []
    for field in book_fields_for(variant):
        if field == "editors":
            cells.append(format_editors(book.get("editors") or []))
        elif field == "book_images":
            cells.append(MULTI_VALUE_DELIMITER.join(book.get("images") or []))
        else:
            cells.append(_text(book.get(field)))
    return cells


def transaction_cells(transaction: Dict[str, Any]) -> List[str]:
    tags = transaction.get("tags") or []
    categories = [tag.get("category") or "" for tag in tags]
    values = {
        "generic_subject_names": join_multi_values([s["name"] for s in transaction.get("generic_subjects") or []]),
        "tag_names": join_multi_values([tag["name"] for tag in tags]),
        # Positional with tag names; blanks keep the alignment.
        "tag_category": MULTI_VALUE_DELIMITER.join(categories) if any(categories) else "",
        "images": MULTI_VALUE_DELIMITER.join(_transaction_images(transaction)),
        "relevant_paragraph": format_relevant_paragraph(transaction.get("relevant_paragraph")),
    }
    return [
        values[field] if field in values else _text(transaction.get(field))
        for field in TRANSACTION_EXPORT_FIELDS
    ]


def build_export_rows(
    book: Dict[str, Any],
    transactions: Sequence[Dict[str, Any]],
    variant: str = TRANSACTIONS_VARIANT,
) -> List[List[str]]:
    """Header, then the book row, then one row per transaction."""
    book_width = len(book_fields_for(variant))
    empty_transaction = [""] * len(TRANSACTION_EXPORT_FIELDS)
    rows = [export_header(variant), book_cells(book, variant) + empty_transaction]
    for transaction in transactions:
        rows.append([""] * book_width + transaction_cells(transaction))
    return rows


def render_csv(rows: Iterable[Sequence[str]]) -> str:
    buffer = StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerows(rows)
    return BOM + buffer.getvalue()


def export_filename(variant: str, book: Dict[str, Any]) -> str:
    library_number = _UNSAFE_FILENAME_RE.sub("-", _text(book.get("library_number"))).strip("-") or book["id"]
    return f"{variant}-{library_number}.csv"


def export_book_csv(
    repository: CatalogRepository,
    user_id: str,
    book_id: str,
    variant: str = TRANSACTIONS_VARIANT,
    generic_subject_id: Optional[str] = None,
    specific_subject_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = None,
) -> Tuple[str, str]:
    """
    Serialize a book and its matching transactions to CSV text.

    Returns ``(filename, csv_text)``. Raises ``BookNotFoundError`` when the
    book does not belong to ``user_id`` and ``UnknownExportVariantError`` for
    an unsupported variant.
    """
    book_fields_for(variant)
    book = repository.get_book(user_id, book_id)
    transactions = repository.list_transactions(
        user_id,
        book_id,
        generic_subject_id=generic_subject_id,
        tag_id=specific_subject_id,
        search=search.strip() if search and search.strip() else None,
        limit=limit or settings.export_row_limit,
    )
    logger.info(
        "Exporting book %s (%s variant): %d transaction(s)", book_id, variant, len(transactions)
    )
    return export_filename(variant, book), render_csv(build_export_rows(book, transactions, variant))
