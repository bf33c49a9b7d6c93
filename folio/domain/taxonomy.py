"""CSV round trip for generic subjects and specific tags."""
import logging
from typing import Dict, List, Tuple

from folio.db.repositories import CatalogRepository, DuplicateEntityError
from folio.domain.exports.books import render_csv
from folio.domain.imports.columns import pick_column
from folio.domain.imports.processors.spreadsheet_processor import process_csv_text

logger = logging.getLogger(__name__)

GENERIC = "generic"
SPECIFIC = "specific"

TERM_COLUMN_ALIASES: Dict[str, List[str]] = {
    "name": ["Name", "name", "Subject", "Tag", "Specific Subject", "Generic Subject"],
    "category": ["Category", "category", "Specific Category"],
    "description": ["Description", "description", "Details"],
}

_TERM_FIELDS = {
    GENERIC: ("name", "description"),
    SPECIFIC: ("name", "category", "description"),
}


def _label(field: str) -> str:
    return TERM_COLUMN_ALIASES[field][0]


def export_terms_csv(repository: CatalogRepository, kind: str) -> Tuple[str, str]:
    fields = _TERM_FIELDS[kind]
    terms = repository.list_generic_subjects() if kind == GENERIC else repository.list_tags()
    rows = [[_label(field) for field in fields]]
    rows.extend([term.get(field) or "" for field in fields] for term in terms)
    return f"{kind}-subjects.csv", render_csv(rows)


def import_terms_csv(repository: CatalogRepository, kind: str, csv_text: str) -> Dict[str, int]:
    """
    Upsert terms by case-insensitive name. Blank cells leave the stored value
    alone; rows without a name are skipped.
    """
    fields = _TERM_FIELDS[kind]
    counts = {"created": 0, "updated": 0, "skipped": 0}
    find = repository.find_generic_subject if kind == GENERIC else repository.find_tag
    update = repository.update_generic_subject if kind == GENERIC else repository.update_tag

    for row in process_csv_text(csv_text, f"{kind} subjects"):
        values = {field: pick_column(row, TERM_COLUMN_ALIASES[field]) for field in fields}
        name = values.pop("name")
        if not name:
            counts["skipped"] += 1
            continue

        existing = find(name)
        if existing is None:
            try:
                if kind == GENERIC:
                    repository.create_generic_subject(name, values.get("description"))
                else:
                    repository.create_tag(name, values.get("category"), values.get("description"))
                counts["created"] += 1
                continue
            except DuplicateEntityError:
                existing = find(name)
                if existing is None:
                    raise

        changes = {field: value for field, value in values.items() if value and value != existing.get(field)}
        if changes:
            update(existing["id"], **changes)
            counts["updated"] += 1
        else:
            counts["skipped"] += 1

    logger.info("Imported %s subjects: %s", kind, counts)
    return counts
