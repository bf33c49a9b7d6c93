"""
Header normalization and tolerant column lookup for book import sheets.

Spreadsheet authors rarely agree on headers ("Sr.No." vs "Sr No", "Title /
Heading" vs "Title"), so every logical field carries an ordered list of
accepted spellings in ``COLUMN_ALIASES``. The same table drives the export
headers, which keeps exported files importable.
"""
import json
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from folio.utils.text import is_present

# Bump whenever an alias is removed or an export label changes.
COLUMN_ALIASES_VERSION = 3

BOM = "\ufeff"
_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_MULTI_VALUE_RE = re.compile(r"[,;|]")
_IMAGE_LIST_RE = re.compile(r"[;|\n]")

MULTI_VALUE_DELIMITER = "; "

# Logical field -> accepted header spellings, most specific first.
# The first alias of each field is the label written by the exporter.
BOOK_COLUMN_ALIASES: Dict[str, List[str]] = {
    "library_number": ["Library Number", "libraryNumber", "Library No", "Lib No"],
    "book_name": ["Book Name", "bookName", "Book Title", "Book"],
    "book_summary": ["Book Summary", "bookSummary", "Summary (Book)", "Book_Summary"],
    "page_numbers": ["Page Numbers", "pageNumbers", "Total Pages", "Pages"],
    "grade": ["Grade", "grade", "Class"],
    "remark": ["Book Remark", "bookRemark"],
    "edition": ["Edition", "edition"],
    "publisher_name": ["Publisher Name", "publisherName", "Publisher"],
    "cover_image_url": ["Cover Image", "coverImageUrl", "Cover Image URL"],
    "editors": ["Editors", "editors", "Editor"],
    "book_images": ["Book Images", "bookImages"],
}

TRANSACTION_COLUMN_ALIASES: Dict[str, List[str]] = {
    "sr_no": ["Sr No", "srNo", "SR No", "S No", "Serial No", "Sr", "Index"],
    "generic_subject_names": ["Generic Subject", "genericSubject", "Subject (Generic)"],
    "tag_names": ["Specific Subject", "specificSubject", "Tag", "Tags"],
    "tag_category": ["Specific Category", "Tag Category", "category"],
    "title": ["Title", "title", "Topic"],
    "keywords": ["Keywords", "keywords", "Keyword"],
    "images": ["Images", "Image URLs", "imageUrl"],
    "relevant_paragraph": [
        "Relevant Paragraph",
        "relevantParagraph",
        "Paragraph (JSON/Text)",
        "Relevant Para",
        "Excerpts",
    ],
    "foot_note": ["Footnote", "footNote", "Foot Note"],
    "paragraph_no": ["Paragraph No", "paragraphNo", "Para No"],
    "page_no": ["Page No", "pageNo", "Page"],
    "information_rating": ["Information Rating", "informationRating", "Rating"],
    "remark": ["Txn Remark", "Item Remark", "Remarks", "Remark", "remark"],
    "summary": ["Summary", "summary"],
    "conclusion": ["Conclusion", "conclusion"],
}

COLUMN_ALIASES: Dict[str, Dict[str, List[str]]] = {
    "book": BOOK_COLUMN_ALIASES,
    "transaction": TRANSACTION_COLUMN_ALIASES,
}


def export_label(section: str, field: str) -> str:
    return COLUMN_ALIASES[section][field][0]


def normalize_header_key(key: Any) -> str:
    """Strip a leading BOM and collapse whitespace, keeping case and punctuation."""
    text = "" if key is None else str(key)
    if text.startswith(BOM):
        text = text[len(BOM):]
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_for_match(key: Any) -> str:
    """Fold a header or alias for comparison: lowercase, punctuation runs become one space."""
    folded = normalize_header_key(key).lower()
    return _NON_ALNUM_RE.sub(" ", folded).strip()


def normalize_row_keys(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {normalize_header_key(key): value for key, value in row.items()}


def _find_candidate(entries: Sequence[tuple], alias_key: str) -> Optional[tuple]:
    for entry in entries:
        if entry[0] == alias_key:
            return entry
    for entry in entries:
        if entry[0].startswith(alias_key) or alias_key.startswith(entry[0]):
            return entry
    for entry in entries:
        if alias_key in entry[0] or entry[0] in alias_key:
            return entry
    return None


def pick_column(row: Mapping[str, Any], aliases: Optional[Sequence[str]]) -> Optional[str]:
    """
    Return the trimmed value of the first alias that resolves to a non-empty cell.

    For each alias the candidate header is searched with three passes over the
    row headers: exact normalized match, prefix match in either direction, then
    substring match in either direction. Only the first candidate of the first
    successful pass is considered for that alias; an empty candidate moves on
    to the next alias.

    Examples:
        "Sr.No." and "S.No" both resolve the "Sr No" / "S No" aliases exactly;
        "Title / Heading" resolves "Title" by prefix.
    """
    if not aliases:
        return None

    # Headers that normalize to nothing ("", "---") would prefix-match every alias.
    entries = [
        (normalize_for_match(key), value)
        for key, value in row.items()
        if normalize_for_match(key)
    ]

    for alias in aliases:
        alias_key = normalize_for_match(alias)
        if not alias_key:
            continue
        candidate = _find_candidate(entries, alias_key)
        if candidate is not None and is_present(candidate[1]):
            return str(candidate[1]).strip()
    return None


def pick_int(row: Mapping[str, Any], aliases: Optional[Sequence[str]]) -> Optional[int]:
    """Pick a column and parse it as an integer, ignoring anything but digits and '-'."""
    value = pick_column(row, aliases)
    if value is None:
        return None
    # Spreadsheet cells often arrive as "12.0".
    if re.fullmatch(r"-?\d+\.0+", value):
        value = value.split(".", 1)[0]
    digits = re.sub(r"[^\d-]", "", value)
    try:
        return int(digits)
    except ValueError:
        return None


def split_multi_values(raw: Optional[str], keep_empty: bool = False) -> List[str]:
    """Split a multi-valued cell on ',', ';' or '|'."""
    if not is_present(raw):
        return []
    parts = [part.strip() for part in _MULTI_VALUE_RE.split(str(raw))]
    if keep_empty:
        return parts
    return [part for part in parts if part]


def split_image_list(raw: Optional[str]) -> List[str]:
    """Split an image cell; commas are legal inside URLs so only ';', '|' and newlines separate."""
    if not is_present(raw):
        return []
    urls: List[str] = []
    for part in _IMAGE_LIST_RE.split(str(raw)):
        url = part.strip()
        if url and url not in urls:
            urls.append(url)
    return urls


def join_multi_values(values: Sequence[Optional[str]]) -> str:
    return MULTI_VALUE_DELIMITER.join(str(value) for value in values if value)


def maybe_parse_json(value: Optional[str]) -> Any:
    """Decode cells that look like JSON objects/arrays; anything else stays text."""
    if not is_present(value):
        return None
    text = str(value).strip()
    if not (text.startswith("{") or text.startswith("[")):
        return text
    try:
        return json.loads(text)
    except ValueError:
        return text
