"""
Decoding of submitted files into normalized row records.

Whatever the source format, the import pipeline only sees ``SheetRows``: an
ordered list of ``{header: text}`` dictionaries per sheet, with headers
BOM-stripped and whitespace-collapsed and every cell converted to trimmed text.
Delimited text becomes one synthetic sheet; workbooks are read one sheet at a
time so an unreadable sheet does not take its siblings down with it.
"""
import base64
import binascii
import io
import logging
import math
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional

import pandas as pd

from folio.api.schemas.imports import ImportFilePayload
from folio.domain.imports.columns import BOM, normalize_header_key

logger = logging.getLogger(__name__)

DEFAULT_SHEET_NAME = "Sheet1"
CSV_MIME_TYPE = "text/csv"
XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS_MIME_TYPE = "application/vnd.ms-excel"


class ImportFileError(Exception):
    """A file cannot be decoded at all (missing payload, unreadable workbook, empty CSV)."""


@dataclass
class PreparedFile:
    file_name: str
    file_type: str
    content: Optional[bytes] = None
    csv_text: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SheetRows:
    name: str
    rows: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None


def infer_mime_type(file_name: str) -> str:
    lower = file_name.lower()
    if lower.endswith(".xlsx"):
        return XLSX_MIME_TYPE
    if lower.endswith(".xls"):
        return XLS_MIME_TYPE
    if lower.endswith(".csv") or lower.endswith(".tsv"):
        return CSV_MIME_TYPE
    return "application/octet-stream"


def prepare_incoming_file(payload: ImportFilePayload) -> PreparedFile:
    """
    Turn a submitted file payload into a ``PreparedFile``.

    Problems are recorded on ``error`` instead of raised so that one bad file
    fails on its own once the job runs.
    """
    file_name = payload.name or "upload.csv"
    file_type = payload.type or infer_mime_type(file_name)

    if payload.csv_text is not None and payload.csv_text.strip():
        return PreparedFile(file_name=file_name, file_type=payload.type or CSV_MIME_TYPE, csv_text=payload.csv_text)

    if not payload.data:
        return PreparedFile(file_name=file_name, file_type=file_type, error=f"Missing file data for {file_name}")

    try:
        content = base64.b64decode(payload.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        return PreparedFile(file_name=file_name, file_type=file_type, error=f"Invalid base64 data for {file_name}: {exc}")

    return PreparedFile(file_name=file_name, file_type=file_type, content=content)


def is_spreadsheet(prepared: PreparedFile) -> bool:
    lower = prepared.file_name.lower()
    if lower.endswith((".csv", ".tsv", ".txt")):
        return False
    return (
        "sheet" in prepared.file_type
        or "excel" in prepared.file_type
        or lower.endswith(".xlsx")
        or lower.endswith(".xls")
    )


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        # Workbooks store whole numbers as floats ("12.0").
        if value.is_integer():
            return str(int(value))
    if isinstance(value, datetime):
        return value.date().isoformat() if value.time() == datetime.min.time() else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if value is pd.NaT:
        return ""
    return str(value).strip()


def _header_text(column: Any) -> str:
    header = normalize_header_key(column)
    # pandas names blank header cells "Unnamed: 3"
    if header.startswith("Unnamed:"):
        return ""
    return header


def _frame_to_rows(df: pd.DataFrame) -> List[Dict[str, str]]:
    headers = [_header_text(column) for column in df.columns]
    rows: List[Dict[str, str]] = []
    for values in df.itertuples(index=False, name=None):
        row: Dict[str, str] = {}
        for position, (header, value) in enumerate(zip(headers, values)):
            # Keep blank headers addressable without colliding with each other.
            row[header or f"__blank_{position}"] = _cell_text(value)
        if any(cell for cell in row.values()):
            rows.append(row)
    return rows


def _keep_ragged_line(fields: List[str]) -> List[str]:
    return fields


def process_csv_text(csv_text: str, context_label: str) -> List[Dict[str, str]]:
    """Parse delimited text into row records; every value is read as text."""
    text = csv_text.lstrip(BOM)
    if not text.strip():
        raise ImportFileError("CSV file is empty")

    try:
        with warnings.catch_warnings():
            # Rows with surplus cells are truncated to the header width.
            warnings.simplefilter("ignore", pd.errors.ParserWarning)
            df = pd.read_csv(
                io.StringIO(text),
                dtype=str,
                # A surplus cell on the first data row must not turn column one into an index.
                index_col=False,
                keep_default_na=False,
                skip_blank_lines=True,
                engine="python",
                on_bad_lines=_keep_ragged_line,
            )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as exc:
        raise ImportFileError(f"CSV parse error in {context_label}: {exc}") from exc

    records = _frame_to_rows(df)
    logger.info("Parsed %s: %d rows, columns: %s", context_label, len(records), list(df.columns))
    if not records:
        raise ImportFileError("No rows detected in CSV file")
    return records


def _open_workbook(content: bytes) -> pd.ExcelFile:
    try:
        return pd.ExcelFile(io.BytesIO(content), engine="openpyxl")
    except Exception:
        # Fallback to default pandas engine (legacy .xls)
        try:
            return pd.ExcelFile(io.BytesIO(content))
        except Exception as e:
            raise ImportFileError(f"Could not read Excel file: {str(e)}")


def iter_workbook_sheets(content: bytes, file_name: str) -> Iterator[SheetRows]:
    """Yield one ``SheetRows`` per sheet, converting each sheet only when it is reached."""
    workbook = _open_workbook(content)
    try:
        if not workbook.sheet_names:
            raise ImportFileError("No sheets found in the workbook")

        for sheet_name in workbook.sheet_names:
            try:
                df = workbook.parse(sheet_name, dtype=object)
            except Exception as exc:
                logger.warning("Could not read sheet '%s' of %s: %s", sheet_name, file_name, exc)
                yield SheetRows(name=str(sheet_name), error=f"Could not read sheet '{sheet_name}': {exc}")
                continue

            if len(df.columns) == 0:
                yield SheetRows(name=str(sheet_name), error="Sheet is empty")
                continue

            rows = _frame_to_rows(df.dropna(how="all"))
            logger.info("Parsed %s::%s: %d rows", file_name, sheet_name, len(rows))
            yield SheetRows(
                name=str(sheet_name),
                rows=rows,
                error=None if rows else "No rows found in sheet",
            )
    finally:
        workbook.close()


def decode_file(prepared: PreparedFile) -> Iterator[SheetRows]:
    """
    Decode a prepared file into sheets of row records.

    Inline ``csv_text`` is always read as CSV, whatever type the client sent
    (browsers on Windows label ``.csv`` uploads ``application/vnd.ms-excel``).
    Raises ``ImportFileError`` (possibly while iterating) when the file as a
    whole is unusable; per-sheet problems are reported on ``SheetRows.error``.
    """
    if prepared.error:
        raise ImportFileError(prepared.error)

    if prepared.csv_text is not None:
        csv_text = prepared.csv_text
    elif prepared.content is None:
        raise ImportFileError(f"Missing file data for {prepared.file_name}")
    elif is_spreadsheet(prepared):
        yield from iter_workbook_sheets(prepared.content, prepared.file_name)
        return
    else:
        try:
            csv_text = prepared.content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ImportFileError(f"{prepared.file_name} is not UTF-8 encoded text: {exc}") from exc

    yield SheetRows(name=DEFAULT_SHEET_NAME, rows=process_csv_text(csv_text, prepared.file_name))
