from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

JobStatus = Literal["pending", "processing", "completed", "failed"]

TERMINAL_STATUSES = {"completed", "failed"}

EXPORT_VARIANTS = ("transactions", "book-overview")


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RowError(BaseModel):
    """A row that could not be saved. ``row_index`` is 1-based, header excluded."""
    row_index: int
    message: str
    fields: Optional[List[str]] = None


class SheetSummary(BaseModel):
    name: str
    status: JobStatus = "pending"
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[RowError] = Field(default_factory=list)
    error: Optional[str] = None


class FileSummary(BaseModel):
    file_name: str
    file_type: str
    status: JobStatus = "pending"
    error: Optional[str] = None
    sheets: List[SheetSummary] = Field(default_factory=list)


class ImportJobSummary(BaseModel):
    job_id: str
    user_id: str
    status: JobStatus = "pending"
    files: List[FileSummary] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    total_created: int = 0
    total_updated: int = 0
    total_skipped: int = 0


class ImportJobEvent(BaseModel):
    """One entry of a job's append-only event log."""
    sequence: int
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utcnow)


class ImportFilePayload(BaseModel):
    """A submitted file: raw delimited text, or base64-encoded binary content."""
    name: Optional[str] = None
    type: Optional[str] = None
    data: Optional[str] = None
    csv_text: Optional[str] = None


class StartImportRequest(BaseModel):
    files: List[ImportFilePayload] = Field(default_factory=list)
    book_name: Optional[str] = None
    # Single-file shorthand
    csv_text: Optional[str] = None
    file_name: Optional[str] = None

    @model_validator(mode="after")
    def fold_single_file(self) -> "StartImportRequest":
        if not self.files and self.csv_text:
            self.files = [
                ImportFilePayload(
                    name=self.file_name or "upload.csv",
                    type="text/csv",
                    csv_text=self.csv_text,
                )
            ]
        return self


class StartImportResponse(BaseModel):
    summary: ImportJobSummary


class ImportJobListResponse(BaseModel):
    success: bool
    jobs: List[ImportJobSummary]
    total_count: int


class ImportJobEventsResponse(BaseModel):
    job_id: str
    events: List[ImportJobEvent]
    next_cursor: int
    summary: ImportJobSummary


class TaxonomyImportRequest(BaseModel):
    type: Literal["generic", "specific"]
    csv_text: str


class TaxonomyImportResponse(BaseModel):
    ok: bool = True
    created: int
    updated: int
    skipped: int = 0
