"""
Taxonomy term files: download and upload generic subjects and specific tags.
"""
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from folio.api.dependencies import get_current_user_id, get_repository
from folio.api.schemas.imports import TaxonomyImportRequest, TaxonomyImportResponse
from folio.db.repositories import CatalogRepository
from folio.domain.imports.processors.spreadsheet_processor import ImportFileError
from folio.domain.taxonomy import export_terms_csv, import_terms_csv

router = APIRouter(prefix="/api/subjects", tags=["subjects"])


@router.get("/export")
async def export_subjects(
    type: Literal["generic", "specific"] = "generic",
    user_id: str = Depends(get_current_user_id),
    repository: CatalogRepository = Depends(get_repository),
):
    filename, csv_text = export_terms_csv(repository, type)
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import", response_model=TaxonomyImportResponse)
async def import_subjects(
    request: TaxonomyImportRequest,
    user_id: str = Depends(get_current_user_id),
    repository: CatalogRepository = Depends(get_repository),
):
    try:
        counts = import_terms_csv(repository, request.type, request.csv_text)
    except ImportFileError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return TaxonomyImportResponse(ok=True, **counts)
