"""
Export router for book CSV downloads.

The files produced here use the same column labels the importer accepts, so
an exported book can be edited in a spreadsheet and imported again.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from folio.api.dependencies import get_current_user_id, get_repository
from folio.db.repositories import BookNotFoundError, CatalogRepository
from folio.domain.exports.books import TRANSACTIONS_VARIANT, UnknownExportVariantError, export_book_csv

router = APIRouter(
    prefix="/api/book-import",
    tags=["export"]
)


@router.get("/export")
async def export_book(
    book_id: str,
    variant: str = Query(TRANSACTIONS_VARIANT, description="'transactions' or 'book-overview'"),
    generic_subject_id: Optional[str] = None,
    specific_subject_id: Optional[str] = None,
    search: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    repository: CatalogRepository = Depends(get_repository),
):
    """
    Download a book and its transactions as CSV.

    Optional filters narrow the transaction rows; the book row is always
    included.
    """
    try:
        filename, csv_text = export_book_csv(
            repository,
            user_id,
            book_id,
            variant=variant,
            generic_subject_id=generic_subject_id,
            specific_subject_id=specific_subject_id,
            search=search,
        )
    except UnknownExportVariantError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BookNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
