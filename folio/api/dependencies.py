"""
Shared dependencies for the API routers.

Identity is taken from the ``X-User-Id`` header as-is; verifying it is the job
of whatever sits in front of this service.
"""
from typing import Optional

from fastapi import Header, HTTPException

from folio.db.repositories import CatalogRepository
from folio.domain.imports.jobs import ImportJobRegistry, get_job_registry

_repository: Optional[CatalogRepository] = None


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_repository() -> CatalogRepository:
    global _repository
    if _repository is None:
        _repository = CatalogRepository()
    return _repository


def get_registry() -> ImportJobRegistry:
    return get_job_registry()
