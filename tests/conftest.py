"""
Pytest configuration and fixtures for the book import tests.

Every test gets its own file-backed SQLite catalog so that the row workers,
which open one session per operation from several threads, see each other's
writes exactly as they would against a real database.
"""

import base64
import csv
import io
import os

# The app's lifespan must not bootstrap the default database during tests.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pandas as pd
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from folio.api.dependencies import get_registry, get_repository
from folio.api.schemas.imports import ImportFilePayload
from folio.db.repositories import CatalogRepository
from folio.db.session import build_engine, create_all_tables
from folio.domain.imports.jobs import ImportJobRegistry
from folio.domain.imports.orchestrator import run_import_job
from folio.domain.imports.processors.spreadsheet_processor import prepare_incoming_file


BOOK_HEADER = ["Library Number", "Book Name", "Publisher Name"]
TXN_HEADER = ["Sr No", "Title", "Generic Subject", "Specific Subject", "Specific Category", "Keywords", "Remarks"]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'folio-test.db'}")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(engine):
    return CatalogRepository(sessionmaker(autoflush=False, expire_on_commit=False, bind=engine))


@pytest.fixture
def registry():
    registry = ImportJobRegistry(max_workers=2)
    yield registry
    registry.shutdown(wait=True)


@pytest.fixture
def client(repository, registry):
    from folio.main import app

    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_csv():
    """Build a CSV file payload from a list of rows (first row is the header)."""

    def _make(name, rows):
        buffer = io.StringIO()
        csv.writer(buffer, lineterminator="\n").writerows(rows)
        return ImportFilePayload(name=name, type="text/csv", csv_text=buffer.getvalue())

    return _make


@pytest.fixture
def make_workbook():
    """Build a base64 .xlsx payload from {sheet name: rows}; an empty row list gives an empty sheet."""

    def _make(name, sheets):
        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            for sheet_name, rows in sheets.items():
                frame = pd.DataFrame(rows[1:], columns=rows[0]) if rows else pd.DataFrame()
                frame.to_excel(writer, sheet_name=sheet_name, index=False)
        return ImportFilePayload(
            name=name,
            type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            data=base64.b64encode(buffer.getvalue()).decode("ascii"),
        )

    return _make


@pytest.fixture
def book_rows():
    """A parent row followed by transaction rows, in the common column layout."""

    def _rows(library_number, transactions, book_name="Sample Book"):
        header = BOOK_HEADER + TXN_HEADER
        parent = [library_number, book_name, "Sample Press"] + [""] * len(TXN_HEADER)
        body = [["", "", ""] + list(txn) for txn in transactions]
        return [header, parent] + body

    return _rows


@pytest.fixture
def run_import(registry, repository):
    """Run a whole import job synchronously and return ``(job, summary)``."""

    def _run(files, user_id="user-1", book_name=None, row_concurrency=4):
        prepared = [prepare_incoming_file(payload) for payload in files]
        job = registry.create_job(
            user_id,
            [{"file_name": f.file_name, "file_type": f.file_type} for f in prepared],
        )
        summary = run_import_job(job, registry, repository, prepared, book_name, row_concurrency)
        return job, summary

    return _run
