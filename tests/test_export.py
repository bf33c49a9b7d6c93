"""
Tests for the book CSV export and its round trip through the importer.
"""
import csv
import io

import pytest

from folio.api.schemas.imports import ImportFilePayload
from folio.db.repositories import BookNotFoundError
from folio.domain.exports.books import (
    OVERVIEW_VARIANT,
    TRANSACTIONS_VARIANT,
    UnknownExportVariantError,
    build_export_rows,
    export_book_csv,
    export_header,
    render_csv,
)


def _seed(repository, user_id="user-1"):
    book = repository.create_book(
        user_id,
        {"library_number": "LIB 42/A", "book_name": "Rivers, Roads", "publisher_name": "Delta Press"},
        editors=[{"name": "Asha Rao", "role": "Translator"}, {"name": "K. Menon"}],
        image_urls=["https://img.example/cover-back.png"],
    )
    history = repository.create_generic_subject("History")
    river = repository.create_tag("River", "Geography")
    port = repository.create_tag("Port", None)
    repository.create_transaction(
        user_id,
        book["id"],
        {
            "sr_no": 2,
            "title": 'The "Great" Delta',
            "keywords": "delta, silt",
            "summary": "Line one\nLine two",
            "relevant_paragraph": {"english": "Water", "hindi": "Paani"},
        },
        generic_subject_ids=[history["id"]],
        tag_ids=[river["id"], port["id"]],
        image_urls=["https://img.example/a,b.png", "https://img.example/c.png"],
    )
    repository.create_transaction(user_id, book["id"], {"sr_no": 1, "title": "Sources", "remark": "check"})
    return book, history, river


def _parse(csv_text):
    assert csv_text.startswith("\ufeff")
    return list(csv.reader(io.StringIO(csv_text[1:])))


def test_render_csv_quotes_only_when_needed():
    text = render_csv([["a", "b,c", 'd"e', "f\ng"]])
    assert text == '\ufeffa,"b,c","d""e","f\ng"\n'


def test_export_rows_start_with_header_and_book_row(repository):
    book, _, _ = _seed(repository)

    filename, text = export_book_csv(repository, "user-1", book["id"])
    rows = _parse(text)

    assert filename == "transactions-LIB-42-A.csv"
    assert rows[0] == export_header(TRANSACTIONS_VARIANT)
    header = rows[0]
    parent = dict(zip(header, rows[1]))
    assert parent["Library Number"] == "LIB 42/A"
    assert parent["Book Name"] == "Rivers, Roads"
    assert parent["Title"] == ""

    first, second = (dict(zip(header, row)) for row in rows[2:])
    assert (first["Sr No"], first["Title"], first["Txn Remark"]) == ("1", "Sources", "check")
    assert second["Title"] == 'The "Great" Delta'
    assert second["Summary"] == "Line one\nLine two"
    assert second["Generic Subject"] == "History"
    assert second["Specific Subject"] == "Port; River"
    assert second["Specific Category"] == "; Geography"
    assert second["Images"] == "https://img.example/a,b.png; https://img.example/c.png"
    assert second["Relevant Paragraph"] == '{"english": "Water", "hindi": "Paani"}'
    assert second["Library Number"] == ""


def test_overview_variant_adds_book_details(repository):
    book, _, _ = _seed(repository)

    filename, text = export_book_csv(repository, "user-1", book["id"], variant=OVERVIEW_VARIANT)
    rows = _parse(text)
    parent = dict(zip(rows[0], rows[1]))

    assert filename.startswith("book-overview-")
    assert parent["Editors"] == "Asha Rao (Translator); K. Menon"
    assert parent["Book Images"] == "https://img.example/cover-back.png"
    assert len(rows) == 4


def test_export_filters(repository):
    book, history, river = _seed(repository)

    _, by_subject = export_book_csv(repository, "user-1", book["id"], generic_subject_id=history["id"])
    _, by_tag = export_book_csv(repository, "user-1", book["id"], specific_subject_id=river["id"])
    _, by_search = export_book_csv(repository, "user-1", book["id"], search="  CHECK ")

    assert len(_parse(by_subject)) == 3
    assert len(_parse(by_tag)) == 3
    search_rows = _parse(by_search)
    assert len(search_rows) == 3
    assert "Sources" in search_rows[2]


def test_export_rejects_unknown_books_and_variants(repository):
    book, _, _ = _seed(repository)

    with pytest.raises(BookNotFoundError):
        export_book_csv(repository, "someone-else", book["id"])
    with pytest.raises(UnknownExportVariantError):
        export_book_csv(repository, "user-1", book["id"], variant="everything")


def test_build_export_rows_for_a_book_without_transactions():
    rows = build_export_rows({"id": "b1", "library_number": "L1", "book_name": "Empty"}, [])
    assert len(rows) == 2
    assert rows[1][:2] == ["L1", "Empty"]


@pytest.mark.parametrize("variant", [TRANSACTIONS_VARIANT, OVERVIEW_VARIANT])
def test_export_then_import_round_trips(variant, repository, run_import):
    book, _, _ = _seed(repository)
    before = repository.list_transactions("user-1", book["id"])
    before_book = repository.get_book("user-1", book["id"])

    filename, text = export_book_csv(repository, "user-1", book["id"], variant=variant)
    job, summary = run_import([ImportFilePayload(name=filename, type="text/csv", csv_text=text)])

    assert summary.status == "completed"
    assert summary.total_created == 0
    assert summary.total_updated == len(before)
    assert summary.total_skipped == 0

    after = repository.list_transactions("user-1", book["id"])
    comparable = ("id", "sr_no", "title", "keywords", "summary", "remark", "relevant_paragraph", "images")
    assert [{k: t[k] for k in comparable} for t in after] == [{k: t[k] for k in comparable} for t in before]
    assert [[(s["name"]) for s in t["generic_subjects"]] for t in after] == [
        [s["name"] for s in t["generic_subjects"]] for t in before
    ]
    assert [[(tag["name"], tag["category"]) for tag in t["tags"]] for t in after] == [
        [(tag["name"], tag["category"]) for tag in t["tags"]] for t in before
    ]
    after_book = repository.get_book("user-1", book["id"])
    assert after_book["editors"] == before_book["editors"]
    assert after_book["images"] == before_book["images"]


@pytest.mark.parametrize("variant", [TRANSACTIONS_VARIANT, OVERVIEW_VARIANT])
def test_export_recreates_records_under_a_new_book(variant, repository, run_import):
    book, _, _ = _seed(repository)
    before = repository.list_transactions("user-1", book["id"])
    before_book = repository.get_book("user-1", book["id"])

    filename, text = export_book_csv(repository, "user-1", book["id"], variant=variant)
    copied = text.replace("LIB 42/A", "LIB-COPY", 1)
    _, summary = run_import([ImportFilePayload(name=filename, type="text/csv", csv_text=copied)])

    assert summary.status == "completed"
    assert summary.total_created == len(before)
    assert summary.total_updated == 0
    assert summary.total_skipped == 0

    copy = repository.get_book("user-1", repository.find_book("user-1", "LIB-COPY")["id"])
    assert copy["id"] != book["id"]
    assert (copy["book_name"], copy["publisher_name"]) == (before_book["book_name"], before_book["publisher_name"])
    after = repository.list_transactions("user-1", copy["id"])
    comparable = ("sr_no", "title", "keywords", "summary", "remark", "relevant_paragraph", "images")
    assert [{k: t[k] for k in comparable} for t in after] == [{k: t[k] for k in comparable} for t in before]
    assert [[(tag["name"], tag["category"]) for tag in t["tags"]] for t in after] == [
        [(tag["name"], tag["category"]) for tag in t["tags"]] for t in before
    ]
    assert [[s["name"] for s in t["generic_subjects"]] for t in after] == [
        [s["name"] for s in t["generic_subjects"]] for t in before
    ]
    if variant == OVERVIEW_VARIANT:
        assert copy["editors"] == before_book["editors"]
        assert copy["images"] == before_book["images"]
