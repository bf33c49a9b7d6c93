"""
HTTP-level tests for the book import, export and subjects endpoints.
"""
import json

import pytest


HEADERS = {"X-User-Id": "user-1"}
CSV_TEXT = (
    "Library Number,Book Name,Sr No,Title,Specific Subject,Specific Category\n"
    "LIB-API,Api Book,,,,\n"
    ",,1,First,Monsoon,Weather\n"
    ",,2,Second,Monsoon,Weather\n"
)


def _wait_for_job(registry, job_id):
    job = registry.get_job(job_id)
    job.future.result(timeout=30)
    return job


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "Folio Book Import API"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["active_import_jobs"] == 0


def test_start_import_requires_a_user(client):
    response = client.post("/api/book-import", json={"csv_text": CSV_TEXT})
    assert response.status_code == 401


def test_start_import_requires_files(client):
    response = client.post("/api/book-import", json={"files": []}, headers=HEADERS)
    assert response.status_code == 400


def test_start_import_rejects_oversized_payloads(client, monkeypatch):
    from folio.core.config import settings

    monkeypatch.setattr(settings, "import_max_request_mb", 0)
    response = client.post("/api/book-import", json={"csv_text": CSV_TEXT}, headers=HEADERS)
    assert response.status_code == 413


def test_import_job_lifecycle(client, registry, repository):
    response = client.post(
        "/api/book-import",
        json={"csv_text": CSV_TEXT, "file_name": "books.csv"},
        headers=HEADERS,
    )

    assert response.status_code == 202
    summary = response.json()["summary"]
    assert summary["files"][0]["file_name"] == "books.csv"
    job_id = summary["job_id"]
    _wait_for_job(registry, job_id)

    job = client.get(f"/api/book-import/jobs/{job_id}", headers=HEADERS).json()
    assert job["status"] == "completed"
    assert job["total_created"] == 2
    assert job["files"][0]["sheets"][0]["name"] == "Sheet1"

    listing = client.get("/api/book-import/jobs", headers=HEADERS).json()
    assert listing["total_count"] == 1
    assert listing["jobs"][0]["job_id"] == job_id

    events = client.get(f"/api/book-import/jobs/{job_id}/events", params={"after": 0}, headers=HEADERS).json()
    assert events["events"][0]["type"] == "job-created"
    assert events["next_cursor"] == len(events["events"])
    tail = client.get(
        f"/api/book-import/jobs/{job_id}/events",
        params={"after": events["next_cursor"]},
        headers=HEADERS,
    ).json()
    assert tail["events"] == []

    tag = repository.find_tag("monsoon")
    assert tag["category"] == "Weather"


def test_jobs_of_other_users_are_hidden(client, registry):
    response = client.post("/api/book-import", json={"csv_text": CSV_TEXT}, headers=HEADERS)
    job_id = response.json()["summary"]["job_id"]
    _wait_for_job(registry, job_id)

    other = {"X-User-Id": "user-2"}
    assert client.get(f"/api/book-import/jobs/{job_id}", headers=other).status_code == 404
    assert client.get("/api/book-import/jobs", headers=other).json()["total_count"] == 0


def test_status_stream_replays_events_until_completion(client, registry):
    response = client.post("/api/book-import", json={"csv_text": CSV_TEXT}, headers=HEADERS)
    job_id = response.json()["summary"]["job_id"]
    _wait_for_job(registry, job_id)

    stream = client.get("/api/book-import/status", params={"job_id": job_id}, headers=HEADERS)

    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    blocks = [block for block in stream.text.split("\n\n") if block.strip()]
    types = [line.split(": ", 1)[1] for block in blocks for line in block.split("\n") if line.startswith("event: ")]
    assert types[0] == "job-created"
    assert types[-1] == "job-completed"
    last_data = [line for line in blocks[-1].split("\n") if line.startswith("data: ")][0]
    assert json.loads(last_data[len("data: "):])["type"] == "job-completed"


def test_status_stream_resumes_after_last_event_id(client, registry):
    response = client.post("/api/book-import", json={"csv_text": CSV_TEXT}, headers=HEADERS)
    job_id = response.json()["summary"]["job_id"]
    job = _wait_for_job(registry, job_id)

    last_id = len(job.events) - 2
    stream = client.get(
        "/api/book-import/status",
        params={"job_id": job_id},
        headers={**HEADERS, "Last-Event-ID": str(last_id)},
    )

    ids = [line for line in stream.text.split("\n") if line.startswith("id: ")]
    assert ids == [f"id: {last_id + 1}"]


def test_multi_file_upload_with_a_bad_file(client, registry):
    files = [
        {"name": "good.csv", "type": "text/csv", "csv_text": CSV_TEXT},
        {"name": "missing.xlsx"},
    ]
    response = client.post("/api/book-import", json={"files": files, "book_name": "Renamed"}, headers=HEADERS)
    job_id = response.json()["summary"]["job_id"]
    _wait_for_job(registry, job_id)

    job = client.get(f"/api/book-import/jobs/{job_id}", headers=HEADERS).json()
    assert job["status"] == "failed"
    assert [f["status"] for f in job["files"]] == ["completed", "failed"]
    assert job["files"][1]["error"] == "Missing file data for missing.xlsx"


def test_export_endpoint(client, registry, repository):
    response = client.post("/api/book-import", json={"csv_text": CSV_TEXT}, headers=HEADERS)
    _wait_for_job(registry, response.json()["summary"]["job_id"])
    book = repository.find_book("user-1", "LIB-API")

    export = client.get("/api/book-import/export", params={"book_id": book["id"]}, headers=HEADERS)

    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert 'filename="transactions-LIB-API.csv"' in export.headers["content-disposition"]
    assert export.text.lstrip("\ufeff").startswith("Library Number,Book Name,")
    assert "Monsoon" in export.text


@pytest.mark.parametrize(
    "params, headers, status",
    [
        ({"book_id": "missing"}, HEADERS, 404),
        ({"book_id": "missing", "variant": "bogus"}, HEADERS, 400),
        ({"book_id": "missing"}, {}, 401),
    ],
)
def test_export_endpoint_errors(client, params, headers, status):
    assert client.get("/api/book-import/export", params=params, headers=headers).status_code == status


def test_subjects_round_trip(client, repository):
    response = client.post(
        "/api/subjects/import",
        json={"type": "specific", "csv_text": "Name,Category,Description\nDelta,Geography,River mouth\n,,\nPort,,\n"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True, "created": 2, "updated": 0, "skipped": 0}

    again = client.post(
        "/api/subjects/import",
        json={"type": "specific", "csv_text": "Name,Category\ndelta,Landforms\nPort,\n"},
        headers=HEADERS,
    ).json()
    assert (again["created"], again["updated"], again["skipped"]) == (0, 1, 1)
    assert repository.find_tag("Delta")["category"] == "Landforms"

    export = client.get("/api/subjects/export", params={"type": "specific"}, headers=HEADERS)
    lines = export.text.lstrip("\ufeff").splitlines()
    assert lines[0] == "Name,Category,Description"
    assert "Delta,Landforms,River mouth" in lines[1:]


def test_subjects_import_rejects_empty_csv(client):
    response = client.post("/api/subjects/import", json={"type": "generic", "csv_text": "  "}, headers=HEADERS)
    assert response.status_code == 400
