import threading

import pytest

from folio.domain.imports.jobs import ImportJobRegistry


FILES = [{"file_name": "a.csv", "file_type": "text/csv"}]


def test_create_job_emits_created_and_summary(registry):
    job = registry.create_job("user-1", FILES)

    assert job.status == "pending"
    assert [event.type for event in job.events] == ["job-created", "summary"]
    assert job.events[1].payload["files"][0]["file_name"] == "a.csv"


def test_emit_rejects_unknown_event_types(registry):
    job = registry.create_job("user-1", FILES)
    with pytest.raises(ValueError):
        registry.emit(job, "row-exploded", {})


def test_update_summary_publishes_a_snapshot(registry):
    job = registry.create_job("user-1", FILES)

    def _bump(draft):
        draft.total_created += 2

    registry.update_summary(job, _bump)

    assert job.events[-1].type == "summary"
    assert job.events[-1].payload["total_created"] == 2
    assert registry.latest_snapshot(job).total_created == 2


def test_latest_snapshot_is_a_copy(registry):
    job = registry.create_job("user-1", FILES)
    snapshot = registry.latest_snapshot(job)
    snapshot.files[0].status = "failed"
    assert job.summary.files[0].status == "pending"


def test_events_since_cursor(registry):
    job = registry.create_job("user-1", FILES)
    registry.emit(job, "job-started", {})

    assert [event.sequence for event in registry.events_since(job, 1)] == [1, 2]
    assert registry.events_since(job, 10) == []


def test_wait_for_events_times_out_without_new_events(registry):
    job = registry.create_job("user-1", FILES)
    assert registry.wait_for_events(job, len(job.events), timeout=0.05) == []


def test_wait_for_events_wakes_up_on_emit(registry):
    job = registry.create_job("user-1", FILES)
    cursor = len(job.events)
    timer = threading.Timer(0.05, registry.emit, args=(job, "job-started", {}))
    timer.start()

    events = registry.wait_for_events(job, cursor, timeout=5)
    timer.join()

    assert [event.type for event in events] == ["job-started"]


def test_complete_job_fails_unfinished_files(registry):
    job = registry.create_job("user-1", FILES)
    registry.complete_job(job, "failed", "worker crashed")

    assert job.is_finished
    assert job.summary.finished_at is not None
    assert job.summary.files[0].status == "failed"
    assert job.summary.files[0].error == "worker crashed"
    assert job.events[-1].type == "job-failed"


def test_submitted_runner_crash_fails_the_job(registry):
    job = registry.create_job("user-1", FILES)

    def _runner(job):
        raise RuntimeError("database unavailable")

    registry.submit(job, _runner).result(timeout=5)

    assert job.status == "failed"
    assert job.events[-1].payload["error"] == "database unavailable"


def test_list_jobs_is_scoped_to_the_user():
    registry = ImportJobRegistry(max_workers=1)
    try:
        mine = registry.create_job("user-1", FILES)
        registry.create_job("user-2", FILES)

        assert [job.id for job in registry.list_jobs("user-1")] == [mine.id]
        assert len(registry.list_jobs()) == 2
        assert registry.get_job("missing") is None
    finally:
        registry.shutdown()


def test_only_the_newest_summary_event_keeps_the_full_snapshot(registry):
    job = registry.create_job("user-1", FILES)

    def _bump(draft):
        draft.total_skipped += 1

    for _ in range(3):
        registry.update_summary(job, _bump)

    summaries = [event for event in job.events if event.type == "summary"]
    assert len(summaries) == 4
    assert [event.payload for event in summaries[:-1]] == [
        {"superseded_by": later.sequence} for later in summaries[1:]
    ]
    assert summaries[-1].payload["total_skipped"] == 3
    assert job.latest_summary_sequence == summaries[-1].sequence
