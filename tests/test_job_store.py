"""Tests for the SQLite job store."""
from datetime import datetime, timedelta, timezone

import pytest

from execution_queue.errors import PersistenceError
from execution_queue.jobs.models import JobRecord, JobStatus
from execution_queue.jobs.store import JobStore


def _iso_ago(seconds: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat()


@pytest.mark.asyncio
async def test_save_and_get_round_trip(store):
    rec = JobRecord(
        id="job-1",
        status=JobStatus.succeeded,
        attempts=3,
        started_at="2026-01-01T00:00:00+00:00",
        completed_at="2026-01-01T00:00:05+00:00",
        result={"answer": 42, "items": [1, 2]},
        payload={"type": "graph-execution", "graphId": "g", "prompt": "p"},
    )
    await store.save_job(rec.id, rec)

    fetched = await store.get_job("job-1")
    assert fetched is not None
    assert fetched.status == JobStatus.succeeded
    assert fetched.attempts == 3
    assert fetched.result == {"answer": 42, "items": [1, 2]}
    assert fetched.payload == rec.payload
    assert fetched.next_attempt_at is None
    assert fetched.locked_until is None
    assert fetched.to_record() == rec


@pytest.mark.asyncio
async def test_save_job_upserts(store):
    await store.save_job("job-1", JobRecord(id="job-1"))
    await store.save_job("job-1", JobRecord(id="job-1", status=JobStatus.failed, error="boom"))
    jobs = await store.list_jobs()
    assert len(jobs) == 1
    assert jobs[0].status == JobStatus.failed
    assert jobs[0].error == "boom"


@pytest.mark.asyncio
async def test_get_nonexistent_job(store):
    assert await store.get_job("nonexistent") is None


@pytest.mark.asyncio
async def test_update_job_partial(store):
    await store.save_job("job-1", JobRecord(id="job-1", payload={"type": "x"}))
    await store.update_job("job-1", status=JobStatus.running, attempts=1)

    fetched = await store.get_job("job-1")
    assert fetched.status == JobStatus.running
    assert fetched.attempts == 1
    assert fetched.payload == {"type": "x"}


@pytest.mark.asyncio
async def test_update_job_without_fields_is_noop(store):
    await store.update_job("ghost")
    assert await store.get_job("ghost") is None


@pytest.mark.asyncio
async def test_update_job_creates_missing_row(store):
    await store.update_job("late", status="failed", error="gone")
    fetched = await store.get_job("late")
    assert fetched.status == JobStatus.failed
    assert fetched.attempts == 0
    assert fetched.created_at


@pytest.mark.asyncio
async def test_update_job_rejects_unknown_fields(store):
    with pytest.raises(ValueError, match="locked_until"):
        await store.update_job("job-1", locked_until="2030-01-01")


@pytest.mark.asyncio
async def test_mark_running(store):
    await store.save_job("job-1", JobRecord(id="job-1"))
    await store.update_job("job-1", next_attempt_at="2030-01-01T00:00:00+00:00")
    await store.mark_running("job-1", attempts=2)

    fetched = await store.get_job("job-1")
    assert fetched.status == JobStatus.running
    assert fetched.started_at is not None
    assert fetched.attempts == 2
    assert fetched.next_attempt_at is None


@pytest.mark.asyncio
async def test_list_pending_jobs(store):
    await store.save_job("queued", JobRecord(id="queued"))
    await store.save_job(
        "stale", JobRecord(id="stale", status=JobStatus.running, started_at=_iso_ago(7200))
    )
    await store.save_job(
        "fresh", JobRecord(id="fresh", status=JobStatus.running, started_at=_iso_ago(5))
    )
    await store.save_job("done", JobRecord(id="done", status=JobStatus.succeeded))
    await store.save_job("dead", JobRecord(id="dead", status=JobStatus.timed_out))

    pending = {d.id for d in await store.list_pending_jobs()}
    assert pending == {"queued", "stale"}

    pending = {d.id for d in await store.list_pending_jobs(cutoff_seconds=1)}
    assert pending == {"queued", "stale", "fresh"}


@pytest.mark.asyncio
async def test_list_jobs_newest_first(store):
    await store.save_job("old", JobRecord(id="old", created_at=_iso_ago(60)))
    await store.save_job("new", JobRecord(id="new", created_at=_iso_ago(1)))
    jobs = await store.list_jobs(limit=1)
    assert [j.id for j in jobs] == ["new"]


@pytest.mark.asyncio
async def test_indexes_provisioned(store):
    async with store._db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ?", (store.table,)
    ) as cur:
        names = {row[0] for row in await cur.fetchall()}
    assert f"idx_{store.table}_status" in names
    assert f"idx_{store.table}_next_attempt" in names


@pytest.mark.asyncio
async def test_persists_across_connections(db_path):
    first = JobStore(db_path)
    await first.initialize()
    await first.save_job("job-1", JobRecord(id="job-1", result="ok", status=JobStatus.succeeded))
    await first.close()

    second = JobStore(db_path)
    await second.initialize()
    try:
        fetched = await second.get_job("job-1")
        assert fetched.result == "ok"
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_initialize_failure_is_surfaced(tmp_path):
    s = JobStore(str(tmp_path / "missing-dir" / "jobs.db"))
    with pytest.raises(PersistenceError):
        await s.initialize()
    assert not s.initialized


def test_invalid_table_name():
    with pytest.raises(ValueError):
        JobStore(":memory:", table="jobs; DROP TABLE x")


def test_terminal_statuses():
    assert not JobStatus.queued.is_terminal
    assert not JobStatus.running.is_terminal
    assert all(s.is_terminal for s in (JobStatus.succeeded, JobStatus.failed,
                                       JobStatus.timed_out, JobStatus.cancelled))
