"""Shared test fixtures for the execution_queue test suite."""
from __future__ import annotations

import asyncio

import pytest

from execution_queue.config import QueueSettings
from execution_queue.jobs.models import JobStatus
from execution_queue.jobs.store import JobStore


def pytest_sessionfinish(session, exitstatus):
    """Spawn a watchdog that force-exits if the process hangs at shutdown.

    Abandoned worker threads from timed-out sync jobs can keep the
    interpreter alive; this ensures pytest exits within a few seconds of
    test completion.
    """
    import os
    import threading
    import time

    def _watchdog():
        time.sleep(5)
        os._exit(exitstatus)

    t = threading.Thread(target=_watchdog, daemon=True)
    t.start()


def _make_settings(**overrides) -> QueueSettings:
    """Settings isolated from the developer's environment and .env file."""
    base = dict(concurrency=2, max_retries=2, backoff_ms=10, retention_seconds=3600)
    base.update(overrides)
    return QueueSettings(_env_file=None, **base)


async def _wait_for_status(store: JobStore, job_id: str, status: JobStatus, timeout: float = 2.0):
    """Poll *store* until the job reaches *status*; fire-and-forget writes lag."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        doc = await store.get_job(job_id)
        if doc is not None and doc.status == status:
            return doc
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"job {job_id} never reached {status.value}: {doc}")
        await asyncio.sleep(0.01)


# ── Store fixtures ───────────────────────────────────────────────────


@pytest.fixture
def make_settings():
    return _make_settings


@pytest.fixture
def settings():
    return _make_settings()


@pytest.fixture
def wait_for_status():
    return _wait_for_status


@pytest.fixture
async def store():
    s = JobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")
