"""Job data models."""
from __future__ import annotations

import asyncio
import enum
from datetime import datetime, timezone
from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus(str, enum.Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    timed_out = "timed_out"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.succeeded, JobStatus.failed, JobStatus.timed_out, JobStatus.cancelled}
)


class JobRecord(BaseModel):
    """Persistent representation of a queued unit of work."""

    id: str
    status: JobStatus = JobStatus.queued
    attempts: int = Field(default=0, ge=0)
    created_at: str = Field(default_factory=utc_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class JobDocument(JobRecord):
    """Stored row: a ``JobRecord`` plus the scheduling columns.

    ``next_attempt_at`` is written while a retry waits out its backoff and is
    informational only. ``locked_until`` is reserved and always ``None``.
    """

    next_attempt_at: Optional[str] = None
    locked_until: Optional[str] = None

    def to_record(self) -> JobRecord:
        return JobRecord(**self.model_dump(exclude={"next_attempt_at", "locked_until"}))


class JobOptions(BaseModel):
    """Per-job retry policy; unset fields fall back to the queue defaults."""

    max_retries: Optional[int] = Field(default=None, ge=0)
    backoff_base_ms: Optional[int] = Field(default=None, ge=0)
    timeout_ms: Optional[int] = Field(default=None, gt=0)


class QueueStats(BaseModel):
    queued: int
    active: int
    concurrency: int
    delayed: int = 0


class EnqueuedJob(NamedTuple):
    """Handle returned by ``ExecutionQueue.enqueue``.

    ``future`` resolves with the callable's result, or raises its final error
    once retries are exhausted.
    """

    job_id: str
    future: "asyncio.Future[Any]"
