"""In-process execution queue with bounded concurrency, retry and timeouts."""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple, Union

from ..config import QueueSettings, get_settings
from ..errors import JobQueueFullError, JobTimeoutError
from .models import EnqueuedJob, JobOptions, JobRecord, JobStatus, QueueStats, utc_now_iso
from .payloads import JobFn, JobPayload, PayloadRegistry
from .store import JobStore

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _InternalJob:
    """Scheduler-owned state for one job; never leaves this module."""

    id: str
    fn: JobFn
    future: Optional["asyncio.Future[Any]"]
    attempts: int
    max_retries: int
    backoff_base_ms: int
    timeout_ms: Optional[int] = None


def backoff_delay_ms(backoff_base_ms: int, attempts: int) -> int:
    """Delay before the retry that follows attempt number *attempts*.

    Attempt 1 waits ``1 x base``, attempt 2 ``2 x base``, attempt 3 ``4 x base``.
    """
    return backoff_base_ms * 2 ** max(attempts - 1, 0)


def _is_async_callable(fn: JobFn) -> bool:
    # Instances with an ``async def __call__`` are not coroutine functions.
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(type(fn), "__call__", None)
    )


async def _invoke(fn: JobFn) -> Any:
    if _is_async_callable(fn):
        return await fn()
    # Plain callables may block; keep them off the event loop.
    result = await asyncio.to_thread(fn)
    if inspect.isawaitable(result):
        result = await result
    return result


def _discard_outcome(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled():
        task.exception()


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class ExecutionQueue:
    """FIFO job scheduler for long-running agent and indexing work.

    Construct one per process and pass it to whoever submits work. Jobs are
    admitted in arrival order while fewer than ``concurrency`` are running.
    A failed attempt is retried after ``backoff_base_ms * 2**(attempts-1)``
    until ``max_retries`` retries are used up; the caller's future then
    receives the last error unchanged.

    With a ``JobStore`` every state change is mirrored to the store on a
    best-effort basis. Store errors are logged and never affect a job.

    Usage::

        queue = ExecutionQueue(settings, store=JobStore("jobs.db"))
        await queue.start()
        job_id, future = queue.enqueue(run_agent, JobOptions(timeout_ms=30_000))
        result = await future
    """

    def __init__(
        self,
        settings: Optional[QueueSettings] = None,
        store: Optional[JobStore] = None,
        registry: Optional[PayloadRegistry] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.concurrency = self.settings.concurrency
        self.default_max_retries = self.settings.max_retries
        self.default_backoff_ms = self.settings.backoff_ms
        self.default_timeout_ms = self.settings.timeout_ms

        self._store = store
        self._store_failed = False
        self.registry = registry if registry is not None else PayloadRegistry()

        self._queue: Deque[_InternalJob] = deque()
        self._active = 0
        self._jobs: Dict[str, JobRecord] = {}
        self._settled_at: Dict[str, float] = {}
        self._retry_timers: Dict[str, Tuple[asyncio.TimerHandle, _InternalJob]] = {}
        self._running: Dict["asyncio.Task[None]", _InternalJob] = {}
        self._background: Set["asyncio.Task[None]"] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._started = False
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def store_enabled(self) -> bool:
        """True when a store is configured and did not fail to initialise."""
        return self._store is not None and not self._store_failed

    async def start(self) -> Dict[str, int]:
        """Initialise the store and resume persisted pending work.

        A store that cannot be initialised puts the queue in memory-only mode
        instead of failing. Returns the rehydration summary.
        """
        summary = {"scanned": 0, "rehydrated": 0, "skipped": 0, "failed": 0}
        if self._started or self._store is None:
            self._started = True
            return summary
        self._started = True
        try:
            await self._store.initialize()
        except Exception as exc:
            self._store_failed = True
            logger.error("Job store unavailable, continuing memory-only: %s", exc, exc_info=True)
            return summary

        from .rehydrate import Rehydrator

        summary = await Rehydrator(
            self, self._store, self.registry, self.settings.rehydrate_cutoff_seconds
        ).run()
        self._admit()
        return summary

    async def join(self) -> None:
        """Wait until nothing is queued, running or waiting to retry."""
        await self._idle.wait()

    async def close(self) -> None:
        """Stop scheduling, cancel outstanding work and close the store.

        Futures of jobs that had not settled are cancelled. Interrupted
        attempts are written back as ``queued`` so the next process resumes
        them at once instead of waiting out ``rehydrate_cutoff_seconds``.
        """
        if self._closed:
            return
        self._closed = True

        for handle, job in self._retry_timers.values():
            handle.cancel()
            self._cancel_future(job)
        self._retry_timers.clear()
        while self._queue:
            self._cancel_future(self._queue.popleft())

        interrupted = list(self._running.values())
        running = list(self._running)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        for job in interrupted:
            record = self._jobs.get(job.id)
            if record is None or record.status != JobStatus.running:
                continue
            record.status = JobStatus.queued
            if self.store_enabled:
                await self._safe_write(
                    lambda job_id=job.id: self._store.update_job(job_id, status=JobStatus.queued),
                    job.id,
                    "shutdown",
                )
        self._idle.set()

        if self._store is not None:
            try:
                await self._store.close()
            except Exception as exc:
                logger.warning("Failed to close job store: %s", exc)

    # ── Submit & inspect ─────────────────────────────────────────────

    def enqueue(
        self,
        fn: JobFn,
        options: Optional[JobOptions] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> EnqueuedJob:
        """Register *fn* and return ``(job_id, future)`` immediately.

        Must be called from inside the running event loop. *payload* is stored
        with the job; it only makes the job resumable after a restart when
        its ``type`` is known to the payload registry.

        Raises
        ------
        JobQueueFullError
            If ``max_queued`` is set and that many jobs are unsettled.
        """
        if self._closed:
            raise RuntimeError("ExecutionQueue is closed")
        if not callable(fn):
            raise TypeError(f"Job callable expected, got {type(fn).__name__}")
        max_queued = self.settings.max_queued
        if max_queued is not None and self._unsettled() >= max_queued:
            raise JobQueueFullError(
                f"Job queue full. {max_queued} jobs pending. Try again later."
            )

        loop = asyncio.get_running_loop()
        opts = options or JobOptions()
        job = _InternalJob(
            id=uuid.uuid4().hex,
            fn=fn,
            future=loop.create_future(),
            attempts=0,
            max_retries=(
                opts.max_retries if opts.max_retries is not None else self.default_max_retries
            ),
            backoff_base_ms=(
                opts.backoff_base_ms
                if opts.backoff_base_ms is not None
                else self.default_backoff_ms
            ),
            timeout_ms=opts.timeout_ms if opts.timeout_ms is not None else self.default_timeout_ms,
        )
        record = JobRecord(id=job.id, payload=payload)
        self._jobs[job.id] = record
        self._queue.append(job)
        self._idle.clear()

        snapshot = record.model_copy(deep=True)
        self._persist(lambda: self._store.save_job(job.id, snapshot), job.id, "enqueue")
        logger.debug("Enqueued job %s (queued=%d)", job.id, len(self._queue))

        self._admit()
        return EnqueuedJob(job.id, job.future)

    def submit_payload(
        self,
        payload: Union[JobPayload, Dict[str, Any]],
        options: Optional[JobOptions] = None,
    ) -> EnqueuedJob:
        """Enqueue the work described by a registered payload.

        Raises ``UnknownPayloadError`` for an unregistered ``type`` and
        ``RehydrationError`` when the payload cannot be turned into a callable.
        """
        data = payload.to_payload() if isinstance(payload, JobPayload) else dict(payload)
        _, fn = self.registry.build(data)
        return self.enqueue(fn, options, payload=data)

    def adopt(
        self,
        job_id: str,
        fn: JobFn,
        *,
        attempts: int = 0,
        created_at: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Push recovered work straight onto the FIFO.

        Used by rehydration: no future is created and the queue's default
        retry policy applies. Returns False if *job_id* is already known.
        Admission is left to the caller.
        """
        if self._closed or job_id in self._jobs:
            return False
        self._jobs[job_id] = JobRecord(
            id=job_id,
            attempts=attempts,
            created_at=created_at or utc_now_iso(),
            payload=payload,
        )
        self._queue.append(
            _InternalJob(
                id=job_id,
                fn=fn,
                future=None,
                attempts=attempts,
                max_retries=self.default_max_retries,
                backoff_base_ms=self.default_backoff_ms,
                timeout_ms=self.default_timeout_ms,
            )
        )
        self._idle.clear()
        return True

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Look up a job.

        The in-memory registry answers for jobs this process owns. Anything
        else (earlier processes, evicted history) comes from the store.
        """
        record = self._jobs.get(job_id)
        if record is not None:
            # Shallow: ``result`` is opaque and may not be copyable.
            return record.model_copy()
        if not self.store_enabled:
            return None
        try:
            doc = await self._store.get_job(job_id)
        except Exception as exc:
            logger.warning("Failed to read job %s from store: %s", job_id, exc)
            return None
        return doc.to_record() if doc is not None else None

    def get_stats(self) -> QueueStats:
        return QueueStats(
            queued=len(self._queue),
            active=self._active,
            concurrency=self.concurrency,
            delayed=len(self._retry_timers),
        )

    # ── Scheduling ───────────────────────────────────────────────────

    def _unsettled(self) -> int:
        return len(self._queue) + self._active + len(self._retry_timers)

    def _admit(self) -> None:
        # No await between the ceiling check and the pop.
        while not self._closed and self._active < self.concurrency and self._queue:
            job = self._queue.popleft()
            self._active += 1
            job.attempts += 1

            record = self._jobs[job.id]
            record.status = JobStatus.running
            record.started_at = utc_now_iso()
            record.attempts = job.attempts

            task = asyncio.create_task(self._run(job), name=f"execution-job-{job.id}")
            self._running[task] = job
            task.add_done_callback(self._on_attempt_done)

    def _on_attempt_done(self, task: "asyncio.Task[None]") -> None:
        self._running.pop(task, None)
        self._active -= 1
        if not task.cancelled() and task.exception() is not None:
            logger.error("Unexpected scheduler error", exc_info=task.exception())
        # Next loop iteration, not inline.
        asyncio.get_running_loop().call_soon(self._admit)
        if self._unsettled() == 0:
            self._idle.set()

    def _requeue(self, job: _InternalJob) -> None:
        self._retry_timers.pop(job.id, None)
        if self._closed:
            return
        self._queue.append(job)
        self._admit()

    async def _run(self, job: _InternalJob) -> None:
        started = time.monotonic()
        try:
            await self._persist_transition(
                lambda: self._store.mark_running(job.id, attempts=job.attempts), job.id, "start"
            )
            result = await self._attempt(job)
        except asyncio.CancelledError as exc:
            if self._closed or asyncio.current_task().cancelling():
                self._cancel_future(job)
                raise
            # Raised by the callable itself: an ordinary failure.
            await self._on_failure(job, exc, time.monotonic() - started)
        except Exception as exc:
            await self._on_failure(job, exc, time.monotonic() - started)
        else:
            await self._on_success(job, result, time.monotonic() - started)

    async def _attempt(self, job: _InternalJob) -> Any:
        if job.timeout_ms is None:
            return await _invoke(job.fn)

        task = asyncio.ensure_future(_invoke(job.fn))
        try:
            done, _ = await asyncio.wait({task}, timeout=job.timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        # Coroutines get CancelledError; threads run on, their outcome ignored.
        task.cancel()
        task.add_done_callback(_discard_outcome)
        raise JobTimeoutError()

    async def _on_success(self, job: _InternalJob, result: Any, elapsed: float) -> None:
        completed_at = utc_now_iso()
        await self._persist_transition(
            lambda: self._store.update_job(
                job.id,
                status=JobStatus.succeeded,
                attempts=job.attempts,
                completed_at=completed_at,
                result=result,
                error=None,
            ),
            job.id,
            "success",
        )
        record = self._jobs[job.id]
        record.status = JobStatus.succeeded
        record.completed_at = completed_at
        record.result = result
        record.error = None
        if job.future is not None and not job.future.done():
            job.future.set_result(result)
        self._mark_settled(job.id)
        logger.info(
            "Job %s succeeded on attempt %d",
            job.id,
            job.attempts,
            extra={"metrics": {"job_id": job.id, "attempts": job.attempts,
                               "duration_ms": round(elapsed * 1000, 1)}},
        )

    async def _on_failure(self, job: _InternalJob, exc: BaseException, elapsed: float) -> None:
        record = self._jobs[job.id]
        error = _describe(exc)

        if job.attempts <= job.max_retries:
            delay_ms = backoff_delay_ms(job.backoff_base_ms, job.attempts)
            next_attempt_at = (
                datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
            ).isoformat()
            record.status = JobStatus.queued
            record.error = error
            handle = asyncio.get_running_loop().call_later(delay_ms / 1000, self._requeue, job)
            self._retry_timers[job.id] = (handle, job)
            self._persist(
                lambda: self._store.update_job(
                    job.id,
                    status=JobStatus.queued,
                    attempts=job.attempts,
                    error=error,
                    next_attempt_at=next_attempt_at,
                ),
                job.id,
                "retry",
            )
            logger.warning(
                "Job %s attempt %d/%d failed: %s. Retrying in %dms",
                job.id, job.attempts, job.max_retries + 1, error, delay_ms,
            )
            return

        status = JobStatus.timed_out if isinstance(exc, JobTimeoutError) else JobStatus.failed
        completed_at = utc_now_iso()
        await self._persist_transition(
            lambda: self._store.update_job(
                job.id,
                status=status,
                attempts=job.attempts,
                completed_at=completed_at,
                error=error,
            ),
            job.id,
            "failure",
        )
        record.status = status
        record.completed_at = completed_at
        record.error = error
        if job.future is not None and not job.future.done():
            job.future.set_exception(exc)
        self._mark_settled(job.id)
        logger.error(
            "Job %s %s after %d attempt(s): %s",
            job.id,
            status.value,
            job.attempts,
            error,
            extra={"metrics": {"job_id": job.id, "attempts": job.attempts,
                               "duration_ms": round(elapsed * 1000, 1)}},
        )

    @staticmethod
    def _cancel_future(job: _InternalJob) -> None:
        if job.future is not None and not job.future.done():
            job.future.cancel()

    # ── Registry retention ───────────────────────────────────────────

    def _mark_settled(self, job_id: str) -> None:
        now = time.monotonic()
        self._settled_at[job_id] = now
        retention = self.settings.retention_seconds
        # Insertion order is settlement order.
        for old_id in list(self._settled_at):
            if now - self._settled_at[old_id] <= retention:
                break
            del self._settled_at[old_id]
            self._jobs.pop(old_id, None)

    # ── Persistence ──────────────────────────────────────────────────

    def _persist(self, op: Callable[[], Awaitable[None]], job_id: str, action: str) -> None:
        """Run a store write in the background."""
        if not self.store_enabled:
            return
        task = asyncio.create_task(self._safe_write(op, job_id, action))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_transition(
        self, op: Callable[[], Awaitable[None]], job_id: str, action: str
    ) -> None:
        if not self.store_enabled:
            return
        if self.settings.await_persistence:
            await self._safe_write(op, job_id, action)
        else:
            self._persist(op, job_id, action)

    @staticmethod
    async def _safe_write(op: Callable[[], Awaitable[None]], job_id: str, action: str) -> None:
        try:
            await op()
        except Exception as exc:
            logger.warning("Failed to persist %s for job %s: %s", action, job_id, exc)
