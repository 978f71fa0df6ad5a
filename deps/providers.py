"""Construction helpers for the process-wide queue.

Nothing here is a hidden global: the caller owns the returned queue and hands
it to whoever submits work. Only the settings object is cached.
"""
from __future__ import annotations

import logging
from typing import Optional

from ..config import QueueSettings, get_settings
from ..jobs.payloads import PayloadRegistry
from ..jobs.queue import ExecutionQueue
from ..jobs.store import JobStore

logger = logging.getLogger(__name__)


def build_job_store(settings: Optional[QueueSettings] = None) -> Optional[JobStore]:
    """Return a ``JobStore`` for ``settings.store_path``, or None when unset."""
    settings = settings or get_settings()
    if not settings.store_path:
        return None
    return JobStore(settings.store_path, table=settings.store_table)


async def create_execution_queue(
    settings: Optional[QueueSettings] = None,
    registry: Optional[PayloadRegistry] = None,
    store: Optional[JobStore] = None,
) -> ExecutionQueue:
    """Build and start an ``ExecutionQueue``.

    Uses *store* if given, otherwise one derived from the settings. Pending
    jobs with a registered payload type are resumed before this returns.
    """
    settings = settings or get_settings()
    if store is None:
        store = build_job_store(settings)
    queue = ExecutionQueue(settings, store=store, registry=registry)
    await queue.start()
    logger.info(
        "Execution queue ready (concurrency=%d, store=%s)",
        queue.concurrency,
        settings.store_path if queue.store_enabled else "memory-only",
    )
    return queue
