"""Resume persisted pending jobs after a process restart."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict

from ..errors import RehydrationError
from .payloads import PayloadRegistry
from .store import JobStore

if TYPE_CHECKING:
    from .queue import ExecutionQueue

logger = logging.getLogger(__name__)


class Rehydrator:
    """Rebuilds runnable jobs from store documents.

    Only documents whose payload ``type`` is registered are resumed. The
    rebuilt job runs under the queue's default retry policy and has no
    future: the work is guaranteed to run again, the original request is not
    answered.
    """

    def __init__(
        self,
        queue: "ExecutionQueue",
        store: JobStore,
        registry: PayloadRegistry,
        cutoff_seconds: int = 3600,
    ) -> None:
        self.queue = queue
        self.store = store
        self.registry = registry
        self.cutoff_seconds = cutoff_seconds

    async def run(self) -> Dict[str, int]:
        """Push every resumable pending document onto the queue.

        Returns counts: ``scanned``, ``rehydrated``, ``skipped`` (unknown
        payload or already owned by this process) and ``failed``.
        """
        summary = {"scanned": 0, "rehydrated": 0, "skipped": 0, "failed": 0}
        try:
            docs = await self.store.list_pending_jobs(self.cutoff_seconds)
        except Exception as exc:
            logger.error("Failed to list pending jobs for rehydration: %s", exc)
            return summary

        for doc in docs:
            summary["scanned"] += 1
            if not self.registry.is_known(doc.payload):
                logger.debug("Skipping job %s: payload is not replayable", doc.id)
                summary["skipped"] += 1
                continue
            try:
                _, fn = self.registry.build(doc.payload)
            except RehydrationError as exc:
                logger.error("Cannot rehydrate job %s: %s", doc.id, exc)
                summary["failed"] += 1
                continue
            adopted = self.queue.adopt(
                doc.id,
                fn,
                attempts=doc.attempts,
                created_at=doc.created_at,
                payload=doc.payload,
            )
            if adopted:
                summary["rehydrated"] += 1
            else:
                summary["skipped"] += 1

        if summary["scanned"]:
            logger.info(
                "Rehydrated %d of %d pending job(s) (%d skipped, %d failed)",
                summary["rehydrated"], summary["scanned"], summary["skipped"], summary["failed"],
                extra={"metrics": dict(summary)},
            )
        return summary
