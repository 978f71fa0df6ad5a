"""Asyncio job queue with SQLite-backed job history."""
from .models import EnqueuedJob, JobDocument, JobOptions, JobRecord, JobStatus, QueueStats
from .payloads import (
    GraphExecutionPayload,
    IndexDocumentsPayload,
    JobPayload,
    PayloadRegistry,
    graph_execution_factory,
    index_documents_factory,
)
from .queue import ExecutionQueue, backoff_delay_ms
from .rehydrate import Rehydrator
from .store import JobStore

__all__ = [
    "EnqueuedJob",
    "ExecutionQueue",
    "GraphExecutionPayload",
    "IndexDocumentsPayload",
    "JobDocument",
    "JobOptions",
    "JobPayload",
    "JobRecord",
    "JobStatus",
    "JobStore",
    "PayloadRegistry",
    "QueueStats",
    "Rehydrator",
    "backoff_delay_ms",
    "graph_execution_factory",
    "index_documents_factory",
]
