"""Asynchronous job execution engine for agent and indexing work."""
from .config import QueueSettings, get_settings
from .errors import (
    JobQueueFullError,
    JobTimeoutError,
    PersistenceError,
    RehydrationError,
    UnknownPayloadError,
)
from .jobs import (
    EnqueuedJob,
    ExecutionQueue,
    JobOptions,
    JobRecord,
    JobStatus,
    JobStore,
    PayloadRegistry,
    QueueStats,
)

__version__ = "0.1.0"

__all__ = [
    "EnqueuedJob",
    "ExecutionQueue",
    "JobOptions",
    "JobQueueFullError",
    "JobRecord",
    "JobStatus",
    "JobStore",
    "JobTimeoutError",
    "PayloadRegistry",
    "PersistenceError",
    "QueueSettings",
    "QueueStats",
    "RehydrationError",
    "UnknownPayloadError",
    "get_settings",
]
