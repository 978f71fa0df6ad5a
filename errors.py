"""Exception taxonomy for the execution queue."""
from __future__ import annotations


class JobTimeoutError(TimeoutError):
    """An attempt exceeded its per-job ``timeout_ms``."""

    def __init__(self, message: str = "Job timed out") -> None:
        super().__init__(message)


class JobQueueFullError(Exception):
    """Raised when the number of unsettled jobs has reached ``max_queued``."""


class PersistenceError(Exception):
    """The job store could not be opened.

    ``ExecutionQueue.start`` catches it and carries on memory-only.
    """


class RehydrationError(Exception):
    """A persisted job could not be turned back into runnable work."""


class UnknownPayloadError(KeyError):
    """No factory is registered for the payload's ``type``."""
