"""Process-wide tunables for the execution queue."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file.

    Read once when an ``ExecutionQueue`` is constructed, e.g.
    ``EXECUTION_CONCURRENCY=4`` or ``EXECUTION_STORE_PATH=jobs.db``.
    """

    concurrency: int = Field(default=2, ge=1)
    max_retries: int = Field(default=2, ge=0)
    backoff_ms: int = Field(default=1000, ge=0)
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    max_queued: Optional[int] = Field(default=None, ge=1)

    # Durable store; ``None`` runs the queue memory-only.
    store_path: Optional[str] = None
    store_table: str = Field(default="execution_jobs", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    rehydrate_cutoff_seconds: int = Field(default=3600, ge=0)

    retention_seconds: float = Field(default=3600.0, ge=0)
    await_persistence: bool = False

    log_level: str = "INFO"
    log_format: Literal["structured", "json"] = "structured"

    model_config = SettingsConfigDict(env_prefix="EXECUTION_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> QueueSettings:
    return QueueSettings()
