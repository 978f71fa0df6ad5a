"""Dependency construction helpers."""
from .providers import build_job_store, create_execution_queue

__all__ = ["build_job_store", "create_execution_queue"]
