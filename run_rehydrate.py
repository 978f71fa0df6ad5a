#!/usr/bin/env python3
"""
Resume persisted pending jobs and run them to completion.

Jobs are only resumable when their payload type has a registered executor;
``--executors`` names a module exposing ``register(registry)`` that adds them.

Examples:
    python execution_queue/run_rehydrate.py --store jobs.db --executors myapp.jobs
    EXECUTION_STORE_PATH=jobs.db python execution_queue/run_rehydrate.py --cutoff 600
"""
import argparse
import asyncio
import importlib
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from execution_queue.config import QueueSettings
from execution_queue.deps.providers import build_job_store
from execution_queue.jobs.payloads import PayloadRegistry
from execution_queue.jobs.queue import ExecutionQueue
from execution_queue.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def _load_registry(module_names: list[str]) -> PayloadRegistry:
    """Import each module and let its ``register(registry)`` add payload types."""
    registry = PayloadRegistry()
    for name in module_names:
        module = importlib.import_module(name)
        register = getattr(module, "register", None)
        if not callable(register):
            raise ValueError(f"Module '{name}' has no register(registry) function.")
        register(registry)
    return registry


async def _drain(settings: QueueSettings, registry: PayloadRegistry) -> dict:
    queue = ExecutionQueue(settings, store=build_job_store(settings), registry=registry)
    try:
        summary = await queue.start()
        if not queue.store_enabled:
            raise RuntimeError(f"Job store at {settings.store_path!r} is unavailable.")
        await queue.join()
    finally:
        await queue.close()
    return summary


def main():
    """Rehydrate pending jobs from the store, wait for them to settle and print a summary."""
    parser = argparse.ArgumentParser(description="Resume pending execution_queue jobs")
    parser.add_argument("--store", default=None, help="SQLite job store path (overrides EXECUTION_STORE_PATH).")
    parser.add_argument("--cutoff", type=int, default=None,
                        help="Seconds after which a running job is presumed abandoned.")
    parser.add_argument("--executors", nargs="*", default=[],
                        help="Modules providing register(registry) for payload types.")
    parser.add_argument("--log-level", default=None, choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    overrides = {}
    if args.store:
        overrides["store_path"] = args.store
    if args.cutoff is not None:
        overrides["rehydrate_cutoff_seconds"] = args.cutoff
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    settings = QueueSettings(**overrides)
    configure_logging(settings.log_level, settings.log_format)

    if not settings.store_path:
        logger.error("No job store configured. Pass --store or set EXECUTION_STORE_PATH.")
        sys.exit(1)

    try:
        registry = _load_registry(args.executors)
        summary = asyncio.run(_drain(settings, registry))
    except (ImportError, ValueError, RuntimeError) as exc:
        logger.error("%s", exc)
        sys.exit(1)

    print("\n=== JOB REHYDRATION ===")
    print(f"  Store:               {settings.store_path}")
    print(f"  Payload types:       {', '.join(registry.types) or '(none)'}")
    print(f"  Pending scanned:     {summary['scanned']}")
    print(f"  Rehydrated and run:  {summary['rehydrated']}")
    print(f"  Skipped:             {summary['skipped']}")
    print(f"  Failed to rebuild:   {summary['failed']}")


if __name__ == "__main__":
    main()
