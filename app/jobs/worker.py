"""
Ledger worker entrypoint (``bounty-worker``).

The web process never polls the ledger; this separate process does. The job
to run comes from the first CLI argument, then ``WORKER_JOB``, then
``DEFAULT_JOB``:

    bounty-worker                    # ledger_sync, polls forever
    bounty-worker ledger-sync-once   # one pass over every watched wallet
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from app.config import settings
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.ledger_sync_job import run_ledger_sync_once, start_ledger_sync_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[Any]]

DEFAULT_JOB = "ledger_sync"

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "ledger_sync": start_ledger_sync_scheduler,
    "ledger_sync_once": run_ledger_sync_once,
}


def _normalize(name: str) -> str:
    return name.strip().lower().replace("-", "_")


def _resolve_job_name(argv: list[str] | None = None) -> str:
    """First CLI argument, else WORKER_JOB, else the polling ledger sync."""
    args = sys.argv[1:] if argv is None else argv
    if args and args[0].strip():
        return _normalize(args[0])
    return _normalize(os.getenv("WORKER_JOB") or DEFAULT_JOB)


async def run_worker(job_name: str | None = None) -> None:
    name = _normalize(job_name or _resolve_job_name())
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}")

    logger.info("Starting ledger worker", job=name)
    result = await job()
    if result is not None:
        logger.info("Ledger worker finished", job=name, result=result)


def main() -> None:
    setup_logging(log_level=settings.log_level)
    job_name = _resolve_job_name()
    try:
        asyncio.run(run_worker(job_name))
    except KeyboardInterrupt:
        logger.info("Ledger worker interrupted", job=job_name)


if __name__ == "__main__":
    main()
