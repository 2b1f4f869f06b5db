"""
Background worker entry point.

    mail-indexer-worker [ingestion|delta_timer|all]

The job name comes from the first CLI argument, then the WORKER_JOB
environment variable, and defaults to the ingestion runner. "all" runs the
ingestion runner and the delta timer in one process.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable, Sequence

from mail_indexer.config import settings
from mail_indexer.features.ingestion.jobs.delta_timer_job import start_delta_timer_scheduler
from mail_indexer.features.ingestion.jobs.ingestion_job import start_ingestion_worker
from mail_indexer.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

DEFAULT_JOB = "ingestion"


async def run_all_jobs() -> None:
    """Ingestion runner and delta timer side by side; either failing stops both."""
    await asyncio.gather(start_ingestion_worker(), start_delta_timer_scheduler())


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "ingestion": start_ingestion_worker,
    "delta_timer": start_delta_timer_scheduler,
    "all": run_all_jobs,
}


def _resolve_job_name(argv: Sequence[str] | None = None) -> str:
    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0].strip():
        return args[0].strip().lower()
    return (os.getenv("WORKER_JOB") or DEFAULT_JOB).strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    name = (job_name or _resolve_job_name()).strip().lower()
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(
            f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}"
        )

    logger.info(
        "Starting background worker",
        job=name,
        environment=settings.environment,
        queue=settings.INGESTION_QUEUE_NAME,
    )
    await job()


def main() -> None:
    setup_logging(settings.LOG_LEVEL, json_logs=settings.environment != "development")
    job_name = _resolve_job_name()
    try:
        asyncio.run(run_worker(job_name))
    except KeyboardInterrupt:
        logger.info("Background worker stopped", job=job_name)


if __name__ == "__main__":
    main()
