"""
Ingestion job runner.

Runs inside the worker service: claims due jobs from the Redis queue (one
per grant at a time), hands each payload to the IngestionWorker, acks it,
and periodically returns crashed jobs to the schedule.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import UTC, datetime

from mail_indexer.config import settings
from mail_indexer.features.ingestion.services.ingestion_worker import IngestionWorker, PageOutcome
from mail_indexer.features.ingestion.services.job_queue import QueuedJob, RedisJobQueue
from mail_indexer.features.ingestion.services.rollup_service import RollupService
from mail_indexer.features.ingestion.services.sync_scheduler import SyncScheduler
from mail_indexer.infrastructure.observability.logging import (
    get_logger,
    job_log_context,
    log_job_outcome,
)
from mail_indexer.services.email_provider_client import EmailProviderClient
from mail_indexer.services.openai_service import OpenAIService
from mail_indexer.services.pinecone_client import PineconeIndexClient
from mail_indexer.services.redis_client import fast_redis

logger = get_logger(__name__)

REQUEUE_INTERVAL_SECONDS = 60


@dataclass(slots=True)
class IngestionRuntime:
    """Process-wide collaborators, built once and shared by every job."""

    queue: RedisJobQueue
    provider: EmailProviderClient
    text_service: OpenAIService
    vector_index: PineconeIndexClient
    rollups: RollupService
    worker: IngestionWorker
    scheduler: SyncScheduler

    async def close(self) -> None:
        await self.provider.close()
        await self.vector_index.flush_metrics()


def build_ingestion_runtime() -> IngestionRuntime:
    queue = RedisJobQueue()
    provider = EmailProviderClient()
    vector_index = PineconeIndexClient()
    text_service = OpenAIService(sparse_encoder=vector_index.generate_sparse_embedding)
    rollups = RollupService(text_service, vector_index)
    worker = IngestionWorker(
        queue=queue,
        provider=provider,
        text_service=text_service,
        vector_index=vector_index,
        rollups=rollups,
    )
    return IngestionRuntime(
        queue=queue,
        provider=provider,
        text_service=text_service,
        vector_index=vector_index,
        rollups=rollups,
        worker=worker,
        scheduler=SyncScheduler(queue),
    )


class IngestionRunnerMetrics:
    """Tracks page outcomes for the lifetime of the runner."""

    def __init__(self):
        self.started_at = datetime.now(UTC)
        self.pages = 0
        self.outcomes: dict[str, int] = {}
        self.unhandled_errors = 0
        self.requeued = 0

    def record(self, outcome: PageOutcome) -> None:
        self.pages += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "pages": self.pages,
            "outcomes": dict(self.outcomes),
            "unhandled_errors": self.unhandled_errors,
            "requeued": self.requeued,
        }


class IngestionJobRunner:
    def __init__(
        self,
        queue: RedisJobQueue,
        worker: IngestionWorker,
        max_concurrent_tenants: int | None = None,
        poll_interval_seconds: float | None = None,
        heartbeat_interval_seconds: float | None = None,
    ):
        self.queue = queue
        self.worker = worker
        self.max_concurrent_tenants = max(
            1, max_concurrent_tenants or settings.WORKER_MAX_CONCURRENT_TENANTS
        )
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.WORKER_POLL_INTERVAL_SECONDS
        )
        self.heartbeat_interval_seconds = heartbeat_interval_seconds or max(
            queue.visibility_timeout_seconds / 3, 1
        )
        self.metrics = IngestionRunnerMetrics()
        self._running: set[asyncio.Task] = set()
        self._last_requeue = 0.0

    async def run_job(self, job: QueuedJob) -> PageOutcome | None:
        """
        Process one claimed job and ack it.

        A job whose processing raised is left in flight so the visibility
        timeout redelivers it.
        """
        started = time.monotonic()
        with job_log_context(grant_id=job.grant_id, envelope_id=job.envelope_id):
            heartbeat = asyncio.create_task(self._keep_alive(job))
            try:
                outcome = await self.worker.handle(job.payload)
            except Exception as e:
                self.metrics.unhandled_errors += 1
                logger.error(
                    "Ingestion job crashed, leaving for redelivery",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return None
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

            self.metrics.record(outcome)
            try:
                await self.queue.ack(job)
            except Exception as e:
                logger.error(
                    "Failed to ack ingestion job, it will be redelivered",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            log_job_outcome(
                job.grant_id,
                outcome.value,
                took_ms=(time.monotonic() - started) * 1000,
                envelope_id=job.envelope_id,
            )
            return outcome

    async def _keep_alive(self, job: QueuedJob) -> None:
        """Renew the job's lease and in-flight deadline until cancelled."""
        while True:
            await asyncio.sleep(self.heartbeat_interval_seconds)
            try:
                if not await self.queue.renew(job):
                    return
            except Exception as e:
                logger.warning("Failed to renew ingestion job lease", error=str(e))

    async def run_once(self) -> list[PageOutcome | None]:
        """Claim whatever is due (up to the tenant limit) and process it to completion."""
        await self._maybe_requeue_expired(force=True)
        jobs = await self.queue.claim(self.max_concurrent_tenants)
        return list(await asyncio.gather(*(self.run_job(job) for job in jobs)))

    async def _maybe_requeue_expired(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_requeue < REQUEUE_INTERVAL_SECONDS:
            return
        self._last_requeue = now
        self.metrics.requeued += await self.queue.requeue_expired()

    async def _fill_slots(self) -> int:
        free = self.max_concurrent_tenants - len(self._running)
        if free <= 0:
            return 0

        jobs = await self.queue.claim(free)
        for job in jobs:
            task = asyncio.create_task(self.run_job(job))
            self._running.add(task)
            task.add_done_callback(self._running.discard)
        return len(jobs)

    async def run_forever(self) -> None:
        logger.info(
            "Ingestion runner STARTED",
            queue=self.queue.name,
            max_concurrent_tenants=self.max_concurrent_tenants,
            poll_interval_seconds=self.poll_interval_seconds,
        )

        while True:
            try:
                await self._maybe_requeue_expired()
                claimed = await self._fill_slots()
                if claimed:
                    logger.debug("Claimed ingestion jobs", count=claimed, running=len(self._running))
                await asyncio.sleep(self.poll_interval_seconds)

            except asyncio.CancelledError:
                logger.info("Ingestion runner cancelled", metrics=self.metrics.to_dict())
                running = list(self._running)
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                break
            except Exception as e:
                logger.error("Error in ingestion runner loop, will retry", error=str(e))
                await asyncio.sleep(max(self.poll_interval_seconds, 5))


async def start_ingestion_worker() -> None:
    """Entry point for running the ingestion worker."""
    await fast_redis.initialize()
    runtime = build_ingestion_runtime()
    runner = IngestionJobRunner(runtime.queue, runtime.worker)

    try:
        await runner.run_forever()
    finally:
        await runtime.close()
        await fast_redis.close()


if __name__ == "__main__":
    asyncio.run(start_ingestion_worker())
