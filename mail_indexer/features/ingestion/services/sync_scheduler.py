"""
Sync scheduling helpers.

Creates job records and enqueues the first page of backfill and delta syncs.
A delta starts from the grant's checkpoint, falling back to a lookback
window when the grant was never synced.
"""

import calendar
from datetime import UTC, datetime
from typing import Any

from mail_indexer.config import settings
from mail_indexer.features.ingestion.domain.models import IngestionJob, IngestionJobMessage, JobType
from mail_indexer.features.ingestion.repository.checkpoint_repository import (
    CheckpointRepository,
    checkpoint_repository,
)
from mail_indexer.features.ingestion.repository.day_note_repository import (
    DayNoteRepository,
    day_note_repository,
)
from mail_indexer.features.ingestion.repository.job_repository import (
    JobRepository,
    JobRepositoryError,
    job_repository,
)
from mail_indexer.features.ingestion.services.job_queue import JobQueue
from mail_indexer.infrastructure.observability.logging import get_logger
from mail_indexer.services.email_provider_client import list_registered_grants
from mail_indexer.services.redis_client import RedisClientError

logger = get_logger(__name__)

MAX_EMAIL_WINDOW = 10000


class SyncSchedulerError(Exception):
    """Raised when a sync cannot be scheduled."""

    def __init__(self, message: str, grant_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.grant_id = grant_id
        self.recoverable = recoverable


def months_ago_epoch(months: float, now: datetime | None = None) -> int:
    """Epoch seconds `months` calendar months before now (UTC), clamping the day of month."""
    now = now or datetime.now(UTC)
    months_back = max(0, int(months))

    total = now.year * 12 + (now.month - 1) - months_back
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return int(now.replace(year=year, month=month, day=day).timestamp())


def _positive(value: Any, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


class SyncScheduler:
    def __init__(
        self,
        queue: JobQueue,
        checkpoints: CheckpointRepository | None = None,
        jobs: JobRepository | None = None,
        ledger: DayNoteRepository | None = None,
    ):
        self.queue = queue
        self.checkpoints = checkpoints or checkpoint_repository
        self.jobs = jobs or job_repository
        self.ledger = ledger or day_note_repository

    async def start_backfill(
        self, grant_id: str, months: int | None = None, max_messages: int | None = None
    ) -> IngestionJob:
        """Backfill the last `months` months, up to max_messages."""
        months = months if months is not None else settings.BACKFILL_DEFAULT_MONTHS
        total = min(_positive(max_messages, settings.BACKFILL_MAX), MAX_EMAIL_WINDOW)
        return await self._start(grant_id, "backfill", months_ago_epoch(months), total)

    async def start_delta(
        self, grant_id: str, months: int | None = None, max_messages: int | None = None
    ) -> IngestionJob:
        """Sync everything after the checkpoint, or the lookback window when there is none."""
        months = months if months is not None else settings.DELTA_DEFAULT_MONTHS
        total = min(_positive(max_messages, settings.DELTA_MAX), MAX_EMAIL_WINDOW)

        checkpoint = await self.checkpoints.get(grant_id)
        since_epoch = checkpoint if checkpoint > 0 else months_ago_epoch(months)
        return await self._start(grant_id, "delta", since_epoch, total, checkpoint=checkpoint)

    async def start_sync(self, grant_id: str) -> IngestionJob:
        """Backfill a grant that was never synced, otherwise run a delta."""
        if await self.checkpoints.get(grant_id) > 0:
            return await self.start_delta(grant_id)
        return await self.start_backfill(grant_id)

    async def _start(
        self,
        grant_id: str,
        job_type: JobType,
        since_epoch: int,
        total: int,
        checkpoint: int = 0,
    ) -> IngestionJob:
        grant_id = (grant_id or "").strip()
        if not grant_id:
            raise SyncSchedulerError("Missing required grantId")

        try:
            job = await self.jobs.create(grant_id, job_type, total)
            message = IngestionJobMessage(
                grant_id=grant_id,
                since_epoch=since_epoch,
                max=total,
                job_id=job.job_id,
                type=job_type,
            )
            await self.queue.enqueue(message)
        except (JobRepositoryError, RedisClientError) as e:
            logger.error("Failed to schedule sync", grant_id=grant_id, type=job_type, error=str(e))
            raise SyncSchedulerError(f"Failed to schedule {job_type}: {e}", grant_id=grant_id) from e

        logger.info(
            "Sync enqueued",
            grant_id=grant_id,
            job_id=job.job_id,
            type=job_type,
            since_epoch=since_epoch,
            checkpoint=checkpoint,
            max=total,
        )
        return job

    async def discover_grants(self) -> list[str]:
        """Grants from NYLAS_GRANT_ID, NYLAS_KEY_<grant> env vars and the ledger's grant set."""
        grants: dict[str, None] = {}

        env_grant = (settings.NYLAS_GRANT_ID or "").strip()
        if env_grant:
            grants[env_grant] = None

        for grant_id in list_registered_grants():
            grants.setdefault(grant_id, None)

        try:
            for grant_id in await self.ledger.list_known_grants():
                grants.setdefault(grant_id, None)
        except RedisClientError as e:
            logger.warning("Known grant lookup failed, using configured grants only", error=str(e))

        return list(grants)

    async def enqueue_delta_for_known_grants(self) -> dict[str, str | None]:
        """
        Enqueue a delta for every discovered grant.

        Returns:
            grant id -> job id, or None when scheduling that grant failed
        """
        grants = await self.discover_grants()
        if not grants:
            logger.warning("No grants discovered; set NYLAS_GRANT_ID or NYLAS_KEY_<grant>")
            return {}

        results: dict[str, str | None] = {}
        for grant_id in grants:
            try:
                job = await self.start_delta(grant_id)
                results[grant_id] = job.job_id
            except Exception as e:
                logger.error("Failed to enqueue delta", grant_id=grant_id, error=str(e))
                results[grant_id] = None

        logger.info(
            "Delta sync enqueued for known grants",
            grants=len(grants),
            failed=sum(1 for job_id in results.values() if job_id is None),
        )
        return results

    async def get_job_progress(self, job_id: str) -> dict[str, Any] | None:
        job = await self.jobs.get(job_id)
        if job is None:
            return None
        return {**job.to_dict(), "percent": job.percent}

    async def list_jobs(self, grant_id: str, limit: int = 24) -> list[dict[str, Any]]:
        return [{**job.to_dict(), "percent": job.percent} for job in await self.jobs.list_jobs(grant_id, limit)]
