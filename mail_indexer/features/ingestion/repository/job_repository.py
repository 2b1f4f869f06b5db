"""
Persistence for ingestion job progress records.

Provides a single place for job lifecycle updates so the scheduler/worker
logic can stay slim and focus on orchestration. Records that reached a
terminal status are never updated again.
"""

import json
import uuid
from datetime import UTC, datetime
from typing import Any

from mail_indexer.features.ingestion.domain.models import IngestionJob, JobType
from mail_indexer.infrastructure.observability.logging import get_logger
from mail_indexer.services.redis_client import FastRedisClient, RedisClientError, fast_redis

logger = get_logger(__name__)

UPDATABLE_FIELDS = {
    "status",
    "processed",
    "total",
    "indexed_vectors",
    "max_epoch_seen",
    "last_sync_timestamp",
    "message",
}


class JobRepositoryError(Exception):
    """Raised when a job record cannot be read or written."""

    def __init__(self, message: str, job_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.job_id = job_id
        self.recoverable = recoverable


class JobRepository:
    """Job records in Redis: job:<id> holds the JSON record, grant:<g>:jobs the recent ids."""

    def __init__(self, redis: FastRedisClient | None = None):
        self.redis = redis or fast_redis

    def _job_key(self, job_id: str) -> str:
        return self.redis.key("job", job_id)

    def _grant_jobs_key(self, grant_id: str) -> str:
        return self.redis.key("grant", grant_id, "jobs")

    async def create(self, grant_id: str, job_type: JobType, total: int) -> IngestionJob:
        """Insert a new queued job and return the record."""
        job = IngestionJob(
            job_id=str(uuid.uuid4()),
            grant_id=grant_id,
            type=job_type,
            status="queued",
            processed=0,
            total=total,
        )

        try:
            await self.redis.set(self._job_key(job.job_id), json.dumps(job.to_dict()))
            await self.redis.push_to_list(self._grant_jobs_key(grant_id), job.job_id, left=True)
        except RedisClientError as e:
            raise JobRepositoryError(f"Failed to create job: {e}", job_id=job.job_id) from e

        logger.info("Ingestion job created", job_id=job.job_id, grant_id=grant_id, type=job_type, total=total)
        return job

    async def get(self, job_id: str) -> IngestionJob | None:
        try:
            raw = await self.redis.get(self._job_key(job_id))
        except RedisClientError as e:
            raise JobRepositoryError(f"Failed to read job: {e}", job_id=job_id) from e

        if not raw:
            return None

        try:
            return IngestionJob.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise JobRepositoryError(f"Corrupt job record: {e}", job_id=job_id, recoverable=False) from e

    async def update(self, job_id: str, **changes: Any) -> IngestionJob | None:
        """
        Apply field changes to a job record.

        Returns the updated record, or None when the job does not exist or is
        already terminal (the record is left untouched).
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        job = await self.get(job_id)
        if job is None:
            logger.warning("Job update skipped, record not found", job_id=job_id)
            return None

        if job.is_terminal:
            logger.info(
                "Job update refused, record is terminal",
                job_id=job_id,
                status=job.status,
                attempted_status=changes.get("status"),
            )
            return None

        for field_name, value in changes.items():
            setattr(job, field_name, value)
        job.updated_at = datetime.now(UTC).isoformat()

        try:
            await self.redis.set(self._job_key(job_id), json.dumps(job.to_dict()))
        except RedisClientError as e:
            raise JobRepositoryError(f"Failed to update job: {e}", job_id=job_id) from e

        return job

    async def update_best_effort(self, job_id: str | None, **changes: Any) -> IngestionJob | None:
        """update() that logs and swallows store failures; progress records are advisory."""
        if not job_id:
            return None
        try:
            return await self.update(job_id, **changes)
        except JobRepositoryError as e:
            logger.warning("Job update failed", job_id=job_id, error=str(e))
            return None

    async def record_page(
        self, job_id: str | None, processed: int, page_vectors: int, max_epoch_seen: int
    ) -> IngestionJob | None:
        """Best-effort per-page progress: running, processed, indexed vectors accumulated."""
        if not job_id:
            return None
        try:
            current = await self.get(job_id)
        except JobRepositoryError as e:
            logger.warning("Job progress read failed", job_id=job_id, error=str(e))
            current = None

        previous_vectors = current.indexed_vectors if current else 0
        return await self.update_best_effort(
            job_id,
            status="running",
            processed=processed,
            indexed_vectors=previous_vectors + page_vectors,
            max_epoch_seen=max_epoch_seen,
        )

    async def list_jobs(self, grant_id: str, limit: int = 24) -> list[IngestionJob]:
        """Most recent jobs for a grant, newest first."""
        try:
            job_ids = await self.redis.list_range(self._grant_jobs_key(grant_id), 0, max(limit, 1) - 1)
        except RedisClientError as e:
            raise JobRepositoryError(f"Failed to list jobs: {e}") from e

        jobs = []
        for job_id in job_ids:
            job = await self.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs


job_repository = JobRepository()
