"""
Ingestion job queue.

Redis layout (per queue name):
    <queue>:scheduled    sorted set, score = due time (epoch seconds)
    <queue>:inflight     sorted set, score = visibility deadline
    <queue>:lease:<g>    per-grant lease holding the claim's token

A job is only claimed when its grant's lease can be taken, so jobs of one
grant run one at a time while different grants run in parallel. The runner
renews the lease and the in-flight deadline while a job runs; jobs left in
flight past their deadline (a dead runner) are returned to the schedule.
"""

import json
import time
import uuid
from dataclasses import dataclass
from typing import Protocol

from mail_indexer.config import settings
from mail_indexer.features.ingestion.domain.models import IngestionJobMessage
from mail_indexer.infrastructure.observability.logging import get_logger
from mail_indexer.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

UNKNOWN_GRANT = "_unknown"


class JobQueue(Protocol):
    async def enqueue(self, message: IngestionJobMessage, delay_seconds: float = 0) -> None: ...


@dataclass(slots=True)
class QueuedJob:
    """
    A claimed job. `member` is the exact sorted-set member; `lease_token` is
    unique to this claim, so a redelivered copy holds a different token.
    """

    envelope_id: str
    grant_id: str
    payload: str
    member: str
    lease_token: str = ""


class RedisJobQueue:
    def __init__(
        self,
        name: str | None = None,
        redis: FastRedisClient | None = None,
        visibility_timeout_seconds: int | None = None,
    ):
        self.name = name or settings.INGESTION_QUEUE_NAME
        self.redis = redis or fast_redis
        self.visibility_timeout_seconds = (
            visibility_timeout_seconds or settings.QUEUE_VISIBILITY_TIMEOUT_SECONDS
        )

    @property
    def scheduled_key(self) -> str:
        return self.redis.key("queue", self.name, "scheduled")

    @property
    def inflight_key(self) -> str:
        return self.redis.key("queue", self.name, "inflight")

    def lease_key(self, grant_id: str) -> str:
        return self.redis.key("queue", self.name, "lease", grant_id)

    async def enqueue(self, message: IngestionJobMessage, delay_seconds: float = 0) -> None:
        await self.enqueue_raw(message.to_payload(), message.grant_id, delay_seconds)
        logger.debug(
            "Ingestion job enqueued",
            grant_id=message.grant_id,
            job_id=message.job_id,
            page_token=message.page_token,
            attempt=message.attempt,
            delay_seconds=delay_seconds,
        )

    async def enqueue_raw(self, payload: str, grant_id: str | None, delay_seconds: float = 0) -> str:
        """Schedule a raw payload; grant_id is the partition key used for the lease."""
        envelope_id = str(uuid.uuid4())
        member = json.dumps(
            {"id": envelope_id, "grantId": grant_id or UNKNOWN_GRANT, "payload": payload}
        )
        await self.redis.sorted_set_add(self.scheduled_key, member, time.time() + max(delay_seconds, 0))
        return envelope_id

    async def claim(self, limit: int = 1) -> list[QueuedJob]:
        """
        Claim up to `limit` due jobs, at most one per grant.

        Due jobs whose grant lease is held elsewhere stay scheduled.
        """
        now = time.time()
        due = await self.redis.sorted_set_due(self.scheduled_key, now, limit=max(limit * 4, 10))

        claimed: list[QueuedJob] = []
        grants_this_round: set[str] = set()

        for member in due:
            if len(claimed) >= limit:
                break

            try:
                envelope = json.loads(member)
                job = QueuedJob(
                    envelope_id=str(envelope["id"]),
                    grant_id=str(envelope.get("grantId") or UNKNOWN_GRANT),
                    payload=str(envelope.get("payload", "")),
                    member=member,
                )
            except (ValueError, KeyError, TypeError):
                # Not an envelope we wrote; hand it to the worker to reject
                job = QueuedJob(
                    envelope_id=str(uuid.uuid4()), grant_id=UNKNOWN_GRANT, payload=member, member=member
                )

            if job.grant_id in grants_this_round:
                continue

            job.lease_token = str(uuid.uuid4())
            leased = await self.redis.set_if_absent(
                self.lease_key(job.grant_id), job.lease_token, self.visibility_timeout_seconds
            )
            if not leased:
                continue

            moved = await self.redis.move_between_sorted_sets(
                self.scheduled_key, self.inflight_key, member, now + self.visibility_timeout_seconds
            )
            if not moved:
                await self.redis.delete_if_value(self.lease_key(job.grant_id), job.lease_token)
                continue

            grants_this_round.add(job.grant_id)
            claimed.append(job)

        return claimed

    async def renew(self, job: QueuedJob) -> bool:
        """
        Extend the grant lease and the in-flight deadline of a running job.

        Returns False when this claim no longer holds the lease; the job
        keeps running but its ack will not release anyone else's lease.
        """
        held = await self.redis.expire_if_value(
            self.lease_key(job.grant_id), job.lease_token, self.visibility_timeout_seconds
        )
        if not held:
            logger.warning(
                "Ingestion job lost its grant lease",
                grant_id=job.grant_id,
                envelope_id=job.envelope_id,
            )
            return False

        await self.redis.sorted_set_update(
            self.inflight_key, job.member, time.time() + self.visibility_timeout_seconds
        )
        return True

    async def ack(self, job: QueuedJob) -> None:
        """
        Remove a finished job and release its grant lease.

        The member is also dropped from the schedule in case it was requeued
        while running, so a finished page is never delivered again.
        """
        await self.redis.sorted_set_remove(self.inflight_key, job.member)
        await self.redis.sorted_set_remove(self.scheduled_key, job.member)
        await self.redis.delete_if_value(self.lease_key(job.grant_id), job.lease_token)

    async def requeue_expired(self) -> int:
        """Return in-flight jobs past their visibility deadline to the schedule."""
        now = time.time()
        expired = await self.redis.sorted_set_due(self.inflight_key, now, limit=100)

        requeued = 0
        for member in expired:
            if await self.redis.move_between_sorted_sets(
                self.inflight_key, self.scheduled_key, member, now
            ):
                requeued += 1

        if requeued:
            logger.warning("Requeued expired in-flight jobs", queue=self.name, count=requeued)
        return requeued
