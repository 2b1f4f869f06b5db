"""
Service layer for mailbox ingestion.
"""

from .ingestion_worker import IngestionWorker, PageOutcome
from .job_queue import JobQueue, QueuedJob, RedisJobQueue
from .rollup_service import RollupService
from .sync_scheduler import SyncScheduler, SyncSchedulerError, months_ago_epoch

__all__ = [
    "IngestionWorker",
    "JobQueue",
    "PageOutcome",
    "QueuedJob",
    "RedisJobQueue",
    "RollupService",
    "SyncScheduler",
    "SyncSchedulerError",
    "months_ago_epoch",
]
