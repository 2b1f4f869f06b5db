"""
Periodic delta sync for every known grant.
"""

import asyncio

from mail_indexer.config import settings
from mail_indexer.features.ingestion.services.job_queue import RedisJobQueue
from mail_indexer.features.ingestion.services.sync_scheduler import SyncScheduler
from mail_indexer.infrastructure.observability.logging import get_logger
from mail_indexer.services.redis_client import fast_redis

logger = get_logger(__name__)


async def run_delta_timer_once(scheduler: SyncScheduler | None = None) -> dict[str, str | None]:
    scheduler = scheduler or SyncScheduler(RedisJobQueue())
    return await scheduler.enqueue_delta_for_known_grants()


async def start_delta_timer_scheduler() -> None:
    """
    Enqueue a delta for every known grant every DELTA_TIMER_INTERVAL_MINUTES.

    The first run happens immediately on startup.
    """
    if not settings.DELTA_TIMER_ENABLED:
        logger.info("Delta timer scheduler DISABLED", environment=settings.environment)
        return

    interval_seconds = max(60, settings.DELTA_TIMER_INTERVAL_MINUTES * 60)
    await fast_redis.initialize()
    scheduler = SyncScheduler(RedisJobQueue())

    logger.info(
        "Delta timer scheduler STARTED",
        interval_minutes=settings.DELTA_TIMER_INTERVAL_MINUTES,
        environment=settings.environment,
    )

    try:
        while True:
            try:
                results = await run_delta_timer_once(scheduler)
                logger.info("Delta timer run completed", grants=len(results))
                await asyncio.sleep(interval_seconds)

            except asyncio.CancelledError:
                logger.info("Delta timer scheduler cancelled")
                break
            except Exception as e:
                logger.error("Error in delta timer scheduler, will retry", error=str(e))
                await asyncio.sleep(interval_seconds)
    finally:
        await fast_redis.close()


if __name__ == "__main__":
    asyncio.run(start_delta_timer_scheduler())
