"""
Per-grant sync checkpoint.

The checkpoint is the highest message epoch fully ingested for a grant and
the starting point of the next delta sync. It only ever moves forward.
"""

import json
import math
from datetime import UTC, datetime

from mail_indexer.infrastructure.observability.logging import get_logger
from mail_indexer.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


class CheckpointRepository:
    def __init__(self, redis: FastRedisClient | None = None):
        self.redis = redis or fast_redis

    def _key(self, grant_id: str) -> str:
        return self.redis.key("grant", grant_id, "checkpoint")

    async def get(self, grant_id: str) -> int:
        """Current checkpoint epoch, 0 when unset or unreadable."""
        raw = await self.redis.get(self._key(grant_id))
        if not raw:
            return 0

        try:
            value = json.loads(raw).get("lastCheckpoint", 0)
            return int(value) if isinstance(value, (int, float)) and value > 0 else 0
        except (ValueError, AttributeError):
            logger.warning("Unreadable checkpoint, treating as unset", grant_id=grant_id)
            return 0

    async def set(self, grant_id: str, epoch: float) -> int:
        """
        Store max(current, floor(epoch)) and return the stored value.

        Non-positive input and values below the current checkpoint are no-ops.
        """
        if not epoch or epoch <= 0:
            return await self.get(grant_id)

        candidate = math.floor(epoch)
        current = await self.get(grant_id)
        if candidate <= current:
            logger.debug(
                "Checkpoint not advanced", grant_id=grant_id, current=current, candidate=candidate
            )
            return current

        payload = {"lastCheckpoint": candidate, "updatedAt": datetime.now(UTC).isoformat()}
        await self.redis.set(self._key(grant_id), json.dumps(payload))

        logger.info("Checkpoint advanced", grant_id=grant_id, previous=current, checkpoint=candidate)
        return candidate


checkpoint_repository = CheckpointRepository()
