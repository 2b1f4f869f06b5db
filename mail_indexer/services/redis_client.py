# mail_indexer/services/redis_client.py
from __future__ import annotations

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from mail_indexer.config import settings
from mail_indexer.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_MOVE_MEMBER_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
    redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
    return 1
end
return 0
"""

_EXPIRE_IF_VALUE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

_DELETE_IF_VALUE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisClientError(Exception):
    """Raised when a Redis command fails after the client is initialized."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class FastRedisClient:
    """
    Pooled async Redis client backing checkpoints, day notes, job records and
    the ingestion queue.

    Unlike a cache, every store built on top of this client is a source of
    truth, so command failures raise RedisClientError instead of returning
    a fallback value. Callers that are best-effort catch it themselves.
    """

    def __init__(self, url: str | None = None, key_prefix: str | None = None):
        self.url = url
        self.key_prefix = key_prefix or settings.REDIS_KEY_PREFIX
        self.pool = None
        self.client = None
        self._initialized = False

    def key(self, *parts: str) -> str:
        """Build a namespaced key, e.g. key("grant", "g1", "checkpoint")."""
        return ":".join([self.key_prefix, *[str(part) for part in parts]])

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            redis_url = self.url or settings.redis_url()

            logger.info("Attempting Redis connection", url_preview=redis_url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=20,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized successfully", max_connections=20)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:60], error=str(e))
            raise RedisClientError(f"GET failed: {e}", operation="get") from e

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        try:
            await self._ensure_initialized()
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:60], error=str(e))
            raise RedisClientError(f"SET failed: {e}", operation="set") from e

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        """SET NX with expiry. Returns True when the key was created."""
        try:
            await self._ensure_initialized()
            result = await self.client.set(key, value, nx=True, ex=ttl_s)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET NX failed", key=key[:60], error=str(e))
            raise RedisClientError(f"SET NX failed: {e}", operation="set_if_absent") from e

    async def delete(self, key: str) -> bool:
        try:
            await self._ensure_initialized()
            result = await self.client.delete(key)
            return result > 0
        except Exception as e:
            logger.error("Redis DELETE failed", key=key[:60], error=str(e))
            raise RedisClientError(f"DELETE failed: {e}", operation="delete") from e

    async def expire_if_value(self, key: str, value: str, ttl_s: int) -> bool:
        """Reset the TTL of a key only while it still holds `value`."""
        try:
            await self._ensure_initialized()
            result = await self.client.eval(_EXPIRE_IF_VALUE_SCRIPT, 1, key, value, ttl_s)
            return int(result) == 1
        except Exception as e:
            logger.error("Redis conditional EXPIRE failed", key=key[:60], error=str(e))
            raise RedisClientError(
                f"Conditional EXPIRE failed: {e}", operation="expire_if_value"
            ) from e

    async def delete_if_value(self, key: str, value: str) -> bool:
        """Delete a key only while it still holds `value`."""
        try:
            await self._ensure_initialized()
            result = await self.client.eval(_DELETE_IF_VALUE_SCRIPT, 1, key, value)
            return int(result) == 1
        except Exception as e:
            logger.error("Redis conditional DELETE failed", key=key[:60], error=str(e))
            raise RedisClientError(
                f"Conditional DELETE failed: {e}", operation="delete_if_value"
            ) from e

    async def push_to_list(self, key: str, value: str, left: bool = False) -> int:
        """Append (RPUSH) or prepend (LPUSH) a value and return the new length."""
        try:
            await self._ensure_initialized()
            if left:
                return int(await self.client.lpush(key, value))
            return int(await self.client.rpush(key, value))
        except Exception as e:
            logger.error(
                "Redis LIST push failed", key=key[:60], value_preview=value[:30], error=str(e)
            )
            raise RedisClientError(f"LIST push failed: {e}", operation="push_to_list") from e

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        """Return a range of values from a list."""
        try:
            await self._ensure_initialized()
            result = await self.client.lrange(key, start, end)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis LRANGE failed", key=key[:60], error=str(e))
            raise RedisClientError(f"LRANGE failed: {e}", operation="list_range") from e

    async def add_to_set(self, key: str, *members: str) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.sadd(key, *members))
        except Exception as e:
            logger.error("Redis SADD failed", key=key[:60], error=str(e))
            raise RedisClientError(f"SADD failed: {e}", operation="add_to_set") from e

    async def set_members(self, key: str) -> set[str]:
        try:
            await self._ensure_initialized()
            result = await self.client.smembers(key)
            return {str(item) for item in result} if result else set()
        except Exception as e:
            logger.error("Redis SMEMBERS failed", key=key[:60], error=str(e))
            raise RedisClientError(f"SMEMBERS failed: {e}", operation="set_members") from e

    async def sorted_set_add(self, key: str, member: str, score: float) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.zadd(key, {member: score}))
        except Exception as e:
            logger.error("Redis ZADD failed", key=key[:60], error=str(e))
            raise RedisClientError(f"ZADD failed: {e}", operation="sorted_set_add") from e

    async def sorted_set_update(self, key: str, member: str, score: float) -> bool:
        """Change the score of an existing member (ZADD XX). Returns False if it is gone."""
        try:
            await self._ensure_initialized()
            await self.client.zadd(key, {member: score}, xx=True)
            return await self.client.zscore(key, member) is not None
        except Exception as e:
            logger.error("Redis ZADD XX failed", key=key[:60], error=str(e))
            raise RedisClientError(f"ZADD XX failed: {e}", operation="sorted_set_update") from e

    async def sorted_set_due(self, key: str, max_score: float, limit: int = 50) -> list[str]:
        """Members with score <= max_score, lowest score first."""
        try:
            await self._ensure_initialized()
            result = await self.client.zrangebyscore(key, "-inf", max_score, start=0, num=limit)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis ZRANGEBYSCORE failed", key=key[:60], error=str(e))
            raise RedisClientError(
                f"ZRANGEBYSCORE failed: {e}", operation="sorted_set_due"
            ) from e

    async def sorted_set_remove(self, key: str, member: str) -> bool:
        try:
            await self._ensure_initialized()
            return int(await self.client.zrem(key, member)) > 0
        except Exception as e:
            logger.error("Redis ZREM failed", key=key[:60], error=str(e))
            raise RedisClientError(f"ZREM failed: {e}", operation="sorted_set_remove") from e

    async def move_between_sorted_sets(
        self, source_key: str, destination_key: str, member: str, score: float
    ) -> bool:
        """
        Atomically move a member from one sorted set to another.

        Returns False when the member was no longer in the source set (another
        worker claimed it first).
        """
        try:
            await self._ensure_initialized()
            moved = await self.client.eval(
                _MOVE_MEMBER_SCRIPT, 2, source_key, destination_key, member, score
            )
            return int(moved) == 1
        except Exception as e:
            logger.error(
                "Redis sorted set move failed",
                source_key=source_key[:60],
                destination_key=destination_key[:60],
                error=str(e),
            )
            raise RedisClientError(
                f"Sorted set move failed: {e}", operation="move_between_sorted_sets"
            ) from e


# Global instance
fast_redis = FastRedisClient()
