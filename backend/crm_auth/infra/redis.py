import logging

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from ..config import settings

logger = logging.getLogger("crm.redis")


def get_async_redis_client(redis_url: str | None = None) -> AsyncRedis:
    """Create an async Redis client, defaulting to ``REDIS_URL``."""
    url = redis_url or settings.redis_url
    if not url:
        raise ValueError("REDIS_URL must be set")
    return AsyncRedis.from_url(url, decode_responses=True)


class DistributedLock:
    """
    Cluster-wide lock using Redis SET NX EX.
    Only one holder at a time; the TTL frees it if the holder dies.
    """

    def __init__(self, redis_client: AsyncRedis, lock_key: str, ttl_seconds: int = 30):
        self._redis = redis_client
        self._lock_key = f"lock:{lock_key}"
        self._ttl = ttl_seconds
        self._acquired = False

    @property
    def key(self) -> str:
        return self._lock_key

    async def acquire(self) -> bool:
        """Return True if this caller now holds the lock."""
        try:
            result = await self._redis.set(self._lock_key, "1", nx=True, ex=self._ttl)
        except RedisError as exc:
            logger.error(
                "Redis operation failed operation=SET key=%s error=%s",
                self._lock_key,
                exc,
            )
            return False
        self._acquired = bool(result)
        if self._acquired:
            logger.debug("Acquired lock: %s (TTL=%ds)", self._lock_key, self._ttl)
        return self._acquired

    async def release(self) -> bool:
        if not self._acquired:
            return False
        try:
            deleted = await self._redis.delete(self._lock_key)
        except RedisError as exc:
            logger.error(
                "Redis operation failed operation=DEL key=%s error=%s",
                self._lock_key,
                exc,
            )
            return False
        self._acquired = False
        if deleted:
            logger.debug("Released lock: %s", self._lock_key)
        return bool(deleted)
