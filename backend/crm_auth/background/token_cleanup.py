from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from datetime import timedelta
from typing import AsyncContextManager, Callable

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from ..crud.refresh_token import RefreshTokenRepository
from ..errors import InternalError
from ..infra.redis import DistributedLock, get_async_redis_client
from ..services.token_service import RefreshTokenService

CLEANUP_LOCK_KEY = "refresh_token_cleanup"

logger = logging.getLogger("crm.jobs")


class TokenCleanupScheduler:
    """
    Periodically deletes expired refresh token records.

    Every worker runs the loop, but a run only happens after taking a Redis
    lock whose TTL equals the interval, so the cluster cleans up once per
    interval. The lock is held until it expires; a failed run releases it
    early so another worker can retry.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncContextManager[AsyncSession]],
        interval: timedelta,
        redis_client: AsyncRedis | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval
        self._redis = redis_client
        self._owns_redis = redis_client is None
        self._task: asyncio.Task[None] | None = None
        self._worker_id = str(uuid.uuid4())[:8]

    async def _ensure_redis(self) -> AsyncRedis:
        if self._redis is None:
            self._redis = get_async_redis_client()
        return self._redis

    async def run_once(self) -> int | None:
        """Run one cleanup if this worker wins the lock; return the removed count."""
        try:
            redis = await self._ensure_redis()
        except ValueError as exc:
            logger.warning("Token cleanup skipped: %s", exc)
            return None

        lock = DistributedLock(
            redis,
            CLEANUP_LOCK_KEY,
            ttl_seconds=max(1, int(self._interval.total_seconds())),
        )
        if not await lock.acquire():
            logger.debug(
                "Token cleanup skipped: lock held elsewhere worker_id=%s", self._worker_id
            )
            return None

        try:
            async with self._session_factory() as session:
                service = RefreshTokenService(RefreshTokenRepository(session))
                removed = await service.cleanup_expired()
        except InternalError:
            await lock.release()
            logger.error("Token cleanup failed worker_id=%s", self._worker_id)
            return None

        logger.info(
            "Token cleanup finished removed=%d worker_id=%s", removed, self._worker_id
        )
        return removed

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except RedisError as exc:
                logger.warning("Token cleanup skipped: redis unavailable error=%s", exc)
            await asyncio.sleep(self._interval.total_seconds())

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="refresh-token-cleanup")
        logger.info("Token cleanup scheduler started worker_id=%s", self._worker_id)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        if self._owns_redis and self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.info("Token cleanup scheduler stopped worker_id=%s", self._worker_id)
