from typing import Optional

import redis.asyncio as aioredis

from querysafe.config import settings
from querysafe.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Lazily connected Redis client shared by the rate limiter, schema cache and audit sink.

    ``get()`` returns None when no ``REDIS_URL`` is configured, so callers can
    degrade instead of failing.
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url if url is not None else settings.REDIS_URL
        self.redis: Optional[aioredis.Redis] = None
        self._connection_pool: Optional[aioredis.ConnectionPool] = None

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def get(self) -> Optional[aioredis.Redis]:
        """Get Redis client, creating connection if needed."""
        if not self.configured:
            return None

        if self.redis is None:
            try:
                self._connection_pool = aioredis.ConnectionPool.from_url(
                    self.url,
                    max_connections=settings.REDIS_MAX_CONNECTIONS,
                    retry_on_timeout=settings.REDIS_RETRY_ON_TIMEOUT,
                    health_check_interval=30,
                )
                client = aioredis.Redis(connection_pool=self._connection_pool)
                await client.ping()
                self.redis = client
                logger.info("Redis connection established successfully", max_connections=settings.REDIS_MAX_CONNECTIONS)
            except (aioredis.RedisError, OSError) as e:
                logger.error("Failed to connect to Redis", error=str(e))
                await self._release_pool()
                raise
        return self.redis

    async def _release_pool(self) -> None:
        if self._connection_pool:
            await self._connection_pool.aclose()
            self._connection_pool = None

    async def close(self) -> None:
        """Close Redis connection."""
        try:
            if self.redis:
                await self.redis.aclose()
                self.redis = None
            await self._release_pool()
            logger.info("Redis connection closed successfully")
        except (aioredis.RedisError, OSError) as e:
            logger.error("Error closing Redis connection", error=str(e))
