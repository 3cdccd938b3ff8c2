"""Multi-tier sliding-window rate limiting.

Limits:
- Query generation: 10 requests/minute per user (LLM calls)
- Query execution: 20 requests/minute per user
- Schema refresh: 5 requests/hour per user
- Connection tests: 10 requests/hour per user
- Global: 1000 requests/minute per client IP

Counters are Redis sorted sets scored by request time in milliseconds. When
no store is configured or the store is unreachable, checks fail open.
"""

import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple

from redis.exceptions import RedisError

from querysafe.cache.metrics import pipeline_metrics
from querysafe.cache.redis_client import RedisClient
from querysafe.config import settings
from querysafe.logging import get_logger

logger = get_logger(__name__)


class RateLimitTier(str, Enum):
    GENERATION = "generation"
    EXECUTION = "execution"
    SCHEMA = "schema"
    CONNECTION_TEST = "connection_test"
    GLOBAL = "global"


@dataclass(frozen=True)
class RateLimitConfig:
    limit: int
    window_seconds: int
    prefix: str
    message: str
    # Report the wait in minutes rather than seconds
    wait_in_minutes: bool = False

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


RATE_LIMIT_CONFIGS: Dict[RateLimitTier, RateLimitConfig] = {
    RateLimitTier.GENERATION: RateLimitConfig(
        limit=10,
        window_seconds=60,
        prefix="ratelimit:generate",
        message="Rate limit exceeded. You can generate {limit} queries per minute. Please try again in {wait} seconds.",
    ),
    RateLimitTier.EXECUTION: RateLimitConfig(
        limit=20,
        window_seconds=60,
        prefix="ratelimit:execute",
        message="Rate limit exceeded. You can execute {limit} queries per minute. Please try again in {wait} seconds.",
    ),
    RateLimitTier.SCHEMA: RateLimitConfig(
        limit=5,
        window_seconds=3600,
        prefix="ratelimit:schema",
        message="Rate limit exceeded. You can refresh schema {limit} times per hour. Please try again in {wait} minutes.",
        wait_in_minutes=True,
    ),
    RateLimitTier.CONNECTION_TEST: RateLimitConfig(
        limit=10,
        window_seconds=3600,
        prefix="ratelimit:connection",
        message="Rate limit exceeded. You can test {limit} connections per hour. Please try again in {wait} minutes.",
        wait_in_minutes=True,
    ),
    RateLimitTier.GLOBAL: RateLimitConfig(
        limit=1000,
        window_seconds=60,
        prefix="ratelimit:global",
        message="Global rate limit exceeded. Please try again in {wait} seconds.",
    ),
}


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int  # epoch milliseconds
    retry_after: Optional[int] = None
    message: Optional[str] = None

    @property
    def reset_iso(self) -> str:
        return datetime.fromtimestamp(self.reset / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_iso,
        }
        if self.retry_after:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitStore(ABC):
    @abstractmethod
    async def hit(self, key: str, limit: int, window_ms: int, now_ms: int) -> Optional[Tuple[bool, int, int]]:
        """Record one request if under the limit.

        Returns:
            ``(allowed, count_in_window, oldest_timestamp_ms)``, or None when
            the store is not configured

        """


class MemoryRateLimitStore(RateLimitStore):
    """Process-local sliding window for single-node deployments and tests."""

    def __init__(self) -> None:
        self._windows: Dict[str, Deque[int]] = {}

    async def hit(self, key: str, limit: int, window_ms: int, now_ms: int) -> Tuple[bool, int, int]:
        window = self._windows.setdefault(key, deque())
        while window and window[0] <= now_ms - window_ms:
            window.popleft()
        allowed = len(window) < limit
        if allowed:
            window.append(now_ms)
        oldest = window[0] if window else now_ms
        return allowed, len(window), oldest


SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end
redis.call('PEXPIRE', key, window)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = now
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end
return {allowed, count, oldest_score}
"""


class RedisRateLimitStore(RateLimitStore):
    """Sorted-set sliding window; the check-and-add runs atomically as one Lua script."""

    def __init__(self, redis_client: RedisClient) -> None:
        self.redis_client = redis_client

    async def hit(self, key: str, limit: int, window_ms: int, now_ms: int) -> Optional[Tuple[bool, int, int]]:
        redis = await self.redis_client.get()
        if redis is None:
            return None
        member = f"{now_ms}:{uuid.uuid4().hex}"
        allowed, count, oldest = await redis.eval(SLIDING_WINDOW_SCRIPT, 1, key, now_ms, window_ms, limit, member)
        return bool(int(allowed)), int(count), int(float(oldest))


class RateLimiter:
    def __init__(
        self,
        store: Optional[RateLimitStore],
        enabled: Optional[bool] = None,
        configs: Optional[Dict[RateLimitTier, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.enabled = settings.RATE_LIMIT_ENABLED if enabled is None else enabled
        self.configs = configs or RATE_LIMIT_CONFIGS
        self._clock = clock
        if not self.enabled or self.store is None:
            logger.warning("Rate limiting is not active; all requests will be allowed", enabled=self.enabled)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _open_result(self, config: RateLimitConfig, now_ms: int) -> RateLimitResult:
        return RateLimitResult(success=True, limit=config.limit, remaining=config.limit, reset=now_ms + config.window_ms)

    @staticmethod
    def make_identifier(tier: RateLimitTier, identifier: str) -> str:
        return identifier if tier == RateLimitTier.GLOBAL else f"user:{identifier}"

    async def check(self, tier: RateLimitTier, identifier: str) -> RateLimitResult:
        """Count one request against ``tier`` for ``identifier``.

        Never raises for store failures; the request is allowed instead.
        """
        config = self.configs[tier]
        now_ms = self._now_ms()

        if not self.enabled or self.store is None:
            return self._open_result(config, now_ms)

        key = f"{config.prefix}:{self.make_identifier(tier, identifier)}"
        try:
            outcome = await self.store.hit(key, config.limit, config.window_ms, now_ms)
        except (RedisError, OSError) as e:
            logger.warning("Rate limit store unavailable, failing open", tier=tier.value, error=str(e))
            return self._open_result(config, now_ms)

        if outcome is None:
            logger.debug("Rate limit store not configured, failing open", tier=tier.value)
            return self._open_result(config, now_ms)

        allowed, count, oldest_ms = outcome
        reset = oldest_ms + config.window_ms
        pipeline_metrics.record_rate_limit(tier.value, allowed)

        if allowed:
            return RateLimitResult(
                success=True,
                limit=config.limit,
                remaining=max(0, config.limit - count),
                reset=reset,
            )

        retry_after = max(1, math.ceil((reset - now_ms) / 1000))
        wait = max(1, math.ceil((reset - now_ms) / 60000)) if config.wait_in_minutes else retry_after
        result = RateLimitResult(
            success=False,
            limit=config.limit,
            remaining=0,
            reset=reset,
            retry_after=retry_after,
            message=config.message.format(limit=config.limit, wait=wait),
        )
        logger.warning(
            "Rate limit exceeded",
            tier=tier.value,
            identifier=identifier,
            limit=config.limit,
            reset=result.reset_iso,
            retry_after=retry_after,
        )
        return result

    async def check_generation(self, user_id: str) -> RateLimitResult:
        return await self.check(RateLimitTier.GENERATION, user_id)

    async def check_execution(self, user_id: str) -> RateLimitResult:
        return await self.check(RateLimitTier.EXECUTION, user_id)

    async def check_schema(self, user_id: str) -> RateLimitResult:
        return await self.check(RateLimitTier.SCHEMA, user_id)

    async def check_connection_test(self, user_id: str) -> RateLimitResult:
        return await self.check(RateLimitTier.CONNECTION_TEST, user_id)

    async def check_global(self, ip_address: str) -> RateLimitResult:
        return await self.check(RateLimitTier.GLOBAL, ip_address)

    def describe(self) -> Dict[str, object]:
        return {
            "enabled": self.enabled and self.store is not None,
            "tiers": {
                tier.value: {"limit": config.limit, "windowSeconds": config.window_seconds}
                for tier, config in self.configs.items()
            },
        }


def create_rate_limiter(redis_client: RedisClient) -> RateLimiter:
    if settings.RATE_LIMIT_BACKEND == "memory":
        return RateLimiter(MemoryRateLimitStore())
    if not redis_client.configured:
        return RateLimiter(None)
    return RateLimiter(RedisRateLimitStore(redis_client))
