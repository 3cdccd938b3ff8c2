import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from querysafe.cache.redis_client import RedisClient
from querysafe.services.ratelimit.rate_limiter import (
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitStore,
    RateLimitTier,
    RedisRateLimitStore,
)


class BrokenStore(RateLimitStore):
    async def hit(self, key, limit, window_ms, now_ms):
        raise RedisConnectionError("Error 111 connecting to redis:6379")


@pytest.fixture
def limiter(clock) -> RateLimiter:
    return RateLimiter(MemoryRateLimitStore(), enabled=True, clock=clock)


class TestTiers:
    async def test_generation_allows_ten_per_minute(self, limiter):
        results = [await limiter.check_generation("u1") for _ in range(11)]

        assert all(result.success for result in results[:10])
        blocked = results[10]
        assert not blocked.success
        assert blocked.remaining == 0
        assert blocked.retry_after == 60
        assert blocked.message == (
            "Rate limit exceeded. You can generate 10 queries per minute. Please try again in 60 seconds."
        )

    async def test_execution_allows_twenty_per_minute(self, limiter):
        results = [await limiter.check_execution("u1") for _ in range(21)]

        assert all(result.success for result in results[:20])
        assert not results[20].success
        assert "execute 20 queries per minute" in results[20].message

    async def test_schema_refresh_wait_is_in_minutes(self, limiter):
        for _ in range(5):
            assert (await limiter.check_schema("u1")).success

        blocked = await limiter.check_schema("u1")

        assert not blocked.success
        assert blocked.retry_after == 3600
        assert blocked.message.endswith("Please try again in 60 minutes.")

    async def test_connection_test_tier(self, limiter):
        for _ in range(10):
            await limiter.check_connection_test("u1")

        blocked = await limiter.check_connection_test("u1")

        assert not blocked.success
        assert "test 10 connections per hour" in blocked.message

    async def test_remaining_counts_down(self, limiter):
        first = await limiter.check_generation("u1")
        second = await limiter.check_generation("u1")

        assert first.limit == 10
        assert first.remaining == 9
        assert second.remaining == 8

    async def test_tiers_and_users_are_independent(self, limiter):
        for _ in range(10):
            await limiter.check_generation("u1")

        assert not (await limiter.check_generation("u1")).success
        assert (await limiter.check_generation("u2")).success
        assert (await limiter.check_execution("u1")).success

    async def test_global_tier_is_keyed_by_address(self, limiter):
        assert (await limiter.check_global("203.0.113.7")).success
        assert limiter.make_identifier(RateLimitTier.GLOBAL, "203.0.113.7") == "203.0.113.7"
        assert limiter.make_identifier(RateLimitTier.EXECUTION, "u1") == "user:u1"


class TestSlidingWindow:
    async def test_window_slides(self, limiter, clock):
        for _ in range(10):
            await limiter.check_generation("u1")
            clock.advance(1)

        assert not (await limiter.check_generation("u1")).success

        # 60s after the first request, one slot frees up
        clock.advance(50)
        assert (await limiter.check_generation("u1")).success
        assert not (await limiter.check_generation("u1")).success

    async def test_retry_after_counts_from_oldest_request(self, limiter, clock):
        for _ in range(10):
            await limiter.check_generation("u1")
        clock.advance(45)

        blocked = await limiter.check_generation("u1")

        assert blocked.retry_after == 15
        assert blocked.reset == int((clock.now - 45) * 1000) + 60_000


class TestFailOpen:
    async def test_store_errors_allow_the_request(self, clock):
        limiter = RateLimiter(BrokenStore(), enabled=True, clock=clock)

        result = await limiter.check_execution("u1")

        assert result.success
        assert result.remaining == 20

    async def test_missing_store_allows_everything(self):
        limiter = RateLimiter(None, enabled=True)

        results = [await limiter.check_generation("u1") for _ in range(50)]

        assert all(result.success for result in results)

    async def test_disabled_limiter_allows_everything(self):
        limiter = RateLimiter(MemoryRateLimitStore(), enabled=False)

        results = [await limiter.check_schema("u1") for _ in range(10)]

        assert all(result.success for result in results)

    async def test_unconfigured_redis_fails_open(self):
        limiter = RateLimiter(RedisRateLimitStore(RedisClient(url="")), enabled=True)

        assert (await limiter.check_generation("u1")).success


class TestHeaders:
    async def test_allowed_headers(self, limiter, clock):
        result = await limiter.check_execution("u1")

        headers = result.headers()

        assert headers["X-RateLimit-Limit"] == "20"
        assert headers["X-RateLimit-Remaining"] == "19"
        assert headers["X-RateLimit-Reset"].endswith("Z")
        assert "Retry-After" not in headers

    async def test_blocked_headers_include_retry_after(self, limiter):
        for _ in range(10):
            await limiter.check_generation("u1")

        headers = (await limiter.check_generation("u1")).headers()

        assert headers["Retry-After"] == "60"
        assert headers["X-RateLimit-Remaining"] == "0"

    def test_describe(self, limiter):
        description = limiter.describe()

        assert description["enabled"]
        assert description["tiers"]["generation"] == {"limit": 10, "windowSeconds": 60}
        assert description["tiers"]["schema"] == {"limit": 5, "windowSeconds": 3600}
