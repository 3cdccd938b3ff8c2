from .rate_limiter import (
    RATE_LIMIT_CONFIGS,
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitResult,
    RateLimitTier,
    RedisRateLimitStore,
    create_rate_limiter,
)

__all__ = [
    "RATE_LIMIT_CONFIGS",
    "MemoryRateLimitStore",
    "RateLimiter",
    "RateLimitResult",
    "RateLimitTier",
    "RedisRateLimitStore",
    "create_rate_limiter",
]
