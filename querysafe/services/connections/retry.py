"""Exponential-backoff retry for transient connection failures."""

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Generic, Optional, Tuple, TypeVar

from querysafe.config import settings
from querysafe.exceptions.connector import ConnectionTimeoutError, InvalidCredentialsError
from querysafe.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_PATTERNS: Tuple[str, ...] = (
    "etimedout",
    "timed out",
    "timeout",
    "econnrefused",
    "connection refused",
    "econnreset",
    "connection reset",
    "enotfound",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "enetunreach",
    "network is unreachable",
    "ehostunreach",
    "no route to host",
    "connection lost",
    "server has gone away",
    "too many connections",
    "broken pipe",
)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = field(default_factory=lambda: settings.CONNECT_MAX_RETRIES)
    base_delay_ms: int = field(default_factory=lambda: settings.CONNECT_RETRY_BASE_DELAY_MS)
    max_delay_ms: int = field(default_factory=lambda: settings.CONNECT_RETRY_MAX_DELAY_MS)
    multiplier: float = field(default_factory=lambda: settings.CONNECT_RETRY_MULTIPLIER)
    retryable_patterns: Tuple[str, ...] = RETRYABLE_PATTERNS

    def delay_seconds(self, attempt: int) -> float:
        """Delay after the given 1-based attempt."""
        delay_ms = self.base_delay_ms * (self.multiplier ** (attempt - 1))
        return min(delay_ms, self.max_delay_ms) / 1000

    @classmethod
    def for_connection_test(cls) -> "RetryConfig":
        # Interactive: fewer attempts, shorter waits
        return replace(cls(), max_retries=2, base_delay_ms=2000, max_delay_ms=5000)


@dataclass
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    total_time_ms: float
    data: Optional[T] = None
    error: Optional[BaseException] = None


def _error_texts(error: BaseException) -> list[str]:
    texts = []
    current: Optional[BaseException] = error
    while current is not None:
        texts.append(f"{type(current).__name__} {current}".lower())
        current = current.__cause__
    return texts


def is_retryable_error(error: BaseException, patterns: Tuple[str, ...] = RETRYABLE_PATTERNS) -> bool:
    """Refused, timed-out, reset, unresolved and overloaded connections are retryable."""
    if isinstance(error, InvalidCredentialsError):
        return False
    if isinstance(error, (ConnectionTimeoutError, ConnectionRefusedError, ConnectionResetError, asyncio.TimeoutError)):
        return True
    return any(pattern in text for text in _error_texts(error) for pattern in patterns)


async def with_retry(operation: Callable[[], Awaitable[T]], config: Optional[RetryConfig] = None) -> RetryResult[T]:
    """Run ``operation`` until it succeeds, fails permanently, or attempts run out.

    Never raises for operation failures; the last error is on the result.
    """
    config = config or RetryConfig()
    start = time.perf_counter()
    last_error: Optional[BaseException] = None

    for attempt in range(1, config.max_retries + 1):
        try:
            data = await operation()
            total_ms = (time.perf_counter() - start) * 1000
            logger.debug("Operation succeeded", attempt=attempt, total_time_ms=round(total_ms, 2))
            return RetryResult(success=True, attempts=attempt, total_time_ms=total_ms, data=data)
        except Exception as e:
            last_error = e
            if not is_retryable_error(e, config.retryable_patterns):
                logger.info("Non-retryable error, aborting", attempt=attempt, error_type=type(e).__name__)
                return RetryResult(
                    success=False,
                    attempts=attempt,
                    total_time_ms=(time.perf_counter() - start) * 1000,
                    error=e,
                )
            logger.warning(
                "Retryable connection error",
                attempt=attempt,
                max_retries=config.max_retries,
                error_type=type(e).__name__,
            )
            if attempt < config.max_retries:
                await asyncio.sleep(config.delay_seconds(attempt))

    return RetryResult(
        success=False,
        attempts=config.max_retries,
        total_time_ms=(time.perf_counter() - start) * 1000,
        error=last_error,
    )
