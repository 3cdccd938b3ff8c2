"""Connection health monitoring.

Each check runs the adapter's trivial ping query under a short timeout and
classifies the connection by latency. Records are kept per connection id so
the lifecycle manager can decide when a cached adapter must be recreated.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from opentelemetry import trace

from querysafe.cache.metrics import pipeline_metrics
from querysafe.config import settings
from querysafe.data_connectors.base import BaseConnector
from querysafe.logging import get_logger

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


@dataclass
class ConnectionHealth:
    connection_id: str
    status: HealthStatus
    last_check: datetime
    checked_at: float
    latency_ms: float
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    total_checks: int = 0
    successful_checks: int = 0
    uptime_percent: float = 0.0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "connectionId": self.connection_id,
            "status": self.status.value,
            "lastCheck": self.last_check.isoformat(),
            "latencyMs": round(self.latency_ms, 2),
            "consecutiveFailures": self.consecutive_failures,
            "consecutiveSuccesses": self.consecutive_successes,
            "totalChecks": self.total_checks,
            "successfulChecks": self.successful_checks,
            "uptimePercent": round(self.uptime_percent, 2),
        }
        if self.last_error:
            data["lastError"] = self.last_error
        return data


@dataclass
class _History:
    outcomes: Deque[bool] = field(default_factory=deque)


class HealthMonitor:
    """Tracks health records per connection.

    Uptime is the lifetime ratio of successful checks unless ``uptime_window``
    is set, in which case only the last ``uptime_window`` checks count.
    """

    def __init__(
        self,
        check_timeout: Optional[float] = None,
        healthy_latency_ms: Optional[float] = None,
        degraded_latency_ms: Optional[float] = None,
        uptime_window: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.check_timeout = check_timeout if check_timeout is not None else settings.HEALTH_CHECK_TIMEOUT_SECONDS
        self.healthy_latency_ms = (
            healthy_latency_ms if healthy_latency_ms is not None else settings.HEALTH_HEALTHY_LATENCY_MS
        )
        self.degraded_latency_ms = (
            degraded_latency_ms if degraded_latency_ms is not None else settings.HEALTH_DEGRADED_LATENCY_MS
        )
        self.uptime_window = uptime_window if uptime_window is not None else settings.HEALTH_UPTIME_WINDOW
        self._clock = clock
        self._records: Dict[str, ConnectionHealth] = {}
        self._history: Dict[str, _History] = {}

    def classify_latency(self, latency_ms: float) -> HealthStatus:
        if latency_ms < self.healthy_latency_ms:
            return HealthStatus.HEALTHY
        if latency_ms < self.degraded_latency_ms:
            return HealthStatus.DEGRADED
        return HealthStatus.DOWN

    def _uptime(self, connection_id: str, succeeded: bool, total: int, successful: int) -> float:
        if not self.uptime_window:
            return successful / total * 100 if total else 0.0
        outcomes = self._history.setdefault(connection_id, _History()).outcomes
        outcomes.append(succeeded)
        while len(outcomes) > self.uptime_window:
            outcomes.popleft()
        return sum(outcomes) / len(outcomes) * 100

    async def check(self, connection_id: str, adapter: BaseConnector) -> ConnectionHealth:
        """Ping the adapter and update the record; never raises for failed pings."""
        existing = self._records.get(connection_id)
        total = (existing.total_checks if existing else 0) + 1
        successful = existing.successful_checks if existing else 0

        with tracer.start_as_current_span("health.check", attributes={"connection.id": connection_id}) as span:
            start = time.perf_counter()
            error: Optional[BaseException] = None
            try:
                await asyncio.wait_for(adapter.ping(self.check_timeout), timeout=self.check_timeout)
            except Exception as e:
                error = e
            latency_ms = (time.perf_counter() - start) * 1000

            if error is None:
                status = self.classify_latency(latency_ms)
                successful += 1
                health = ConnectionHealth(
                    connection_id=connection_id,
                    status=status,
                    last_check=datetime.now(timezone.utc),
                    checked_at=self._clock(),
                    latency_ms=latency_ms,
                    consecutive_failures=0,
                    consecutive_successes=(existing.consecutive_successes if existing else 0) + 1,
                    total_checks=total,
                    successful_checks=successful,
                    uptime_percent=self._uptime(connection_id, True, total, successful),
                )
            else:
                reason = (
                    "Health check timeout"
                    if isinstance(error, asyncio.TimeoutError)
                    else adapter.describe_error(error)
                )
                logger.warning(
                    "Health check failed",
                    connection_id=connection_id,
                    error_type=type(error).__name__,
                    reason=reason,
                )
                health = ConnectionHealth(
                    connection_id=connection_id,
                    status=HealthStatus.DOWN,
                    last_check=datetime.now(timezone.utc),
                    checked_at=self._clock(),
                    latency_ms=latency_ms,
                    consecutive_failures=(existing.consecutive_failures if existing else 0) + 1,
                    consecutive_successes=0,
                    total_checks=total,
                    successful_checks=successful,
                    uptime_percent=self._uptime(connection_id, False, total, successful),
                    last_error=reason,
                )

            span.set_attribute("health.status", health.status.value)
            span.set_attribute("health.latency_ms", latency_ms)

        self._records[connection_id] = health
        pipeline_metrics.record_health_check(health.status.value, latency_ms)
        logger.debug(
            "Health check completed",
            connection_id=connection_id,
            status=health.status.value,
            latency_ms=round(latency_ms, 2),
        )
        return health

    def get(self, connection_id: str) -> Optional[ConnectionHealth]:
        return self._records.get(connection_id)

    def get_all(self) -> Dict[str, ConnectionHealth]:
        return dict(self._records)

    def is_healthy(self, connection_id: str, max_age: Optional[float] = None) -> bool:
        """True when the latest check is not down and no older than ``max_age`` seconds."""
        max_age = max_age if max_age is not None else settings.HEALTH_CHECK_INTERVAL_SECONDS
        health = self._records.get(connection_id)
        if health is None:
            return False
        if self._clock() - health.checked_at > max_age:
            return False
        return health.status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)

    def needs_check(self, connection_id: str, interval: Optional[float] = None) -> bool:
        interval = interval if interval is not None else settings.HEALTH_CHECK_INTERVAL_SECONDS
        health = self._records.get(connection_id)
        if health is None:
            return True
        return self._clock() - health.checked_at > interval

    def clear(self, connection_id: str) -> None:
        self._records.pop(connection_id, None)
        self._history.pop(connection_id, None)
