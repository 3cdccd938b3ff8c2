"""Adapter lifecycle manager.

Owns the live adapters, at most one per ``(user_id, connection_id)``. An
adapter is created lazily on first use, reused while fresh, and closed and
removed in one step when it expires, goes idle, fails its health check or is
invalidated. A closed adapter is never handed out again.

Creation is single-flight per key: concurrent callers for the same key wait
on that key's lock and then share the adapter the first caller built. Locks
never span unrelated keys.
"""

import asyncio
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from opentelemetry import trace

from querysafe.cache.metrics import pipeline_metrics
from querysafe.config import settings
from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.factory import create_connector
from querysafe.data_connectors.types import ConnectionConfig
from querysafe.logging import get_logger
from querysafe.services.connections.health import HealthMonitor, HealthStatus

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

CacheKey = Tuple[str, str]
ConfigLoader = Callable[[str, str], Awaitable[Optional[ConnectionConfig]]]
AdapterFactory = Callable[[ConnectionConfig], BaseConnector]


class EvictionReason:
    TTL = "ttl"
    IDLE = "idle"
    UNHEALTHY = "unhealthy"
    CLOSED = "closed"
    INVALIDATED = "invalidated"
    LRU = "lru"
    SHUTDOWN = "shutdown"


@dataclass
class CachedAdapter:
    adapter: BaseConnector
    created_at: float
    last_used_at: float
    use_count: int = field(default=1)


class AdapterLifecycleManager:
    def __init__(
        self,
        config_loader: ConfigLoader,
        health_monitor: HealthMonitor,
        adapter_factory: AdapterFactory = create_connector,
        ttl_seconds: Optional[float] = None,
        idle_timeout_seconds: Optional[float] = None,
        health_check_interval_seconds: Optional[float] = None,
        max_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config_loader = config_loader
        self._adapter_factory = adapter_factory
        self.health_monitor = health_monitor
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.ADAPTER_CACHE_TTL_SECONDS
        self.idle_timeout_seconds = (
            idle_timeout_seconds if idle_timeout_seconds is not None else settings.ADAPTER_IDLE_TIMEOUT_SECONDS
        )
        self.health_check_interval_seconds = (
            health_check_interval_seconds
            if health_check_interval_seconds is not None
            else settings.HEALTH_CHECK_INTERVAL_SECONDS
        )
        self.max_size = max_size if max_size is not None else settings.ADAPTER_CACHE_MAX_SIZE
        self._clock = clock
        self._cache: Dict[CacheKey, CachedAdapter] = {}
        # A key's lock lives only while some caller holds or waits on it
        self._locks: "weakref.WeakValueDictionary[CacheKey, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._sweeper: Optional[asyncio.Task] = None

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def acquire(self, user_id: str, connection_id: str) -> Optional[BaseConnector]:
        """Return a live adapter for the connection, creating one if needed.

        Returns None when the connection cannot be loaded or reached; the
        cause is logged, never raised.
        """
        key = (user_id, connection_id)
        with tracer.start_as_current_span(
            "lifecycle.acquire", attributes={"connection.id": connection_id}
        ) as span:
            async with self._lock_for(key):
                adapter = await self._reuse(key)
                if adapter is not None:
                    span.set_attribute("adapter.cached", True)
                    return adapter
                span.set_attribute("adapter.cached", False)
                adapter = await self._create(key)

            if adapter is not None:
                await self._enforce_max_size(exclude=key)
            return adapter

    async def _reuse(self, key: CacheKey) -> Optional[BaseConnector]:
        entry = self._cache.get(key)
        if entry is None:
            return None

        now = self._clock()
        reason = None
        if entry.adapter.is_closed:
            reason = EvictionReason.CLOSED
        elif now - entry.created_at > self.ttl_seconds:
            reason = EvictionReason.TTL
        elif now - entry.last_used_at > self.idle_timeout_seconds:
            reason = EvictionReason.IDLE
        elif self.health_monitor.needs_check(key[1], self.health_check_interval_seconds):
            health = await self.health_monitor.check(key[1], entry.adapter)
            if health.status == HealthStatus.DOWN:
                reason = EvictionReason.UNHEALTHY

        if reason is not None:
            await self._evict(key, reason)
            return None

        entry.last_used_at = now
        entry.use_count += 1
        return entry.adapter

    async def _create(self, key: CacheKey) -> Optional[BaseConnector]:
        user_id, connection_id = key
        adapter: Optional[BaseConnector] = None
        try:
            config = await self._config_loader(user_id, connection_id)
            if config is None:
                logger.warning("Connection not found for adapter creation", connection_id=connection_id)
                return None

            adapter = self._adapter_factory(config)
            await adapter.create_pool()
            health = await self.health_monitor.check(connection_id, adapter)
            if health.status == HealthStatus.DOWN:
                logger.warning(
                    "New adapter failed its health check",
                    connection_id=connection_id,
                    reason=health.last_error,
                )
                await self._close_quietly(adapter, connection_id)
                self.health_monitor.clear(connection_id)
                return None

        except asyncio.CancelledError:
            if adapter is not None:
                await asyncio.shield(self._close_quietly(adapter, connection_id))
            self.health_monitor.clear(connection_id)
            raise

        except Exception as e:
            logger.error(
                "Failed to create adapter",
                connection_id=connection_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            if adapter is not None:
                await self._close_quietly(adapter, connection_id)
            self.health_monitor.clear(connection_id)
            return None

        now = self._clock()
        self._cache[key] = CachedAdapter(adapter=adapter, created_at=now, last_used_at=now)
        pipeline_metrics.record_adapter_created(adapter.CONNECTOR_KEY.value, len(self._cache))
        logger.info(
            "Adapter created",
            connection_id=connection_id,
            db_type=adapter.CONNECTOR_KEY.value,
            provider=adapter.policy.provider,
            cache_size=len(self._cache),
        )
        return adapter

    async def _close_quietly(self, adapter: BaseConnector, connection_id: str) -> None:
        try:
            await adapter.close_pool()
        except Exception as e:
            logger.error("Error closing adapter", connection_id=connection_id, error=str(e))

    async def _evict(self, key: CacheKey, reason: str) -> bool:
        """Remove and close under the caller's key lock."""
        entry = self._cache.pop(key, None)
        self.health_monitor.clear(key[1])
        if entry is None:
            return False
        await self._close_quietly(entry.adapter, key[1])
        pipeline_metrics.record_adapter_evicted(reason, len(self._cache))
        logger.info("Adapter evicted", connection_id=key[1], reason=reason, cache_size=len(self._cache))
        return True

    async def _enforce_max_size(self, exclude: CacheKey) -> None:
        if not self.max_size:
            return
        while len(self._cache) > self.max_size:
            candidates = [(entry.last_used_at, key) for key, entry in self._cache.items() if key != exclude]
            if not candidates:
                return
            _, oldest = min(candidates)
            async with self._lock_for(oldest):
                await self._evict(oldest, EvictionReason.LRU)

    async def invalidate(self, user_id: str, connection_id: str) -> bool:
        """Close and remove the adapter for a connection, if cached."""
        key = (user_id, connection_id)
        async with self._lock_for(key):
            return await self._evict(key, EvictionReason.INVALIDATED)

    async def invalidate_user(self, user_id: str) -> int:
        keys = [key for key in list(self._cache) if key[0] == user_id]
        count = 0
        for key in keys:
            async with self._lock_for(key):
                if await self._evict(key, EvictionReason.INVALIDATED):
                    count += 1
        return count

    async def clear_all(self, reason: str = EvictionReason.INVALIDATED) -> int:
        count = 0
        for key in list(self._cache):
            async with self._lock_for(key):
                if await self._evict(key, reason):
                    count += 1
        logger.info("Adapter cache cleared", evicted=count)
        return count

    async def sweep(self) -> int:
        """Evict entries past their TTL or idle timeout without waiting for a request."""
        now = self._clock()
        expired = [
            (key, EvictionReason.TTL if now - entry.created_at > self.ttl_seconds else EvictionReason.IDLE)
            for key, entry in list(self._cache.items())
            if now - entry.created_at > self.ttl_seconds or now - entry.last_used_at > self.idle_timeout_seconds
        ]
        for key, reason in expired:
            async with self._lock_for(key):
                await self._evict(key, reason)
        return len(expired)

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Adapter sweep failed", error=str(e))

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        if self._sweeper is None:
            interval = interval if interval is not None else self.health_check_interval_seconds
            self._sweeper = asyncio.create_task(self._sweep_forever(interval))

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.clear_all(EvictionReason.SHUTDOWN)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        adapters: List[Dict[str, Any]] = [
            {
                "userId": user_id,
                "connectionId": connection_id,
                "dbType": entry.adapter.CONNECTOR_KEY.value,
                "ageSeconds": round(now - entry.created_at, 1),
                "idleSeconds": round(now - entry.last_used_at, 1),
                "useCount": entry.use_count,
                "closed": entry.adapter.is_closed,
            }
            for (user_id, connection_id), entry in self._cache.items()
        ]
        return {
            "size": len(self._cache),
            "maxSize": self.max_size,
            "ttlSeconds": self.ttl_seconds,
            "idleTimeoutSeconds": self.idle_timeout_seconds,
            "adapters": adapters,
        }

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)
