"""Schema service: the active connection's schema, cached in Redis."""

from typing import Any, Dict, Optional, Tuple

from opentelemetry import trace

from querysafe.cache.schema_cache import SchemaCache, generate_schema_hash, schema_stats
from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.types import SchemaInfo
from querysafe.exceptions.pipeline import (
    ConnectionUnavailableError,
    NoActiveConnectionError,
    RateLimitExceededError,
)
from querysafe.logging import get_logger
from querysafe.services.connections.lifecycle import AdapterLifecycleManager
from querysafe.services.connections.store import ConnectionRecord, ConnectionStore
from querysafe.services.ratelimit.rate_limiter import RateLimiter, RateLimitResult

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)


class SchemaService:
    def __init__(
        self,
        store: ConnectionStore,
        lifecycle: AdapterLifecycleManager,
        rate_limiter: RateLimiter,
        schema_cache: Optional[SchemaCache] = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.rate_limiter = rate_limiter
        self.schema_cache = schema_cache

    async def resolve(self, user_id: str) -> Tuple[ConnectionRecord, BaseConnector]:
        """Active connection and a live adapter for it.

        Raises:
            NoActiveConnectionError: If the user has no active connection
            ConnectionUnavailableError: If no adapter can be obtained

        """
        record = await self.store.get_active(user_id)
        if record is None:
            raise NoActiveConnectionError()
        adapter = await self.lifecycle.acquire(user_id, record.id)
        if adapter is None:
            raise ConnectionUnavailableError()
        return record, adapter

    async def load(self, connection_id: str, adapter: BaseConnector, force_refresh: bool = False) -> Tuple[SchemaInfo, bool]:
        """Schema for an already-acquired adapter; returns ``(schema, cached)``."""
        if not force_refresh and self.schema_cache is not None:
            cached = await self.schema_cache.get(connection_id)
            if cached is not None:
                return cached, True

        schema = await adapter.get_schema()
        if self.schema_cache is not None:
            await self.schema_cache.set(connection_id, schema)
        return schema, False

    async def get_schema(self, user_id: str, force_refresh: bool = False) -> Dict[str, Any]:
        """Schema of the user's active connection.

        A forced refresh bypasses the cache and counts against the schema tier.

        Raises:
            RateLimitExceededError: If a forced refresh is over the schema tier
            NoActiveConnectionError: If the user has no active connection
            ConnectionUnavailableError: If no adapter can be obtained

        """
        rate_limit: Optional[RateLimitResult] = None
        if force_refresh:
            rate_limit = await self.rate_limiter.check_schema(user_id)
            if not rate_limit.success:
                raise RateLimitExceededError(
                    rate_limit.message or "Rate limit exceeded for schema refresh",
                    retry_after=rate_limit.retry_after or 1,
                    headers=rate_limit.headers(),
                )

        with tracer.start_as_current_span("schema.get", attributes={"force_refresh": force_refresh}) as span:
            record, adapter = await self.resolve(user_id)
            schema, cached = await self.load(record.id, adapter, force_refresh)
            span.set_attribute("schema.cached", cached)

        logger.info(
            "Schema served",
            user_id=user_id,
            connection_id=record.id,
            cached=cached,
            **schema_stats(schema),
        )
        return {
            "schema": schema,
            "cached": cached,
            "schemaHash": generate_schema_hash(schema),
            "connection": {"id": record.id, "name": record.name, "db_type": record.db_type.value},
            "rateLimit": rate_limit,
        }
