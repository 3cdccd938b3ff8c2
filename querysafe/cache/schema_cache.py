"""Redis-backed cache of database schema metadata.

Entries live for ``SCHEMA_CACHE_TTL`` seconds (24 hours by default) and
carry an md5 fingerprint of the table and column names, which the schema
route returns so clients can tell when it changed. Every failure degrades to
a cache miss; Redis being down only disables caching.
"""

import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import ujson
from redis.exceptions import RedisError

from querysafe.cache.metrics import schema_cache_metrics
from querysafe.cache.redis_client import RedisClient
from querysafe.config import settings
from querysafe.data_connectors.types import SchemaInfo
from querysafe.logging import get_logger
from querysafe.observability import trace_function

logger = get_logger(__name__)

KEY_PREFIX = "schema"


def generate_schema_hash(schema: SchemaInfo) -> str:
    """Fingerprint of sorted ``table:`` and ``column:`` entries."""
    fingerprint: list[str] = []
    for table_name, columns in schema["tables"].items():
        fingerprint.append(f"table:{table_name}")
        for column in columns:
            fingerprint.append(f"column:{table_name}.{column['name']}:{column['type']}")
    fingerprint.sort()
    return hashlib.md5("|".join(fingerprint).encode("utf-8")).hexdigest()


def schema_stats(schema: SchemaInfo) -> dict[str, int]:
    return {
        "table_count": len(schema["tables"]),
        "total_columns": sum(len(columns) for columns in schema["tables"].values()),
    }


class SchemaCache:
    def __init__(self, redis_client: RedisClient, ttl: Optional[int] = None) -> None:
        self.redis_client = redis_client
        self.ttl = ttl if ttl is not None else settings.SCHEMA_CACHE_TTL

    @property
    def enabled(self) -> bool:
        return settings.SCHEMA_CACHE_ENABLED and self.redis_client.configured

    @staticmethod
    def make_key(connection_id: str) -> str:
        return f"{KEY_PREFIX}::{connection_id}"

    async def _load(self, connection_id: str) -> Optional[dict[str, Any]]:
        redis = await self.redis_client.get()
        if redis is None:
            return None
        raw = await redis.get(self.make_key(connection_id))
        if not raw:
            return None
        return ujson.loads(raw)

    @trace_function("schema_cache.get")
    async def get(self, connection_id: str) -> Optional[SchemaInfo]:
        """Return the cached schema or None on miss, expiry or error."""
        if not self.enabled:
            return None

        operation_id = str(uuid.uuid4())
        schema_cache_metrics.record_operation_start(operation_id)
        try:
            entry = await self._load(connection_id)
        except (RedisError, OSError, ValueError) as e:
            logger.warning("Schema cache read failed", connection_id=connection_id, error=str(e))
            schema_cache_metrics.record_cache_error("get", operation_id)
            return None

        if entry is None:
            schema_cache_metrics.record_cache_miss(operation_id)
            return None

        schema_cache_metrics.record_cache_hit(operation_id)
        logger.debug(
            "Schema cache hit",
            connection_id=connection_id,
            table_count=entry.get("table_count"),
            cached_at=entry.get("cached_at"),
        )
        return entry["schema"]

    @trace_function("schema_cache.set")
    async def set(self, connection_id: str, schema: SchemaInfo) -> bool:
        if not self.enabled:
            return False

        operation_id = str(uuid.uuid4())
        schema_cache_metrics.record_operation_start(operation_id)
        now = datetime.now(timezone.utc)
        schema_hash = generate_schema_hash(schema)
        entry = {
            "schema": schema,
            "schema_hash": schema_hash,
            "cached_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=self.ttl)).isoformat(),
            **schema_stats(schema),
        }
        try:
            redis = await self.redis_client.get()
            if redis is None:
                return False
            await redis.set(self.make_key(connection_id), ujson.dumps(entry, default=str), ex=self.ttl)
        except (RedisError, OSError) as e:
            logger.warning("Schema cache write failed", connection_id=connection_id, error=str(e))
            schema_cache_metrics.record_cache_set(operation_id, success=False)
            return False

        schema_cache_metrics.record_cache_set(operation_id, success=True)
        logger.info(
            "Schema cached",
            connection_id=connection_id,
            schema_hash=schema_hash,
            table_count=entry["table_count"],
            ttl=self.ttl,
        )
        return True

    async def delete(self, connection_id: str) -> bool:
        if not self.enabled:
            return False
        try:
            redis = await self.redis_client.get()
            if redis is None:
                return False
            await redis.delete(self.make_key(connection_id))
        except (RedisError, OSError) as e:
            logger.warning("Schema cache delete failed", connection_id=connection_id, error=str(e))
            schema_cache_metrics.record_cache_error("delete")
            return False
        return True
