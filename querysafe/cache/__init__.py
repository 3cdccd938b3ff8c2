from .metrics import pipeline_metrics, schema_cache_metrics
from .redis_client import RedisClient
from .schema_cache import SchemaCache, generate_schema_hash

__all__ = [
    "RedisClient",
    "SchemaCache",
    "generate_schema_hash",
    "pipeline_metrics",
    "schema_cache_metrics",
]
