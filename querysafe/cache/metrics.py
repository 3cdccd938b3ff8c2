import time
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Histogram

from querysafe.logging import get_logger

logger = get_logger(__name__)

# Schema cache
schema_cache_operations_total = Counter(
    "schema_cache_operations_total", "Total number of schema cache operations", ["operation", "status"]
)

schema_cache_hit_rate = Gauge("schema_cache_hit_rate", "Schema cache hit rate percentage")

schema_cache_operation_duration = Histogram(
    "schema_cache_operation_duration_seconds",
    "Time spent on schema cache operations",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# Query pipeline
pipeline_outcomes_total = Counter(
    "query_pipeline_outcomes_total", "Pipeline results by operation and outcome kind", ["operation", "outcome"]
)

sql_validations_total = Counter(
    "sql_validations_total", "SQL validation results", ["db_type", "result", "limit_applied"]
)

query_execution_duration = Histogram(
    "query_execution_duration_seconds",
    "Wall-clock time of executed queries",
    ["db_type"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0],
)

# Adapter lifecycle
adapter_cache_size = Gauge("adapter_cache_size", "Number of live cached database adapters")

adapter_created_total = Counter("adapter_created_total", "Adapters created", ["db_type"])

adapter_evictions_total = Counter("adapter_evictions_total", "Adapters closed and removed from the cache", ["reason"])

health_check_latency = Histogram(
    "connection_health_check_latency_seconds",
    "Latency of connection health checks",
    ["status"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0],
)

# Rate limiting
rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total", "Rate limit checks by tier and decision", ["tier", "decision"]
)


class SchemaCacheMetrics:
    """Schema cache metrics collector and reporter."""

    def __init__(self):
        self.hit_count = 0
        self.miss_count = 0
        self.error_count = 0
        self._start_times: Dict[str, float] = {}

    def record_operation_start(self, operation_id: str) -> None:
        self._start_times[operation_id] = time.time()

    def _observe(self, operation: str, operation_id: Optional[str]) -> None:
        if operation_id and operation_id in self._start_times:
            duration = time.time() - self._start_times.pop(operation_id)
            schema_cache_operation_duration.labels(operation=operation).observe(duration)

    def record_cache_hit(self, operation_id: Optional[str] = None) -> None:
        self.hit_count += 1
        schema_cache_operations_total.labels(operation="get", status="hit").inc()
        self._observe("get", operation_id)
        self._update_hit_rate()
        logger.debug("Schema cache hit recorded", total_hits=self.hit_count)

    def record_cache_miss(self, operation_id: Optional[str] = None) -> None:
        self.miss_count += 1
        schema_cache_operations_total.labels(operation="get", status="miss").inc()
        self._observe("get", operation_id)
        self._update_hit_rate()
        logger.debug("Schema cache miss recorded", total_misses=self.miss_count)

    def record_cache_set(self, operation_id: Optional[str] = None, success: bool = True) -> None:
        schema_cache_operations_total.labels(operation="set", status="success" if success else "error").inc()
        self._observe("set", operation_id)
        if not success:
            self.error_count += 1

    def record_cache_error(self, operation: str, operation_id: Optional[str] = None) -> None:
        """Record a cache operation error."""
        self.error_count += 1
        schema_cache_operations_total.labels(operation=operation, status="error").inc()
        self._observe(operation, operation_id)
        logger.warning("Schema cache error recorded", operation=operation, total_errors=self.error_count)

    def _update_hit_rate(self) -> None:
        total_operations = self.hit_count + self.miss_count
        if total_operations > 0:
            schema_cache_hit_rate.set((self.hit_count / total_operations) * 100)


class PipelineMetrics:
    """Counters for validation, execution, adapter lifecycle and rate limiting."""

    def record_validation(self, db_type: str, valid: bool, limit_applied: bool) -> None:
        sql_validations_total.labels(
            db_type=db_type,
            result="valid" if valid else "invalid",
            limit_applied=str(limit_applied).lower(),
        ).inc()

    def record_outcome(self, operation: str, outcome: str) -> None:
        pipeline_outcomes_total.labels(operation=operation, outcome=outcome).inc()

    def record_execution(self, db_type: str, duration_ms: float) -> None:
        query_execution_duration.labels(db_type=db_type).observe(duration_ms / 1000)

    def record_adapter_created(self, db_type: str, cache_size: int) -> None:
        adapter_created_total.labels(db_type=db_type).inc()
        adapter_cache_size.set(cache_size)

    def record_adapter_evicted(self, reason: str, cache_size: int) -> None:
        adapter_evictions_total.labels(reason=reason).inc()
        adapter_cache_size.set(cache_size)

    def record_health_check(self, status: str, latency_ms: float) -> None:
        health_check_latency.labels(status=status).observe(latency_ms / 1000)

    def record_rate_limit(self, tier: str, allowed: bool) -> None:
        rate_limit_decisions_total.labels(tier=tier, decision="allowed" if allowed else "blocked").inc()


# Global metrics instances
schema_cache_metrics = SchemaCacheMetrics()
pipeline_metrics = PipelineMetrics()
