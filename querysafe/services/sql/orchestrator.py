"""Execution orchestrator.

Runs one user-submitted statement through the fixed pipeline:

1. execution-tier rate limit
2. active connection lookup
3. adapter acquisition
4. safety validation (row cap, timeout)
5. execution under the recommended timeout
6. classification of driver errors into user-safe outcomes

Every step short-circuits into a ``PipelineFailure``; pipeline failures are
returned, never raised. Each outcome is written to the query history.
"""

from typing import Optional

from opentelemetry import trace

from querysafe.cache.metrics import pipeline_metrics
from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.types import ErrorCategory
from querysafe.exceptions.connector import AdapterClosedError
from querysafe.logging import get_logger
from querysafe.services.audit.audit_logger import AuditLogger, QueryHistoryEntry
from querysafe.services.connections.lifecycle import AdapterLifecycleManager
from querysafe.services.connections.store import ConnectionStore
from querysafe.services.ratelimit.rate_limiter import RateLimiter
from querysafe.services.sql.results import ErrorKind, ExecutionOutcome, ExecutionSuccess, PipelineFailure
from querysafe.services.sql.validator import ValidationOptions

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

NO_ACTIVE_CONNECTION_MESSAGE = "No active database connection. Please activate a connection in Settings."
CONNECTION_FAILED_MESSAGE = "Failed to connect to database"
INTERNAL_MESSAGE = "Query execution failed"

_CATEGORY_KINDS = {
    ErrorCategory.SYNTAX: ErrorKind.SYNTAX,
    ErrorCategory.TIMEOUT: ErrorKind.TIMEOUT,
    ErrorCategory.CONNECTION: ErrorKind.CONNECTION_FAILED,
    ErrorCategory.EXECUTION: ErrorKind.EXECUTION,
}


class ExecutionOrchestrator:
    def __init__(
        self,
        store: ConnectionStore,
        lifecycle: AdapterLifecycleManager,
        rate_limiter: RateLimiter,
        audit: Optional[AuditLogger] = None,
        options: Optional[ValidationOptions] = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.options = options or ValidationOptions.from_settings()

    async def execute(self, user_id: str, sql: str, nl_query: Optional[str] = None) -> ExecutionOutcome:
        with tracer.start_as_current_span("orchestrator.execute", attributes={"query.length": len(sql)}) as span:
            connection_id: Optional[str] = None
            try:
                outcome, connection_id = await self._run(user_id, sql)
            except Exception as e:
                logger.error(
                    "Unexpected error in execution pipeline",
                    user_id=user_id,
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
                outcome = PipelineFailure(ErrorKind.INTERNAL, INTERNAL_MESSAGE)

            label = "success" if outcome.success else outcome.kind.value
            span.set_attribute("pipeline.outcome", label)
            pipeline_metrics.record_outcome("execute", label)
            self._record_history(user_id, connection_id, sql, nl_query, outcome)
            return outcome

    async def _run(self, user_id: str, sql: str) -> tuple[ExecutionOutcome, Optional[str]]:
        rate_limit = await self.rate_limiter.check_execution(user_id)
        headers = rate_limit.headers()
        if not rate_limit.success:
            return (
                PipelineFailure(
                    ErrorKind.RATE_LIMITED,
                    rate_limit.message or "Rate limit exceeded",
                    retry_after=rate_limit.retry_after,
                    headers=headers,
                ),
                None,
            )

        record = await self.store.get_active(user_id)
        if record is None:
            return PipelineFailure(ErrorKind.NO_ACTIVE_CONNECTION, NO_ACTIVE_CONNECTION_MESSAGE, headers=headers), None

        adapter = await self.lifecycle.acquire(user_id, record.id)
        if adapter is None:
            return PipelineFailure(ErrorKind.CONNECTION_FAILED, CONNECTION_FAILED_MESSAGE, headers=headers), record.id

        validation = adapter.validate_query(sql, self.options)
        if not validation.valid:
            logger.info(
                "Query rejected by safety validation",
                user_id=user_id,
                connection_id=record.id,
                errors=validation.errors,
            )
            return (
                PipelineFailure(
                    ErrorKind.VALIDATION,
                    f"Query safety validation failed: {', '.join(validation.errors)}",
                    details={"errors": list(validation.errors), "warnings": list(validation.warnings)},
                    headers=headers,
                ),
                record.id,
            )

        if validation.warnings:
            logger.info("Query warnings", connection_id=record.id, warnings=validation.warnings)

        timeout = validation.recommended_timeout_seconds
        try:
            result = await adapter.execute_with_timeout(validation.sql, timeout)
        except Exception as e:
            return await self._classify_failure(user_id, record.id, adapter, e, timeout, headers), record.id

        pipeline_metrics.record_execution(adapter.CONNECTOR_KEY.value, result["execution_time_ms"])
        return (
            ExecutionSuccess(
                results=result["rows"],
                row_count=result["row_count"],
                execution_time_ms=result["execution_time_ms"],
                fields=result["fields"],
                validation=validation,
                max_rows=self.options.max_rows,
                headers=headers,
            ),
            record.id,
        )

    async def _classify_failure(
        self,
        user_id: str,
        connection_id: str,
        adapter: BaseConnector,
        error: Exception,
        timeout: int,
        headers: dict,
    ) -> PipelineFailure:
        if isinstance(error, AdapterClosedError):
            category = ErrorCategory.CONNECTION
        else:
            category = adapter.classify(error)
        kind = _CATEGORY_KINDS.get(category, ErrorKind.INTERNAL)

        if kind == ErrorKind.CONNECTION_FAILED:
            # The pool is suspect; the next request builds a fresh adapter
            await self.lifecycle.invalidate(user_id, connection_id)

        message = INTERNAL_MESSAGE if kind == ErrorKind.INTERNAL else adapter.describe_error(error, timeout)
        logger.warning(
            "Query execution failed",
            user_id=user_id,
            connection_id=connection_id,
            kind=kind.value,
            error_code=adapter.error_code(error),
            error_type=type(error).__name__,
        )
        return PipelineFailure(kind, message, headers=headers)

    def _record_history(
        self,
        user_id: str,
        connection_id: Optional[str],
        sql: str,
        nl_query: Optional[str],
        outcome: ExecutionOutcome,
    ) -> None:
        if self.audit is None:
            return
        if isinstance(outcome, ExecutionSuccess):
            entry = QueryHistoryEntry(
                user_id=user_id,
                connection_id=connection_id,
                generated_sql=sql.strip(),
                nl_query=nl_query,
                executed=True,
                execution_time_ms=outcome.execution_time_ms,
                row_count=outcome.row_count,
            )
        else:
            entry = QueryHistoryEntry(
                user_id=user_id,
                connection_id=connection_id,
                generated_sql=sql.strip(),
                nl_query=nl_query,
                executed=False,
                error_message=outcome.message,
            )
        self.audit.log_query_history(entry)
