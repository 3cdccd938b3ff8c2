"""Base connector class for all database adapters."""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, ClassVar
from uuid import uuid4

from opentelemetry import trace

from querysafe.config import settings
from querysafe.data_connectors.policy import ResolvedPolicy, resolve_policy
from querysafe.data_connectors.types import (
    ColumnMetadata,
    ConnectionConfig,
    ConnectionStatus,
    DatabaseType,
    ErrorCategory,
    PoolConfig,
    QueryResult,
    SchemaInfo,
)
from querysafe.exceptions.connector import (
    AdapterClosedError,
    ConnectionTestFailedError,
    ConnectionTimeoutError,
    ConnectorError,
    QueryExecutionError,
    QueryTimeoutError,
)
from querysafe.logging import get_logger
from querysafe.services.sql.validator import ValidationOptions, ValidationResult, get_sql_validator

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)


class BaseConnector(ABC):
    """Abstract base class for all database adapters.

    One instance serves one live connection: it owns the driver pool, runs
    statements under an enforced timeout, reads the catalog, and turns
    native driver errors into user-safe messages.

    Pool lifecycle is one-way. ``create_pool`` is idempotent until
    ``close_pool`` runs; after that the adapter refuses all work, so a
    destroyed adapter can never be handed out again.
    """

    CONNECTOR_KEY: ClassVar[DatabaseType]
    DIALECT_NAME: ClassVar[str]
    DEFAULT_PORT: ClassVar[int | None] = None
    QUOTE_OPEN: ClassVar[str] = '"'
    QUOTE_CLOSE: ClassVar[str] = '"'
    PING_SQL: ClassVar[str] = "SELECT 1"

    # Slack between the server-side statement timeout and the client-side wait
    TIMEOUT_GRACE_SECONDS: ClassVar[float] = 2.0

    SYNTAX_CODES: ClassVar[frozenset[str]] = frozenset()
    TIMEOUT_CODES: ClassVar[frozenset[str]] = frozenset()
    CONNECTION_CODES: ClassVar[frozenset[str]] = frozenset()
    ERROR_MESSAGES: ClassVar[dict[str, str]] = {}

    def __init__(self, config: ConnectionConfig, pool_config: PoolConfig | None = None) -> None:
        """Initialize the base connector.

        Args:
            config: Connection parameters; the password stays a ``SecretStr``
            pool_config: Pool sizing; defaults come from settings and the provider policy

        """
        self.config = config
        self.policy: ResolvedPolicy = resolve_policy(config)
        self.pool_config = pool_config or PoolConfig(
            min_size=settings.POOL_MIN_SIZE,
            max_size=settings.POOL_MAX_SIZE,
            connect_timeout=self.policy.connect_timeout,
        )

        self._pool: Any = None
        self._status = ConnectionStatus.DISCONNECTED
        self._closed = False
        self._lock = asyncio.Lock()
        self._connection_id = str(uuid4())

        logger.info(
            "Initializing connector",
            extra={
                "connector_key": self.CONNECTOR_KEY.value,
                "connection_config_id": config.id,
                "connection_id": self._connection_id,
                "provider": self.policy.provider,
                "ssl_enabled": self.policy.ssl_enabled,
            },
        )

    @property
    def host(self) -> str | None:
        return self.config.host

    @property
    def port(self) -> int | None:
        return self.config.port or self.DEFAULT_PORT

    @abstractmethod
    async def _create_pool(self) -> Any:
        """Open the driver pool.

        Raises:
            InvalidCredentialsError: If the server rejects the credentials
            ConnectionTestFailedError: If the server cannot be reached

        """

    @abstractmethod
    async def _close_pool(self, pool: Any) -> None:
        """Close a driver pool previously returned by ``_create_pool``."""

    @abstractmethod
    async def _execute_impl(self, sql: str, timeout_seconds: float) -> tuple[list[dict[str, Any]], list[str]]:
        """Run ``sql`` with a server-side limit of ``timeout_seconds``.

        Implementations must cancel the running statement on the server when
        the surrounding task is cancelled.

        Returns:
            Tuple of (rows as mappings, field names)

        """

    @abstractmethod
    async def _get_schema_impl(self) -> SchemaInfo:
        """Read tables, columns and foreign keys from the catalog."""

    @abstractmethod
    def _native_error_code(self, error: BaseException) -> str | None:
        """Extract SQLSTATE or the vendor error number from a driver exception."""

    @abstractmethod
    def get_sql_generation_guidelines(self) -> str:
        """Dialect rules handed to the SQL generator."""

    @abstractmethod
    def get_example_queries(self) -> list[str]:
        """Example queries written in this dialect."""

    async def create_pool(self) -> None:
        """Open the pool once; concurrent callers share the same pool.

        Raises:
            AdapterClosedError: If the adapter was already closed
            ConnectionTimeoutError: If connecting exceeds the provider timeout
            ConnectorError: If the pool cannot be opened

        """
        async with self._lock:
            if self._closed:
                raise AdapterClosedError(
                    "Adapter has been closed and cannot be reopened",
                    connector_key=self.CONNECTOR_KEY.value,
                )
            if self._pool is not None:
                return

            timeout = self.pool_config.connect_timeout
            with tracer.start_as_current_span(
                "connector.create_pool",
                attributes={
                    "connector.key": self.CONNECTOR_KEY.value,
                    "connection.id": self._connection_id,
                    "connect_timeout": timeout,
                },
            ):
                try:
                    logger.info(
                        "Creating connection pool",
                        extra={
                            "connector_key": self.CONNECTOR_KEY.value,
                            "connection_id": self._connection_id,
                            "min_size": self.pool_config.min_size,
                            "max_size": self.pool_config.max_size,
                            "connect_timeout": timeout,
                        },
                    )
                    self._pool = await asyncio.wait_for(self._create_pool(), timeout=timeout)
                    self._status = ConnectionStatus.CONNECTED

                except asyncio.TimeoutError as e:
                    self._status = ConnectionStatus.ERROR
                    logger.error(
                        "Connection pool creation timed out",
                        extra={"connector_key": self.CONNECTOR_KEY.value, "timeout": timeout},
                    )
                    raise ConnectionTimeoutError(
                        f"Connecting timed out after {timeout} seconds",
                        connector_key=self.CONNECTOR_KEY.value,
                        timeout_seconds=timeout,
                    ) from e

                except ConnectorError:
                    self._status = ConnectionStatus.ERROR
                    raise

                except Exception as e:
                    self._status = ConnectionStatus.ERROR
                    logger.error(
                        "Failed to create connection pool",
                        extra={
                            "connector_key": self.CONNECTOR_KEY.value,
                            "connection_id": self._connection_id,
                            "error": str(e),
                        },
                    )
                    raise ConnectionTestFailedError(
                        f"Failed to connect to {self.DIALECT_NAME}: {e}",
                        connector_key=self.CONNECTOR_KEY.value,
                        host=self.host,
                        port=self.port,
                    ) from e

    async def close_pool(self) -> None:
        """Close the pool and mark the adapter closed. Safe to call repeatedly.

        Raises:
            ConnectorError: If the driver fails while closing

        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            self._status = ConnectionStatus.CLOSED
            pool, self._pool = self._pool, None

            if pool is None:
                return

            with tracer.start_as_current_span(
                "connector.close_pool",
                attributes={"connector.key": self.CONNECTOR_KEY.value, "connection.id": self._connection_id},
            ):
                try:
                    await self._close_pool(pool)
                    logger.info(
                        "Connection pool closed",
                        extra={"connector_key": self.CONNECTOR_KEY.value, "connection_id": self._connection_id},
                    )
                except Exception as e:
                    logger.error(
                        "Error closing connection pool",
                        extra={
                            "connector_key": self.CONNECTOR_KEY.value,
                            "connection_id": self._connection_id,
                            "error": str(e),
                        },
                    )
                    raise ConnectorError(
                        f"Failed to close connector: {e}",
                        connector_key=self.CONNECTOR_KEY.value,
                    ) from e

    async def _ensure_pool(self) -> None:
        if self._closed:
            raise AdapterClosedError(
                "Adapter has been closed",
                connector_key=self.CONNECTOR_KEY.value,
            )
        if self._pool is None:
            await self.create_pool()

    async def execute_with_timeout(self, sql: str, timeout_seconds: float) -> QueryResult:
        """Execute a validated statement under an enforced timeout.

        Raises:
            QueryTimeoutError: If the statement exceeds ``timeout_seconds``
            QueryExecutionError: If the engine rejects the statement; the
                native exception is kept as ``__cause__``

        """
        query_id = str(uuid4())

        with tracer.start_as_current_span(
            "connector.execute_with_timeout",
            attributes={
                "connector.key": self.CONNECTOR_KEY.value,
                "query.id": query_id,
                "query.length": len(sql),
                "timeout": timeout_seconds,
            },
        ) as span:
            await self._ensure_pool()

            logger.debug(
                "Executing query",
                extra={
                    "connector_key": self.CONNECTOR_KEY.value,
                    "query_id": query_id,
                    "query_length": len(sql),
                    "timeout": timeout_seconds,
                },
            )

            start_time = time.perf_counter()
            try:
                rows, fields = await asyncio.wait_for(
                    self._execute_impl(sql, timeout_seconds),
                    timeout=timeout_seconds + self.TIMEOUT_GRACE_SECONDS,
                )

            except asyncio.TimeoutError as e:
                logger.error(
                    "Query execution timed out",
                    extra={"connector_key": self.CONNECTOR_KEY.value, "query_id": query_id, "timeout": timeout_seconds},
                )
                raise QueryTimeoutError(
                    f"Query execution timed out after {timeout_seconds} seconds",
                    connector_key=self.CONNECTOR_KEY.value,
                    query=sql[:200],
                    timeout_seconds=timeout_seconds,
                ) from e

            except ConnectorError:
                raise

            except Exception as e:
                code = self._native_error_code(e)
                logger.error(
                    "Query execution failed",
                    extra={
                        "connector_key": self.CONNECTOR_KEY.value,
                        "query_id": query_id,
                        "error_code": code,
                        "error": str(e),
                    },
                )
                if self.is_timeout_error(e):
                    raise QueryTimeoutError(
                        f"Statement cancelled by server after {timeout_seconds} seconds",
                        connector_key=self.CONNECTOR_KEY.value,
                        query=sql[:200],
                        timeout_seconds=timeout_seconds,
                    ) from e
                raise QueryExecutionError(
                    f"{self.DIALECT_NAME} query failed: {e}",
                    connector_key=self.CONNECTOR_KEY.value,
                    query=sql[:200],
                    driver_code=code,
                ) from e

            execution_time_ms = (time.perf_counter() - start_time) * 1000
            span.set_attribute("query.rows", len(rows))
            span.set_attribute("query.execution_time_ms", execution_time_ms)

            logger.info(
                "Query executed successfully",
                extra={
                    "connector_key": self.CONNECTOR_KEY.value,
                    "query_id": query_id,
                    "row_count": len(rows),
                    "execution_time_ms": round(execution_time_ms, 2),
                },
            )

            return QueryResult(
                rows=rows,
                row_count=len(rows),
                execution_time_ms=round(execution_time_ms, 2),
                fields=fields,
            )

    async def ping(self, timeout: float) -> float:
        """Run the trivial ping query and return its latency in milliseconds."""
        await self._ensure_pool()
        start_time = time.perf_counter()
        await asyncio.wait_for(self._execute_impl(self.PING_SQL, timeout), timeout=timeout)
        return (time.perf_counter() - start_time) * 1000

    async def test_connection(self) -> bool:
        """Open the pool and run the ping query.

        Raises:
            ConnectionTimeoutError: If the ping exceeds the connect timeout
            ConnectorError: If the connection cannot be established

        """
        timeout = self.pool_config.connect_timeout
        with tracer.start_as_current_span(
            "connector.test_connection",
            attributes={"connector.key": self.CONNECTOR_KEY.value, "timeout": timeout},
        ) as span:
            await self.create_pool()
            try:
                await self.ping(timeout)
            except asyncio.TimeoutError as e:
                raise ConnectionTimeoutError(
                    f"Connection test timed out after {timeout} seconds",
                    connector_key=self.CONNECTOR_KEY.value,
                    timeout_seconds=timeout,
                ) from e
            span.set_attribute("connection.success", True)
            return True

    async def get_schema(self) -> SchemaInfo:
        with tracer.start_as_current_span(
            "connector.get_schema",
            attributes={"connector.key": self.CONNECTOR_KEY.value},
        ) as span:
            await self._ensure_pool()
            schema = await self._get_schema_impl()
            span.set_attribute("schema.tables", len(schema["tables"]))
            logger.info(
                "Schema loaded",
                extra={
                    "connector_key": self.CONNECTOR_KEY.value,
                    "tables": len(schema["tables"]),
                    "relationships": len(schema["relationships"]),
                },
            )
            return schema

    def validate_query(self, sql: str, options: ValidationOptions | None = None) -> ValidationResult:
        return get_sql_validator(self.CONNECTOR_KEY.value).validate(sql, options)

    def get_sql_dialect(self) -> str:
        return self.DIALECT_NAME

    def quote_identifier(self, name: str) -> str:
        """Quote a possibly schema-qualified identifier."""
        escaped_close = self.QUOTE_CLOSE * 2
        return ".".join(
            f"{self.QUOTE_OPEN}{part.replace(self.QUOTE_CLOSE, escaped_close)}{self.QUOTE_CLOSE}"
            for part in name.split(".")
        )

    def format_schema_for_prompt(self, schema: SchemaInfo) -> str:
        lines = [f"Database type: {self.DIALECT_NAME}", "", "Tables:"]
        for table_name in sorted(schema["tables"]):
            lines.append("")
            lines.append(f"Table: {self.quote_identifier(table_name)}")
            for column in schema["tables"][table_name]:
                lines.append(f"  - {self._format_column(column)}")

        if schema["relationships"]:
            lines.append("")
            lines.append("Relationships (for JOINs):")
            for rel in schema["relationships"]:
                lines.append(
                    f"  - {rel['from_table']}.{rel['from_column']} -> {rel['to_table']}.{rel['to_column']}"
                )
        return "\n".join(lines)

    @staticmethod
    def _format_column(column: ColumnMetadata) -> str:
        flags = []
        if column["is_primary_key"]:
            flags.append("PRIMARY KEY")
        if not column["nullable"]:
            flags.append("NOT NULL")
        suffix = f", {', '.join(flags)}" if flags else ""
        return f"{column['name']} ({column['type']}{suffix})"

    def error_code(self, error: BaseException) -> str | None:
        if isinstance(error, QueryExecutionError) and error.driver_code:
            return error.driver_code
        native = error.__cause__ if isinstance(error, ConnectorError) and error.__cause__ else error
        return self._native_error_code(native)

    def is_timeout_error(self, error: BaseException) -> bool:
        if isinstance(error, (QueryTimeoutError, asyncio.TimeoutError)):
            return True
        return self.error_code(error) in self.TIMEOUT_CODES

    def is_syntax_error(self, error: BaseException) -> bool:
        return self.error_code(error) in self.SYNTAX_CODES

    def is_connection_error(self, error: BaseException) -> bool:
        if isinstance(error, (ConnectionTestFailedError, ConnectionTimeoutError, AdapterClosedError)):
            return True
        native = error.__cause__ if isinstance(error, ConnectorError) and error.__cause__ else error
        if isinstance(native, (ConnectionError, OSError)):
            return True
        return self.error_code(error) in self.CONNECTION_CODES

    def classify(self, error: BaseException) -> ErrorCategory:
        if self.is_timeout_error(error):
            return ErrorCategory.TIMEOUT
        if self.is_syntax_error(error):
            return ErrorCategory.SYNTAX
        if self.is_connection_error(error):
            return ErrorCategory.CONNECTION
        if isinstance(error, QueryExecutionError):
            return ErrorCategory.EXECUTION
        return ErrorCategory.UNKNOWN

    def describe_error(self, error: BaseException, timeout_seconds: float | None = None) -> str:
        """User-safe message for a driver error; never includes driver text."""
        category = self.classify(error)
        if category == ErrorCategory.TIMEOUT:
            if timeout_seconds is None and isinstance(error, QueryTimeoutError):
                timeout_seconds = error.timeout_seconds
            seconds = f"{timeout_seconds:g}" if timeout_seconds is not None else "the allowed"
            return f"Query timeout (exceeded {seconds} seconds)"

        code = self.error_code(error)
        if code is not None and code in self.ERROR_MESSAGES:
            return self.ERROR_MESSAGES[code]
        if category == ErrorCategory.SYNTAX:
            return "Syntax error in SQL query"
        if category == ErrorCategory.CONNECTION:
            return "Database connection failed"
        return "Query execution failed"

    async def __aenter__(self) -> "BaseConnector":
        await self.create_pool()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close_pool()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def connection_id(self) -> str:
        return self._connection_id
