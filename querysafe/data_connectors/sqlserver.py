"""SQL Server connector implementation using SQLAlchemy over pyodbc.

pyodbc is blocking, so every statement checks out a pooled connection,
runs and returns it inside one worker thread. The event loop only ever
touches the running cursor to cancel it. Install the ``sqlserver`` extra
to enable this connector.
"""

import asyncio
import math
import re
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import DBAPIError

from querysafe.config import settings
from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.types import ColumnMetadata, DatabaseType, Relationship, SchemaInfo
from querysafe.exceptions.connector import ConnectionTestFailedError, ConnectorError, InvalidCredentialsError
from querysafe.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SCHEMA = "dbo"

POOL_RECYCLE_SECONDS = 300

NATIVE_CODE_PATTERN = re.compile(r"\((\d+)\)\s*\(SQL")

STATE_CODES_FIRST = ("HYT00", "HYT01", "HY008", "28000")

COLUMNS_SQL = """
SELECT c.TABLE_SCHEMA, c.TABLE_NAME, c.COLUMN_NAME, c.DATA_TYPE, c.IS_NULLABLE, c.COLUMN_DEFAULT
FROM INFORMATION_SCHEMA.COLUMNS c
JOIN INFORMATION_SCHEMA.TABLES t
  ON t.TABLE_SCHEMA = c.TABLE_SCHEMA AND t.TABLE_NAME = c.TABLE_NAME
WHERE t.TABLE_TYPE IN ('BASE TABLE', 'VIEW')
ORDER BY c.TABLE_SCHEMA, c.TABLE_NAME, c.ORDINAL_POSITION
"""

PRIMARY_KEYS_SQL = """
SELECT kcu.TABLE_SCHEMA, kcu.TABLE_NAME, kcu.COLUMN_NAME
FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE kcu
  ON tc.CONSTRAINT_NAME = kcu.CONSTRAINT_NAME AND tc.TABLE_SCHEMA = kcu.TABLE_SCHEMA
WHERE tc.CONSTRAINT_TYPE = 'PRIMARY KEY'
"""

FOREIGN_KEYS_SQL = """
SELECT OBJECT_SCHEMA_NAME(fkc.parent_object_id) AS from_schema,
       OBJECT_NAME(fkc.parent_object_id) AS from_table,
       COL_NAME(fkc.parent_object_id, fkc.parent_column_id) AS from_column,
       OBJECT_SCHEMA_NAME(fkc.referenced_object_id) AS to_schema,
       OBJECT_NAME(fkc.referenced_object_id) AS to_table,
       COL_NAME(fkc.referenced_object_id, fkc.referenced_column_id) AS to_column
FROM sys.foreign_key_columns fkc
"""


def _table_key(schema: str, table: str) -> str:
    return table if schema == DEFAULT_SCHEMA else f"{schema}.{table}"


def _odbc_escape(value: str) -> str:
    return "{" + value.replace("}", "}}") + "}"


def _unwrap(error: BaseException) -> BaseException:
    if isinstance(error, DBAPIError) and error.orig is not None:
        return error.orig
    return error


class _StatementHandle:
    """Cursor of a statement running in a worker thread, exposed for cancellation."""

    def __init__(self) -> None:
        self.cursor: Any = None
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        cursor = self.cursor
        if cursor is not None:
            cursor.cancel()


class SQLServerConnector(BaseConnector):
    """SQL Server adapter on a pooled SQLAlchemy engine driven from worker threads.

    The connection-level query timeout makes the server abandon overlong
    statements; a cancelled task additionally calls ``cursor.cancel()``.
    Statements run in an implicit transaction that is always rolled back.
    """

    CONNECTOR_KEY = DatabaseType.SQLSERVER
    DIALECT_NAME = "SQL Server"
    DEFAULT_PORT = 1433
    QUOTE_OPEN = "["
    QUOTE_CLOSE = "]"

    SYNTAX_CODES = frozenset({"102", "156", "207", "208", "4104", "8120", "195", "170"})
    TIMEOUT_CODES = frozenset({"HYT00", "HY008"})
    CONNECTION_CODES = frozenset({"08001", "08S01", "08004", "HYT01", "28000", "18456", "4060", "40613"})
    ERROR_MESSAGES = {
        "208": "Table does not exist",
        "207": "Column does not exist",
        "102": "Syntax error in SQL query",
        "156": "Syntax error near a reserved keyword",
        "4104": "Column reference could not be bound; check table aliases",
        "8120": "Column must appear in GROUP BY clause or be used in an aggregate function",
        "195": "Function does not exist",
        "229": "Permission denied",
        "18456": "Authentication failed",
    }

    def _build_connection_string(self) -> str:
        parts = [
            f"DRIVER={{{settings.SQLSERVER_ODBC_DRIVER}}}",
            f"SERVER={self.config.host or 'localhost'},{self.port}",
            f"DATABASE={_odbc_escape(self.config.database)}",
            f"Encrypt={'yes' if self.policy.ssl_enabled else 'no'}",
            f"TrustServerCertificate={'no' if self.policy.verify else 'yes'}",
            f"Connection Timeout={int(math.ceil(self.pool_config.connect_timeout))}",
            "ApplicationIntent=ReadOnly",
        ]
        if self.config.username:
            parts.append(f"UID={_odbc_escape(self.config.username)}")
        password = self.config.secret_password()
        if password is not None:
            parts.append(f"PWD={_odbc_escape(password)}")
        return ";".join(parts)

    def _build_engine(self) -> Engine:
        url = URL.create("mssql+pyodbc", query={"odbc_connect": self._build_connection_string()})
        try:
            return create_engine(
                url,
                pool_size=self.pool_config.max_size,
                max_overflow=0,
                pool_timeout=self.pool_config.connect_timeout,
                pool_recycle=POOL_RECYCLE_SECONDS,
                pool_pre_ping=True,
            )
        except ImportError as e:
            raise ConnectorError(
                "SQL Server support requires pyodbc; install the 'sqlserver' extra",
                connector_key=self.CONNECTOR_KEY.value,
            ) from e

    @staticmethod
    def _warm(engine: Engine, count: int) -> None:
        connections = [engine.connect() for _ in range(max(1, count))]
        for conn in connections:
            conn.close()

    async def _create_pool(self) -> Engine:
        engine = self._build_engine()
        try:
            await asyncio.to_thread(self._warm, engine, self.pool_config.min_size)
        except DBAPIError as e:
            engine.dispose()
            code = self._native_error_code(e)
            if code in ("18456", "28000"):
                logger.error(
                    "SQL Server authentication failed",
                    extra={"host": self.config.host, "port": self.port, "user": self.config.username},
                )
                raise InvalidCredentialsError(
                    "SQL Server authentication failed",
                    connector_key=self.CONNECTOR_KEY.value,
                    username=self.config.username,
                ) from e
            logger.error(
                "Failed to open SQL Server connection",
                extra={"host": self.config.host, "port": self.port, "error_code": code},
            )
            raise ConnectionTestFailedError(
                f"Failed to connect to SQL Server (code {code})",
                connector_key=self.CONNECTOR_KEY.value,
                host=self.config.host,
                port=self.port,
            ) from e
        except BaseException:
            engine.dispose()
            raise

        logger.info(
            "SQL Server connection pool created",
            extra={
                "host": self.config.host,
                "port": self.port,
                "database": self.config.database,
                "max_size": self.pool_config.max_size,
                "encrypt": self.policy.ssl_enabled,
            },
        )
        return engine

    async def _close_pool(self, pool: Engine) -> None:
        await asyncio.to_thread(pool.dispose)

    @staticmethod
    def _run(
        engine: Engine, sql: str, timeout_seconds: int, handle: _StatementHandle
    ) -> tuple[list[dict[str, Any]], list[str]]:
        with engine.connect() as conn:
            raw = conn.connection
            raw.driver_connection.timeout = timeout_seconds
            cursor = raw.cursor()
            handle.cursor = cursor
            try:
                if handle.cancelled:
                    return [], []
                cursor.execute(sql)
                fields = [desc[0] for desc in cursor.description] if cursor.description else []
                rows = [dict(zip(fields, row)) for row in cursor.fetchall()] if fields else []
                return rows, fields
            finally:
                handle.cursor = None
                cursor.close()
                raw.rollback()
                raw.driver_connection.timeout = 0

    async def _execute_impl(self, sql: str, timeout_seconds: float) -> tuple[list[dict[str, Any]], list[str]]:
        handle = _StatementHandle()
        timeout = max(1, int(math.ceil(timeout_seconds)))
        try:
            return await asyncio.to_thread(self._run, self._pool, sql, timeout, handle)
        except asyncio.CancelledError:
            # The worker thread returns the connection once the driver gives up the statement
            handle.cancel()
            raise

    async def _get_schema_impl(self) -> SchemaInfo:
        timeout = settings.QUERY_TIMEOUT_SECONDS
        column_rows, _ = await self._execute_impl(COLUMNS_SQL, timeout)
        pk_rows, _ = await self._execute_impl(PRIMARY_KEYS_SQL, timeout)
        fk_rows, _ = await self._execute_impl(FOREIGN_KEYS_SQL, timeout)

        primary_keys = {(row["TABLE_SCHEMA"], row["TABLE_NAME"], row["COLUMN_NAME"]) for row in pk_rows}

        tables: dict[str, list[ColumnMetadata]] = {}
        for row in column_rows:
            key = _table_key(row["TABLE_SCHEMA"], row["TABLE_NAME"])
            tables.setdefault(key, []).append(
                ColumnMetadata(
                    name=row["COLUMN_NAME"],
                    type=row["DATA_TYPE"],
                    nullable=row["IS_NULLABLE"] == "YES",
                    default=row["COLUMN_DEFAULT"],
                    is_primary_key=(row["TABLE_SCHEMA"], row["TABLE_NAME"], row["COLUMN_NAME"]) in primary_keys,
                )
            )

        relationships = [
            Relationship(
                from_table=_table_key(row["from_schema"], row["from_table"]),
                from_column=row["from_column"],
                to_table=_table_key(row["to_schema"], row["to_table"]),
                to_column=row["to_column"],
            )
            for row in fk_rows
        ]
        return SchemaInfo(tables=tables, relationships=relationships)

    def _native_error_code(self, error: BaseException) -> str | None:
        """SQLSTATE for timeout/connection states, else the SQL Server error number."""
        error = _unwrap(error)
        args = getattr(error, "args", ())
        if len(args) < 2 or not isinstance(args[0], str):
            return None
        sqlstate, message = args[0], str(args[1])
        if sqlstate in STATE_CODES_FIRST or sqlstate.startswith("08"):
            return sqlstate
        match = NATIVE_CODE_PATTERN.search(message)
        if match and match.group(1) != "0":
            return match.group(1)
        return sqlstate

    def get_sql_generation_guidelines(self) -> str:
        return "\n".join(
            [
                "SQL Server (T-SQL) rules:",
                "1. Quote identifiers with square brackets ([column]) when needed",
                "2. Limit rows with SELECT TOP n; LIMIT does not exist",
                "3. Use GETDATE(), DATEADD(day, -7, GETDATE()) and DATEDIFF() for dates",
                "4. Use + or CONCAT() for string concatenation",
                "5. Use the relationships shown above to write correct JOINs",
                "6. Only write SELECT statements",
            ]
        )

    def get_example_queries(self) -> list[str]:
        return [
            "SELECT TOP 10 * FROM [dbo].[users]",
            "SELECT COUNT(*) FROM [orders] WHERE created_at > DATEADD(day, -7, GETDATE())",
            "SELECT TOP 20 * FROM [products] WHERE price > 100 ORDER BY price DESC",
            "SELECT * FROM [dbo].[users] WHERE DATEDIFF(day, last_login, GETDATE()) > 7",
        ]
