"""MySQL connector implementation using aiomysql."""

import asyncio
from typing import Any

import aiomysql

from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.types import ColumnMetadata, DatabaseType, Relationship, SchemaInfo
from querysafe.exceptions.connector import ConnectionTestFailedError, InvalidCredentialsError
from querysafe.logging import get_logger

logger = get_logger(__name__)

KILL_TIMEOUT_SECONDS = 5.0
UNKNOWN_SYSTEM_VARIABLE = 1193

COLUMNS_SQL = """
SELECT table_name, column_name, column_type, is_nullable, column_default, column_key
FROM information_schema.columns
WHERE table_schema = DATABASE()
ORDER BY table_name, ordinal_position
"""

FOREIGN_KEYS_SQL = """
SELECT table_name, column_name, referenced_table_name, referenced_column_name
FROM information_schema.key_column_usage
WHERE table_schema = DATABASE() AND referenced_table_name IS NOT NULL
"""


class MySQLConnector(BaseConnector):
    """MySQL adapter using aiomysql.

    Compatible with MySQL 5.7.8+ and MariaDB. Statements run inside a
    read-only transaction with a session execution limit; a cancelled
    statement is killed from a second connection with ``KILL QUERY``.
    """

    CONNECTOR_KEY = DatabaseType.MYSQL
    DIALECT_NAME = "MySQL"
    DEFAULT_PORT = 3306
    QUOTE_OPEN = "`"
    QUOTE_CLOSE = "`"

    SYNTAX_CODES = frozenset({"1064", "1146", "1054", "1052", "1305", "1055", "1109", "1248"})
    TIMEOUT_CODES = frozenset({"3024", "1317", "1969"})
    CONNECTION_CODES = frozenset({"2002", "2003", "2005", "2006", "2013", "1045", "1040", "1129"})
    ERROR_MESSAGES = {
        "1146": "Table does not exist",
        "1054": "Column does not exist",
        "1064": "Syntax error in SQL query",
        "1052": "Column reference is ambiguous",
        "1305": "Function does not exist",
        "1055": "Column must appear in GROUP BY clause or be used in an aggregate function",
        "1792": "Write operations are not permitted",
        "1142": "Permission denied",
        "1040": "Too many connections to the database",
        "1045": "Authentication failed",
    }

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._timeout_variable: str | None = None

    def _build_connection_params(self) -> dict[str, Any]:
        """Build connection parameters for aiomysql.

        Returns:
            Dictionary of connection parameters

        """
        params: dict[str, Any] = {
            "host": self.config.host or "localhost",
            "port": self.port,
            "db": self.config.database,
            "user": self.config.username,
            "password": self.config.secret_password() or "",
            "connect_timeout": self.pool_config.connect_timeout,
            "charset": "utf8mb4",
            "autocommit": True,
        }
        ssl_context = self.policy.ssl_context()
        if ssl_context is not None:
            params["ssl"] = ssl_context
        return params

    async def _create_pool(self) -> aiomysql.Pool:
        params = self._build_connection_params()
        try:
            pool = await aiomysql.create_pool(
                minsize=self.pool_config.min_size,
                maxsize=self.pool_config.max_size,
                **params,
            )

            logger.info(
                "MySQL connection pool created",
                extra={
                    "host": params["host"],
                    "port": params["port"],
                    "database": params["db"],
                    "min_size": self.pool_config.min_size,
                    "max_size": self.pool_config.max_size,
                    "ssl": "ssl" in params,
                },
            )
            return pool

        except aiomysql.OperationalError as e:
            error_code = e.args[0] if e.args else 0

            # Error 1045: Access denied
            if error_code == 1045:
                logger.error(
                    "MySQL authentication failed",
                    extra={"host": params["host"], "port": params["port"], "user": params["user"], "error_code": error_code},
                )
                raise InvalidCredentialsError(
                    "MySQL authentication failed",
                    connector_key=self.CONNECTOR_KEY.value,
                    username=params["user"],
                ) from e

            logger.error(
                "Failed to create MySQL connection pool",
                extra={"host": params["host"], "port": params["port"], "error": str(e), "error_code": error_code},
            )
            raise ConnectionTestFailedError(
                f"Failed to connect to MySQL: {e}",
                connector_key=self.CONNECTOR_KEY.value,
                host=params["host"],
                port=params["port"],
            ) from e

    async def _close_pool(self, pool: aiomysql.Pool) -> None:
        pool.close()
        await pool.wait_closed()

    async def _set_timeout(self, cursor: aiomysql.Cursor, timeout_seconds: float) -> None:
        """Apply the session execution limit, preferring MySQL's variable over MariaDB's."""
        if self._timeout_variable in (None, "max_execution_time"):
            try:
                await cursor.execute(f"SET SESSION max_execution_time = {int(timeout_seconds * 1000)}")
                self._timeout_variable = "max_execution_time"
                return
            except aiomysql.OperationalError as e:
                if not e.args or e.args[0] != UNKNOWN_SYSTEM_VARIABLE:
                    raise
                self._timeout_variable = "max_statement_time"
        await cursor.execute(f"SET SESSION max_statement_time = {float(timeout_seconds)}")

    async def _reset_timeout(self, cursor: aiomysql.Cursor) -> None:
        if self._timeout_variable:
            await cursor.execute(f"SET SESSION {self._timeout_variable} = 0")

    async def _kill_query(self, thread_id: int) -> None:
        """Stop a running statement from a separate connection."""
        try:
            killer = await asyncio.wait_for(
                aiomysql.connect(**self._build_connection_params()),
                timeout=KILL_TIMEOUT_SECONDS,
            )
        except (aiomysql.Error, OSError, asyncio.TimeoutError) as e:
            logger.warning("Could not open connection to kill MySQL query", extra={"thread_id": thread_id, "error": str(e)})
            return
        try:
            async with killer.cursor() as cursor:
                await cursor.execute(f"KILL QUERY {int(thread_id)}")
            logger.info("Killed MySQL query after timeout", extra={"thread_id": thread_id})
        except aiomysql.Error as e:
            logger.warning("Failed to kill MySQL query", extra={"thread_id": thread_id, "error": str(e)})
        finally:
            killer.close()

    async def _execute_impl(self, sql: str, timeout_seconds: float) -> tuple[list[dict[str, Any]], list[str]]:
        async with self._pool.acquire() as conn:
            thread_id = conn.thread_id()
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                try:
                    await self._set_timeout(cursor, timeout_seconds)
                    await cursor.execute("START TRANSACTION READ ONLY")
                    await cursor.execute(sql)
                    rows = await cursor.fetchall()
                    fields = [desc[0] for desc in cursor.description] if cursor.description else []

                except asyncio.CancelledError:
                    # Connection state is unknown mid-statement; drop it from the pool
                    conn.close()
                    await asyncio.shield(self._kill_query(thread_id))
                    raise

                except aiomysql.Error:
                    await self._release_session(conn, cursor)
                    raise

                await self._release_session(conn, cursor)
                return [dict(row) for row in rows or ()], fields

    async def _release_session(self, conn: aiomysql.Connection, cursor: aiomysql.Cursor) -> None:
        try:
            await cursor.execute("ROLLBACK")
            await self._reset_timeout(cursor)
        except aiomysql.Error as e:
            logger.warning("Could not reset MySQL session, discarding connection", extra={"error": str(e)})
            conn.close()

    async def _get_schema_impl(self) -> SchemaInfo:
        async with self._pool.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(COLUMNS_SQL)
                column_rows = await cursor.fetchall()
                await cursor.execute(FOREIGN_KEYS_SQL)
                fk_rows = await cursor.fetchall()

        tables: dict[str, list[ColumnMetadata]] = {}
        for row in column_rows:
            row = {key.lower(): value for key, value in row.items()}
            tables.setdefault(row["table_name"], []).append(
                ColumnMetadata(
                    name=row["column_name"],
                    type=row["column_type"],
                    nullable=row["is_nullable"] == "YES",
                    default=None if row["column_default"] is None else str(row["column_default"]),
                    is_primary_key=row["column_key"] == "PRI",
                )
            )

        relationships = []
        for row in fk_rows:
            row = {key.lower(): value for key, value in row.items()}
            relationships.append(
                Relationship(
                    from_table=row["table_name"],
                    from_column=row["column_name"],
                    to_table=row["referenced_table_name"],
                    to_column=row["referenced_column_name"],
                )
            )
        return SchemaInfo(tables=tables, relationships=relationships)

    def _native_error_code(self, error: BaseException) -> str | None:
        if isinstance(error, aiomysql.Error) and error.args and isinstance(error.args[0], int):
            return str(error.args[0])
        return None

    def get_sql_generation_guidelines(self) -> str:
        return "\n".join(
            [
                "MySQL rules:",
                "1. Quote identifiers with backticks (`column`) when needed",
                "2. Limit rows with LIMIT n",
                "3. Use NOW(), CURDATE() and DATE_SUB(NOW(), INTERVAL 7 DAY) for date arithmetic",
                "4. Use CONCAT() for string concatenation, not ||",
                "5. Use the relationships shown above to write correct JOINs",
                "6. Only write SELECT statements",
            ]
        )

    def get_example_queries(self) -> list[str]:
        return [
            "SELECT * FROM users LIMIT 10",
            "SELECT COUNT(*) FROM orders WHERE created_at > DATE_SUB(NOW(), INTERVAL 7 DAY)",
            "SELECT * FROM products WHERE price > 100 ORDER BY price DESC LIMIT 20",
            "SELECT u.name, COUNT(o.id) AS order_count FROM users u "
            "LEFT JOIN orders o ON u.id = o.user_id GROUP BY u.name ORDER BY order_count DESC LIMIT 10",
        ]
