"""PostgreSQL connector implementation using asyncpg."""

from typing import Any

import asyncpg

from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.types import ColumnMetadata, DatabaseType, Relationship, SchemaInfo
from querysafe.exceptions.connector import ConnectionTestFailedError, InvalidCredentialsError
from querysafe.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SCHEMA = "public"

COLUMNS_SQL = """
SELECT c.table_schema, c.table_name, c.column_name, c.data_type, c.is_nullable, c.column_default
FROM information_schema.columns c
JOIN information_schema.tables t
  ON t.table_schema = c.table_schema AND t.table_name = c.table_name
WHERE c.table_schema NOT IN ('pg_catalog', 'information_schema')
  AND c.table_schema NOT LIKE 'pg_toast%'
  AND t.table_type IN ('BASE TABLE', 'VIEW')
ORDER BY c.table_schema, c.table_name, c.ordinal_position
"""

PRIMARY_KEYS_SQL = """
SELECT kcu.table_schema, kcu.table_name, kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
WHERE tc.constraint_type = 'PRIMARY KEY'
"""

FOREIGN_KEYS_SQL = """
SELECT kcu.table_schema, kcu.table_name, kcu.column_name,
       ccu.table_schema AS foreign_table_schema,
       ccu.table_name AS foreign_table_name,
       ccu.column_name AS foreign_column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
JOIN information_schema.constraint_column_usage ccu
  ON ccu.constraint_name = tc.constraint_name AND ccu.table_schema = tc.table_schema
WHERE tc.constraint_type = 'FOREIGN KEY'
"""


def _table_key(schema: str, table: str) -> str:
    return table if schema == DEFAULT_SCHEMA else f"{schema}.{table}"


class PostgreSQLConnector(BaseConnector):
    """PostgreSQL adapter using asyncpg.

    Statements run inside a read-only transaction with ``SET LOCAL
    statement_timeout``, so the server aborts overlong work itself; when the
    awaiting task is cancelled asyncpg also sends a cancel request.
    """

    CONNECTOR_KEY = DatabaseType.POSTGRESQL
    DIALECT_NAME = "PostgreSQL"
    DEFAULT_PORT = 5432

    SYNTAX_CODES = frozenset({"42601", "42P01", "42703", "42883", "42702", "42804", "42803", "42P02", "42846"})
    TIMEOUT_CODES = frozenset({"57014"})
    CONNECTION_CODES = frozenset(
        {"08000", "08001", "08003", "08004", "08006", "08P01", "57P01", "57P02", "57P03", "53300", "28000", "28P01"}
    )
    ERROR_MESSAGES = {
        "42P01": "Table does not exist",
        "42703": "Column does not exist",
        "42601": "Syntax error in SQL query",
        "42883": "Function does not exist or has wrong argument types",
        "42702": "Column reference is ambiguous",
        "42804": "Data type mismatch in query",
        "42803": "Column must appear in GROUP BY clause or be used in an aggregate function",
        "22012": "Division by zero",
        "22P02": "Invalid input value for data type",
        "25006": "Write operations are not permitted",
        "42501": "Permission denied",
        "53300": "Too many connections to the database",
        "28P01": "Authentication failed",
    }

    def _build_connection_params(self) -> dict[str, Any]:
        """Build connection parameters for asyncpg.

        Returns:
            Dictionary of connection parameters

        """
        params: dict[str, Any] = {
            "host": self.config.host or "localhost",
            "port": self.port,
            "database": self.config.database,
            "user": self.config.username,
            "password": self.config.secret_password(),
            "min_size": self.pool_config.min_size,
            "max_size": self.pool_config.max_size,
            "timeout": self.pool_config.connect_timeout,
            "ssl": self.policy.ssl_context() or False,
        }
        return params

    async def _create_pool(self) -> asyncpg.Pool:
        params = self._build_connection_params()
        try:
            pool = await asyncpg.create_pool(**params)

            logger.info(
                "PostgreSQL connection pool created",
                extra={
                    "host": params["host"],
                    "port": params["port"],
                    "database": params["database"],
                    "min_size": params["min_size"],
                    "max_size": params["max_size"],
                    "ssl": bool(params["ssl"]),
                },
            )
            return pool

        except (asyncpg.InvalidPasswordError, asyncpg.InvalidAuthorizationSpecificationError) as e:
            logger.error(
                "PostgreSQL authentication failed",
                extra={"host": params["host"], "port": params["port"], "user": params["user"]},
            )
            raise InvalidCredentialsError(
                "PostgreSQL authentication failed",
                connector_key=self.CONNECTOR_KEY.value,
                username=params["user"],
            ) from e

        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(
                "Failed to create PostgreSQL connection pool",
                extra={"host": params["host"], "port": params["port"], "error": str(e)},
            )
            raise ConnectionTestFailedError(
                f"Failed to connect to PostgreSQL: {e}",
                connector_key=self.CONNECTOR_KEY.value,
                host=params["host"],
                port=params["port"],
            ) from e

    async def _close_pool(self, pool: asyncpg.Pool) -> None:
        await pool.close()

    async def _execute_impl(self, sql: str, timeout_seconds: float) -> tuple[list[dict[str, Any]], list[str]]:
        async with self._pool.acquire() as conn:
            async with conn.transaction(readonly=True):
                await conn.execute(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}")
                statement = await conn.prepare(sql)
                fields = [attribute.name for attribute in statement.get_attributes()]
                records = await statement.fetch(timeout=timeout_seconds + self.TIMEOUT_GRACE_SECONDS)
                return [dict(record) for record in records], fields

    async def _get_schema_impl(self) -> SchemaInfo:
        async with self._pool.acquire() as conn:
            async with conn.transaction(readonly=True):
                column_rows = await conn.fetch(COLUMNS_SQL)
                pk_rows = await conn.fetch(PRIMARY_KEYS_SQL)
                fk_rows = await conn.fetch(FOREIGN_KEYS_SQL)

        primary_keys = {(row["table_schema"], row["table_name"], row["column_name"]) for row in pk_rows}

        tables: dict[str, list[ColumnMetadata]] = {}
        for row in column_rows:
            key = _table_key(row["table_schema"], row["table_name"])
            tables.setdefault(key, []).append(
                ColumnMetadata(
                    name=row["column_name"],
                    type=row["data_type"],
                    nullable=row["is_nullable"] == "YES",
                    default=row["column_default"],
                    is_primary_key=(row["table_schema"], row["table_name"], row["column_name"]) in primary_keys,
                )
            )

        relationships = [
            Relationship(
                from_table=_table_key(row["table_schema"], row["table_name"]),
                from_column=row["column_name"],
                to_table=_table_key(row["foreign_table_schema"], row["foreign_table_name"]),
                to_column=row["foreign_column_name"],
            )
            for row in fk_rows
        ]
        return SchemaInfo(tables=tables, relationships=relationships)

    def _native_error_code(self, error: BaseException) -> str | None:
        return getattr(error, "sqlstate", None)

    def get_sql_generation_guidelines(self) -> str:
        return "\n".join(
            [
                "PostgreSQL rules:",
                '1. Quote identifiers with double quotes ("column") when they contain capitals or reserved words',
                "2. Limit rows with LIMIT n; never use TOP",
                "3. Use ILIKE for case-insensitive matching",
                "4. Use NOW(), CURRENT_DATE and INTERVAL '7 days' for date arithmetic",
                "5. Cast with ::type (e.g. created_at::date)",
                "6. Use the relationships shown above to write correct JOINs",
                "7. Only write SELECT statements",
            ]
        )

    def get_example_queries(self) -> list[str]:
        return [
            "SELECT * FROM users LIMIT 10",
            "SELECT COUNT(*) FROM orders WHERE created_at > NOW() - INTERVAL '7 days'",
            "SELECT * FROM products WHERE price > 100 ORDER BY price DESC LIMIT 20",
            "SELECT u.name, COUNT(o.id) AS order_count FROM users u "
            "LEFT JOIN orders o ON u.id = o.user_id GROUP BY u.name ORDER BY order_count DESC LIMIT 10",
        ]
