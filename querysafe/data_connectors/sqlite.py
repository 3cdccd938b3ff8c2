"""SQLite connector implementation using aiosqlite."""

import asyncio
import sqlite3
import time
from pathlib import Path
from typing import Any

import aiosqlite

from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.types import ColumnMetadata, DatabaseType, Relationship, SchemaInfo
from querysafe.exceptions.connector import ConnectionTestFailedError
from querysafe.logging import get_logger

logger = get_logger(__name__)

MEMORY_DATABASE = ":memory:"

# SQLite VM instructions between deadline checks
PROGRESS_HANDLER_STEPS = 1000

# sqlite3 reports most failures as OperationalError; the message is the only discriminator
ERROR_PATTERNS = (
    ("interrupted", "interrupted"),
    ("no such table", "no_such_table"),
    ("no such column", "no_such_column"),
    ("no such function", "no_such_function"),
    ("ambiguous column name", "ambiguous_column"),
    ("syntax error", "syntax_error"),
    ("incomplete input", "syntax_error"),
    ("readonly database", "readonly"),
    ("query_only", "readonly"),
    ("unable to open database file", "cannot_open"),
    ("database is locked", "locked"),
    ("file is not a database", "not_a_database"),
)


class SQLiteConnector(BaseConnector):
    """SQLite adapter using aiosqlite.

    The database file is opened read-only through a ``mode=ro`` URI. SQLite
    has no server, so the timeout is enforced inside the engine by a
    progress handler and by ``interrupt()`` when the awaiting task is
    cancelled. One connection serves the adapter; statements are serialized.
    """

    CONNECTOR_KEY = DatabaseType.SQLITE
    DIALECT_NAME = "SQLite"

    SYNTAX_CODES = frozenset({"syntax_error", "no_such_table", "no_such_column", "no_such_function", "ambiguous_column"})
    TIMEOUT_CODES = frozenset({"interrupted"})
    CONNECTION_CODES = frozenset({"cannot_open", "not_a_database", "locked"})
    ERROR_MESSAGES = {
        "no_such_table": "Table does not exist",
        "no_such_column": "Column does not exist",
        "no_such_function": "Function does not exist",
        "ambiguous_column": "Column reference is ambiguous",
        "syntax_error": "Syntax error in SQL query",
        "readonly": "Write operations are not permitted",
        "cannot_open": "SQLite file not found or cannot be opened",
        "locked": "Database is locked",
    }

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._statement_lock = asyncio.Lock()

    def _get_database_path(self) -> str:
        return self.config.database or MEMORY_DATABASE

    async def _create_pool(self) -> aiosqlite.Connection:
        """Open the single read-only connection.

        Raises:
            ConnectionTestFailedError: If the file is missing or cannot be opened

        """
        db_path = self._get_database_path()

        if db_path == MEMORY_DATABASE:
            target, uri = MEMORY_DATABASE, False
        else:
            path = Path(db_path).expanduser()
            if not path.is_file():
                logger.error("SQLite database file not found", extra={"database": db_path})
                raise ConnectionTestFailedError(
                    "SQLite database file not found",
                    connector_key=self.CONNECTOR_KEY.value,
                    details={"reason": "file_not_found"},
                )
            target, uri = f"{path.resolve().as_uri()}?mode=ro", True

        try:
            conn = await aiosqlite.connect(target, uri=uri, timeout=self.pool_config.connect_timeout)
            await conn.execute("PRAGMA query_only = ON")
            conn.row_factory = aiosqlite.Row

            logger.info("SQLite connection created", extra={"database": db_path, "read_only": True})
            return conn

        except sqlite3.Error as e:
            logger.error("Failed to open SQLite database", extra={"database": db_path, "error": str(e)})
            raise ConnectionTestFailedError(
                f"Failed to open SQLite database: {e}",
                connector_key=self.CONNECTOR_KEY.value,
                details={"reason": "cannot_open"},
            ) from e

    async def _close_pool(self, pool: aiosqlite.Connection) -> None:
        await pool.close()

    async def _execute_impl(self, sql: str, timeout_seconds: float) -> tuple[list[dict[str, Any]], list[str]]:
        conn: aiosqlite.Connection = self._pool
        async with self._statement_lock:
            deadline = time.monotonic() + timeout_seconds
            await conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, PROGRESS_HANDLER_STEPS)
            try:
                async with conn.execute(sql) as cursor:
                    rows = await cursor.fetchall()
                    fields = [desc[0] for desc in cursor.description] if cursor.description else []
                return [dict(row) for row in rows], fields

            except asyncio.CancelledError:
                await conn.interrupt()
                raise

            finally:
                await conn.set_progress_handler(None, 0)

    async def _get_schema_impl(self) -> SchemaInfo:
        conn: aiosqlite.Connection = self._pool
        tables: dict[str, list[ColumnMetadata]] = {}
        relationships: list[Relationship] = []

        async with self._statement_lock:
            async with conn.execute(
                "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ) as cursor:
                table_names = [row["name"] for row in await cursor.fetchall()]

            for table_name in table_names:
                quoted = self.quote_identifier(table_name)
                async with conn.execute(f"PRAGMA table_info({quoted})") as cursor:
                    tables[table_name] = [
                        ColumnMetadata(
                            name=row["name"],
                            type=row["type"] or "ANY",
                            nullable=not row["notnull"],
                            default=row["dflt_value"],
                            is_primary_key=bool(row["pk"]),
                        )
                        for row in await cursor.fetchall()
                    ]
                async with conn.execute(f"PRAGMA foreign_key_list({quoted})") as cursor:
                    for row in await cursor.fetchall():
                        relationships.append(
                            Relationship(
                                from_table=table_name,
                                from_column=row["from"],
                                to_table=row["table"],
                                to_column=row["to"],
                            )
                        )

        return SchemaInfo(tables=tables, relationships=relationships)

    def _native_error_code(self, error: BaseException) -> str | None:
        if not isinstance(error, sqlite3.Error):
            return None
        message = str(error).lower()
        for pattern, code in ERROR_PATTERNS:
            if pattern in message:
                return code
        return getattr(error, "sqlite_errorname", None)

    def get_sql_generation_guidelines(self) -> str:
        return "\n".join(
            [
                "SQLite rules:",
                '1. Quote identifiers with double quotes ("column") when needed',
                "2. Limit rows with LIMIT n",
                "3. Use date('now'), datetime('now', '-7 days') and strftime() for dates",
                "4. There is no ILIKE; LIKE is case-insensitive for ASCII",
                "5. Use the relationships shown above to write correct JOINs",
                "6. Only write SELECT statements",
            ]
        )

    def get_example_queries(self) -> list[str]:
        return [
            "SELECT * FROM users LIMIT 10",
            "SELECT COUNT(*) FROM orders WHERE created_at > datetime('now', '-7 days')",
            "SELECT * FROM products WHERE price > 100 ORDER BY price DESC LIMIT 20",
        ]
