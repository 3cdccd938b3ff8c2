import pytest

from querysafe.data_connectors.factory import create_connector
from querysafe.data_connectors.sqlite import SQLiteConnector
from querysafe.data_connectors.types import ConnectionConfig, DatabaseType, ErrorCategory
from querysafe.exceptions.connector import (
    AdapterClosedError,
    ConnectionTestFailedError,
    QueryExecutionError,
    QueryTimeoutError,
)


def sqlite_config(path: str) -> ConnectionConfig:
    return ConnectionConfig(id="sqlite-1", db_type=DatabaseType.SQLITE, name="Shop", database=path)


@pytest.fixture
async def adapter(sqlite_db):
    connector = create_connector(sqlite_config(sqlite_db))
    yield connector
    await connector.close_pool()


class TestSQLiteConnector:
    def test_factory_builds_sqlite_adapter(self, sqlite_db):
        assert isinstance(create_connector(sqlite_config(sqlite_db)), SQLiteConnector)

    async def test_execute_returns_rows_and_fields(self, adapter):
        result = await adapter.execute_with_timeout("SELECT id, name FROM users ORDER BY id", 5)

        assert result["row_count"] == 3
        assert result["fields"] == ["id", "name"]
        assert result["rows"][0] == {"id": 1, "name": "Ada"}
        assert result["execution_time_ms"] >= 0

    async def test_schema_includes_columns_and_foreign_keys(self, adapter):
        schema = await adapter.get_schema()

        assert set(schema["tables"]) == {"users", "orders"}
        user_columns = {column["name"]: column for column in schema["tables"]["users"]}
        assert user_columns["id"]["is_primary_key"]
        assert not user_columns["name"]["nullable"]
        assert {
            "from_table": "orders",
            "from_column": "user_id",
            "to_table": "users",
            "to_column": "id",
        } in schema["relationships"]

    async def test_connection_is_read_only(self, adapter):
        with pytest.raises(QueryExecutionError) as exc_info:
            await adapter.execute_with_timeout("DELETE FROM users", 5)

        assert adapter.classify(exc_info.value) == ErrorCategory.EXECUTION
        assert adapter.describe_error(exc_info.value) == "Write operations are not permitted"

    async def test_missing_table_is_a_syntax_error_with_safe_message(self, adapter):
        with pytest.raises(QueryExecutionError) as exc_info:
            await adapter.execute_with_timeout("SELECT * FROM invoices", 5)

        assert adapter.classify(exc_info.value) == ErrorCategory.SYNTAX
        message = adapter.describe_error(exc_info.value)
        assert message == "Table does not exist"
        assert "invoices" not in message

    async def test_runaway_query_is_interrupted(self, adapter):
        runaway = (
            "WITH RECURSIVE counter(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM counter) "
            "SELECT COUNT(*) FROM counter"
        )

        with pytest.raises(QueryTimeoutError) as exc_info:
            await adapter.execute_with_timeout(runaway, 0.2)

        assert adapter.classify(exc_info.value) == ErrorCategory.TIMEOUT
        assert adapter.describe_error(exc_info.value, 0.2) == "Query timeout (exceeded 0.2 seconds)"

        # The connection survives the interrupt
        result = await adapter.execute_with_timeout("SELECT COUNT(*) AS n FROM users", 5)
        assert result["rows"] == [{"n": 3}]

    async def test_ping_and_test_connection(self, adapter):
        assert await adapter.test_connection()
        assert await adapter.ping(1.0) >= 0

    async def test_missing_file_fails_to_connect(self, tmp_path):
        connector = create_connector(sqlite_config(str(tmp_path / "missing.db")))

        with pytest.raises(ConnectionTestFailedError):
            await connector.create_pool()

    async def test_closed_adapter_refuses_work(self, adapter):
        await adapter.close_pool()

        assert adapter.is_closed
        with pytest.raises(AdapterClosedError):
            await adapter.execute_with_timeout("SELECT 1", 5)
        with pytest.raises(AdapterClosedError):
            await adapter.create_pool()

    def test_validation_uses_sqlite_dialect(self, sqlite_db):
        connector = create_connector(sqlite_config(sqlite_db))

        result = connector.validate_query("SELECT * FROM users")

        assert result.valid
        assert result.limit_applied
        assert connector.get_sql_dialect() == "SQLite"

    def test_prompt_schema_format(self, sqlite_db):
        connector = create_connector(sqlite_config(sqlite_db))
        schema = {
            "tables": {
                "users": [{"name": "id", "type": "INTEGER", "nullable": False, "default": None, "is_primary_key": True}]
            },
            "relationships": [],
        }

        text = connector.format_schema_for_prompt(schema)

        assert 'Table: "users"' in text
        assert "id (INTEGER, PRIMARY KEY, NOT NULL)" in text
