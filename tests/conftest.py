import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ENCRYPTION_KEY", "0f" * 32)
os.environ.setdefault("CONNECTION_STORE_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("JAEGER_ENABLED", "false")
os.environ.setdefault("ENABLE_METRICS", "false")
os.environ["REDIS_URL"] = ""

import asyncio  # noqa: E402
import sqlite3  # noqa: E402
from dataclasses import dataclass, field  # noqa: E402
from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
from pydantic import SecretStr  # noqa: E402

from querysafe.cache.redis_client import RedisClient  # noqa: E402
from querysafe.data_connectors.base import BaseConnector  # noqa: E402
from querysafe.data_connectors.types import ConnectionConfig, DatabaseType, SchemaInfo  # noqa: E402
from querysafe.dependencies.pipeline import build_container  # noqa: E402
from querysafe.services.audit.audit_logger import AuditLogger, AuditSink  # noqa: E402
from querysafe.services.connections.health import HealthMonitor  # noqa: E402
from querysafe.services.connections.store import InMemoryConnectionStore  # noqa: E402
from querysafe.services.ratelimit.rate_limiter import MemoryRateLimitStore, RateLimiter  # noqa: E402

USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER_ID = "22222222-2222-2222-2222-222222222222"

USERS_SCHEMA: SchemaInfo = {
    "tables": {
        "users": [
            {"name": "id", "type": "integer", "nullable": False, "default": None, "is_primary_key": True},
            {"name": "name", "type": "text", "nullable": False, "default": None, "is_primary_key": False},
            {"name": "email", "type": "text", "nullable": True, "default": None, "is_primary_key": False},
        ],
    },
    "relationships": [],
}


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDriverError(Exception):
    """Driver exception carrying a SQLSTATE, like asyncpg's."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass
class FakeBehavior:
    rows: List[Dict[str, Any]] = field(default_factory=lambda: [{"id": 1, "name": "Ada"}])
    fields: List[str] = field(default_factory=lambda: ["id", "name"])
    schema: SchemaInfo = field(default_factory=lambda: USERS_SCHEMA)
    create_error: Optional[BaseException] = None
    create_delay: float = 0.0
    ping_error: Optional[BaseException] = None
    ping_delay: float = 0.0
    execute_error: Optional[BaseException] = None
    pools_opened: int = 0
    pools_closed: int = 0


class FakeConnector(BaseConnector):
    CONNECTOR_KEY = DatabaseType.POSTGRESQL
    DIALECT_NAME = "PostgreSQL"

    SYNTAX_CODES = frozenset({"42601", "42P01"})
    TIMEOUT_CODES = frozenset({"57014"})
    CONNECTION_CODES = frozenset({"08006"})
    ERROR_MESSAGES = {"42P01": "Table does not exist"}

    def __init__(self, config: ConnectionConfig, behavior: FakeBehavior) -> None:
        super().__init__(config)
        self.behavior = behavior
        self.executed: List[str] = []

    async def _create_pool(self) -> Any:
        if self.behavior.create_delay:
            await asyncio.sleep(self.behavior.create_delay)
        if self.behavior.create_error is not None:
            raise self.behavior.create_error
        self.behavior.pools_opened += 1
        return object()

    async def _close_pool(self, pool: Any) -> None:
        self.behavior.pools_closed += 1

    async def _execute_impl(self, sql: str, timeout_seconds: float):
        if sql == self.PING_SQL:
            if self.behavior.ping_delay:
                await asyncio.sleep(self.behavior.ping_delay)
            if self.behavior.ping_error is not None:
                raise self.behavior.ping_error
            return [{"?column?": 1}], ["?column?"]

        self.executed.append(sql)
        if self.behavior.execute_error is not None:
            raise self.behavior.execute_error
        return [dict(row) for row in self.behavior.rows], list(self.behavior.fields)

    async def _get_schema_impl(self) -> SchemaInfo:
        return self.behavior.schema

    def _native_error_code(self, error: BaseException) -> Optional[str]:
        return getattr(error, "code", None)

    def get_sql_generation_guidelines(self) -> str:
        return "PostgreSQL rules:\n1. Only write SELECT statements"

    def get_example_queries(self) -> List[str]:
        return ["SELECT * FROM users LIMIT 10"]


class FakeAdapterFactory:
    def __init__(self, behavior: Optional[FakeBehavior] = None) -> None:
        self.behavior = behavior or FakeBehavior()
        self.created: List[FakeConnector] = []

    def __call__(self, config: ConnectionConfig) -> FakeConnector:
        adapter = FakeConnector(config, self.behavior)
        self.created.append(adapter)
        return adapter

    @property
    def last(self) -> FakeConnector:
        return self.created[-1]


class RecordingSink(AuditSink):
    def __init__(self) -> None:
        self.entries: List[tuple] = []

    async def write(self, stream: str, entry: Dict[str, Any]) -> None:
        self.entries.append((stream, entry))

    def stream(self, name: str) -> List[Dict[str, Any]]:
        return [entry for stream, entry in self.entries if stream == name]


def make_config(connection_id: str = "conn-1", **overrides: Any) -> ConnectionConfig:
    values: Dict[str, Any] = {
        "id": connection_id,
        "db_type": DatabaseType.POSTGRESQL,
        "name": "Primary",
        "host": "localhost",
        "port": 5432,
        "database": "app",
        "username": "app_user",
        "password": SecretStr("s3cret-pw"),
    }
    values.update(overrides)
    return ConnectionConfig(**values)


POSTGRES_PAYLOAD = {
    "name": "Primary",
    "db_type": "postgresql",
    "host": "localhost",
    "port": 5432,
    "database": "app",
    "username": "app_user",
    "password": "s3cret-pw",
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def adapter_factory() -> FakeAdapterFactory:
    return FakeAdapterFactory()


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(MemoryRateLimitStore(), enabled=True)


@pytest.fixture
def audit_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def container(adapter_factory, rate_limiter, audit_sink):
    return build_container(
        store=InMemoryConnectionStore(),
        redis_client=RedisClient(url=""),
        rate_limiter=rate_limiter,
        audit=AuditLogger(audit_sink),
        health_monitor=HealthMonitor(),
        adapter_factory=adapter_factory,
    )


@pytest.fixture
async def active_connection(container):
    record = await container.connections.create_connection(USER_ID, dict(POSTGRES_PAYLOAD))
    return await container.connections.activate(USER_ID, record.id)


@pytest.fixture
def sqlite_db(tmp_path) -> str:
    path = tmp_path / "shop.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, email TEXT);
        CREATE TABLE orders (
            id INTEGER PRIMARY KEY,
            user_id INTEGER NOT NULL REFERENCES users(id),
            total REAL
        );
        INSERT INTO users (name, email) VALUES ('Ada', 'ada@example.com'), ('Grace', NULL), ('Linus', 'l@example.com');
        INSERT INTO orders (user_id, total) VALUES (1, 9.5), (1, 20.0), (2, 3.25);
        """
    )
    conn.commit()
    conn.close()
    return str(path)
