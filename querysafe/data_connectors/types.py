"""Type definitions for data connectors."""

from enum import Enum
from typing import Any, TypedDict

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class DatabaseType(str, Enum):
    """Supported database engines."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"
    SQLSERVER = "sqlserver"


class SSLOptions(BaseModel):
    """Explicit TLS request on a connection config."""

    verify: bool = True


class ConnectionConfig(BaseModel):
    """Connection parameters for one user connection.

    The password lives only in memory as a ``SecretStr``; its ``repr`` and
    any serialization render it masked.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    db_type: DatabaseType
    name: str | None = None
    host: str | None = None
    port: int | None = None
    database: str
    username: str | None = None
    password: SecretStr | None = None
    ssl: bool | SSLOptions | None = None

    def secret_password(self) -> str | None:
        return self.password.get_secret_value() if self.password is not None else None


class QueryResult(TypedDict):
    """Result of a query execution.

    Attributes:
        rows: Row mappings keyed by column name
        row_count: Number of rows returned
        execution_time_ms: Wall-clock execution time in milliseconds
        fields: Column names in result order

    """

    rows: list[dict[str, Any]]
    row_count: int
    execution_time_ms: float
    fields: list[str]


class ColumnMetadata(TypedDict):
    name: str
    type: str
    nullable: bool
    default: str | None
    is_primary_key: bool


class Relationship(TypedDict):
    """Foreign-key edge between two tables."""

    from_table: str
    from_column: str
    to_table: str
    to_column: str


class SchemaInfo(TypedDict):
    tables: dict[str, list[ColumnMetadata]]
    relationships: list[Relationship]


class ConnectionStatus(str, Enum):
    """Connection status states."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"
    CLOSED = "closed"


class ErrorCategory(str, Enum):
    """Coarse classification of a driver error."""

    SYNTAX = "syntax"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    EXECUTION = "execution"
    UNKNOWN = "unknown"


class PoolConfig(BaseModel):
    """Pool sizing and provider-derived connect settings."""

    min_size: int = Field(default=1, ge=0)
    max_size: int = Field(default=10, ge=1)
    connect_timeout: float = Field(default=20.0, gt=0)
