"""Dialect adapters for the supported database engines."""

from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.factory import ConnectorRegistry, create_connector, get_registry
from querysafe.data_connectors.mysql import MySQLConnector
from querysafe.data_connectors.postgresql import PostgreSQLConnector
from querysafe.data_connectors.sqlite import SQLiteConnector
from querysafe.data_connectors.sqlserver import SQLServerConnector
from querysafe.data_connectors.types import (
    ColumnMetadata,
    ConnectionConfig,
    ConnectionStatus,
    DatabaseType,
    ErrorCategory,
    PoolConfig,
    QueryResult,
    Relationship,
    SchemaInfo,
    SSLOptions,
)

__all__ = [
    # Base connector
    "BaseConnector",
    # Concrete connectors
    "PostgreSQLConnector",
    "MySQLConnector",
    "SQLiteConnector",
    "SQLServerConnector",
    # Factory
    "ConnectorRegistry",
    "create_connector",
    "get_registry",
    # Types
    "ColumnMetadata",
    "ConnectionConfig",
    "ConnectionStatus",
    "DatabaseType",
    "ErrorCategory",
    "PoolConfig",
    "QueryResult",
    "Relationship",
    "SchemaInfo",
    "SSLOptions",
]
