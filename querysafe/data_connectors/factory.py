"""Connector factory with a closed registry keyed by database type."""

from typing import Type

from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.mysql import MySQLConnector
from querysafe.data_connectors.postgresql import PostgreSQLConnector
from querysafe.data_connectors.sqlite import SQLiteConnector
from querysafe.data_connectors.sqlserver import SQLServerConnector
from querysafe.data_connectors.types import ConnectionConfig, DatabaseType, PoolConfig
from querysafe.exceptions.connector import UnsupportedConnectorError
from querysafe.logging import get_logger

logger = get_logger(__name__)


class ConnectorRegistry:
    """Registry of connector classes.

    Exactly one implementation per ``DatabaseType`` member. Registration is
    limited to enum members, so an unknown engine can never be looked up.
    """

    def __init__(self) -> None:
        self._connectors: dict[DatabaseType, Type[BaseConnector]] = {}
        self._register_default_connectors()

    def _register_default_connectors(self) -> None:
        for connector_class in (PostgreSQLConnector, MySQLConnector, SQLiteConnector, SQLServerConnector):
            self.register(connector_class.CONNECTOR_KEY, connector_class)

        logger.info(
            "Registered default connectors",
            extra={"connectors": self.list_connectors()},
        )

    def register(self, db_type: DatabaseType, connector_class: Type[BaseConnector]) -> None:
        """Register the connector class for a database type.

        Args:
            db_type: Database type the class serves
            connector_class: Connector class that extends BaseConnector

        """
        db_type = DatabaseType(db_type)
        if db_type in self._connectors:
            logger.warning(
                "Overwriting existing connector",
                extra={
                    "connector_key": db_type.value,
                    "old_class": self._connectors[db_type].__name__,
                    "new_class": connector_class.__name__,
                },
            )
        self._connectors[db_type] = connector_class

    def get(self, db_type: DatabaseType | str) -> Type[BaseConnector] | None:
        try:
            return self._connectors.get(DatabaseType(db_type))
        except ValueError:
            return None

    def list_connectors(self) -> list[str]:
        return [db_type.value for db_type in self._connectors]


# Global registry instance
_registry = ConnectorRegistry()


def get_registry() -> ConnectorRegistry:
    return _registry


def create_connector(config: ConnectionConfig, pool_config: PoolConfig | None = None) -> BaseConnector:
    """Create an adapter for a connection config.

    Args:
        config: Connection parameters with the decrypted password
        pool_config: Optional custom pool configuration

    Returns:
        Initialized adapter (pool not yet opened)

    Raises:
        UnsupportedConnectorError: If the database type has no adapter

    """
    connector_class = _registry.get(config.db_type)

    if connector_class is None:
        available = _registry.list_connectors()
        logger.error(
            "Unsupported connector type",
            extra={"connector_key": str(config.db_type), "available_connectors": available},
        )
        raise UnsupportedConnectorError(connector_key=str(config.db_type), available_connectors=available)

    connector = connector_class(config, pool_config=pool_config)
    logger.debug(
        "Connector created",
        extra={
            "connector_key": connector_class.CONNECTOR_KEY.value,
            "connector_class": connector_class.__name__,
            "connection_config_id": config.id,
        },
    )
    return connector
