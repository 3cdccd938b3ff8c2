"""Connector-specific exceptions for database adapters.

Messages on these exceptions are written for operators and land in server
logs. User-facing text is produced separately by ``describe_error`` on the
adapter, so driver internals never reach an API response.
"""

from typing import Any

from querysafe.exceptions.base import QuerySafeBaseError


class ConnectorError(QuerySafeBaseError):
    """Base exception for all connector-related errors."""

    def __init__(
        self,
        message: str,
        connector_key: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize connector error.

        Args:
            message: Human-readable error message
            connector_key: The database type that failed
            details: Additional error context

        """
        super().__init__(message, details=details)
        self.connector_key = connector_key


class ConnectionTestFailedError(ConnectorError):
    """Raised when a pool cannot be opened or the remote server is unreachable."""

    def __init__(
        self,
        message: str,
        connector_key: str | None = None,
        host: str | None = None,
        port: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize connection failure.

        Args:
            message: Human-readable error message
            connector_key: The database type that failed
            host: Host that was attempted
            port: Port that was attempted
            details: Additional error context

        """
        super().__init__(message, connector_key=connector_key, details=details)
        self.host = host
        self.port = port


class InvalidCredentialsError(ConnectorError):
    """Raised when the database rejects the supplied credentials."""

    def __init__(
        self,
        message: str = "Authentication failed with provided credentials",
        connector_key: str | None = None,
        username: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, connector_key=connector_key, details=details)
        self.username = username


class ConnectionTimeoutError(ConnectorError):
    """Raised when establishing a connection exceeds the provider's connect timeout."""

    def __init__(
        self,
        message: str,
        connector_key: str | None = None,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, connector_key=connector_key, details=details)
        self.timeout_seconds = timeout_seconds


class AdapterClosedError(ConnectorError):
    """Raised when a destroyed adapter is asked to open a pool or run a query."""


class QueryExecutionError(ConnectorError):
    """Raised when the live engine rejects a statement.

    The native driver exception stays reachable through ``__cause__`` so the
    adapter can classify it; ``driver_code`` carries its SQLSTATE or vendor code.
    """

    def __init__(
        self,
        message: str,
        connector_key: str | None = None,
        query: str | None = None,
        driver_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize query execution error.

        Args:
            message: Human-readable error message
            connector_key: The database type that failed
            query: The query that failed (truncated)
            driver_code: SQLSTATE or vendor error code, if the driver exposed one
            details: Additional error context

        """
        super().__init__(message, connector_key=connector_key, details=details)
        self.query = query
        self.driver_code = driver_code


class QueryTimeoutError(ConnectorError):
    """Raised when a statement exceeds its enforced timeout."""

    def __init__(
        self,
        message: str,
        connector_key: str | None = None,
        query: str | None = None,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, connector_key=connector_key, details=details)
        self.query = query
        self.timeout_seconds = timeout_seconds


class UnsupportedConnectorError(ConnectorError):
    """Raised when requested database type is not supported."""

    def __init__(
        self,
        connector_key: str,
        available_connectors: list[str] | None = None,
    ) -> None:
        available = ", ".join(available_connectors) if available_connectors else "none"
        message = f"Database type '{connector_key}' is not supported. Available types: {available}"
        super().__init__(message, connector_key=connector_key)
        self.available_connectors = available_connectors or []
