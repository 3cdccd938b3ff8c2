from querysafe.exceptions.base import (
    AuthenticationError,
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    QuerySafeBaseError,
    ValidationError,
)
from querysafe.exceptions.connector import (
    AdapterClosedError,
    ConnectionTestFailedError,
    ConnectionTimeoutError,
    ConnectorError,
    InvalidCredentialsError,
    QueryExecutionError,
    QueryTimeoutError,
    UnsupportedConnectorError,
)
from querysafe.exceptions.pipeline import (
    ConnectionUnavailableError,
    CredentialDecryptionError,
    NoActiveConnectionError,
    RateLimitExceededError,
    SecurityIncidentError,
)

__all__ = [
    "QuerySafeBaseError",
    "ValidationError",
    "NotFoundError",
    "AuthenticationError",
    "ExternalServiceError",
    "ConfigurationError",
    "ConnectorError",
    "AdapterClosedError",
    "ConnectionTestFailedError",
    "ConnectionTimeoutError",
    "InvalidCredentialsError",
    "QueryExecutionError",
    "QueryTimeoutError",
    "UnsupportedConnectorError",
    "ConnectionUnavailableError",
    "CredentialDecryptionError",
    "NoActiveConnectionError",
    "RateLimitExceededError",
    "SecurityIncidentError",
]
