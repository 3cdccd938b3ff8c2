"""Exceptions raised around the query pipeline: rate limits, security incidents, credentials."""

from typing import Any, Optional

from querysafe.exceptions.base import QuerySafeBaseError


class RateLimitExceededError(QuerySafeBaseError):
    """Raised by HTTP-facing code when a rate-limit tier blocks a request."""

    def __init__(
        self,
        message: str,
        retry_after: int,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        details["retry_after"] = retry_after
        super().__init__(message, error_code="RATE_LIMITED", details=details, **kwargs)
        self.retry_after = retry_after
        self.headers = headers or {}


class SecurityIncidentError(QuerySafeBaseError):
    """Raised when a prompt or query matches a known injection pattern."""

    def __init__(
        self,
        message: str,
        risk_level: str,
        threats: Optional[list[str]] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        details["risk_level"] = risk_level
        super().__init__(message, error_code="SECURITY_INCIDENT", details=details, **kwargs)
        self.risk_level = risk_level
        self.threats = threats or []


class CredentialDecryptionError(QuerySafeBaseError):
    """Raised when an encrypted credential token is malformed or fails its integrity check."""

    def __init__(self, message: str = "Failed to decrypt credential", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class NoActiveConnectionError(QuerySafeBaseError):
    def __init__(
        self,
        message: str = "No active database connection. Please activate a connection in Settings.",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_code="NO_ACTIVE_CONNECTION", **kwargs)


class ConnectionUnavailableError(QuerySafeBaseError):
    """Raised when no live adapter can be obtained for the active connection."""

    def __init__(self, message: str = "Failed to connect to database", **kwargs: Any) -> None:
        super().__init__(message, error_code="CONNECTION_FAILED", **kwargs)
