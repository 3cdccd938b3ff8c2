from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from querysafe.exceptions.base import (
    AuthenticationError,
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    QuerySafeBaseError,
    ValidationError,
)
from querysafe.exceptions.connector import (
    ConnectionTestFailedError,
    ConnectionTimeoutError,
    ConnectorError,
    InvalidCredentialsError,
    UnsupportedConnectorError,
)
from querysafe.exceptions.pipeline import (
    ConnectionUnavailableError,
    CredentialDecryptionError,
    NoActiveConnectionError,
    RateLimitExceededError,
    SecurityIncidentError,
)
from querysafe.logging import get_logger

logger = get_logger(__name__)

STATUS_MAP: dict[type, int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    UnsupportedConnectorError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    NoActiveConnectionError: status.HTTP_400_BAD_REQUEST,
    ConnectionUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    SecurityIncidentError: status.HTTP_403_FORBIDDEN,
    RateLimitExceededError: status.HTTP_429_TOO_MANY_REQUESTS,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
    ConnectionTestFailedError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConnectionTimeoutError: status.HTTP_503_SERVICE_UNAVAILABLE,
    InvalidCredentialsError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    CredentialDecryptionError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Errors whose message may carry driver or key material; clients get a fixed text instead
OPAQUE_ERRORS = (ConnectorError, ConfigurationError, CredentialDecryptionError)


def create_error_response(
    error_code: str,
    message: str,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    details: Dict[str, Any] | None = None,
    headers: Dict[str, str] | None = None,
) -> JSONResponse:
    """Create the standard error envelope."""
    content: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }

    if details:
        content["error"]["details"] = details

    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _status_for(exc: QuerySafeBaseError) -> int:
    for exc_type in type(exc).__mro__:
        if exc_type in STATUS_MAP:
            return STATUS_MAP[exc_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def querysafe_exception_handler(request: Request, exc: QuerySafeBaseError) -> JSONResponse:
    status_code = _status_for(exc)

    logger.error(
        "Service exception occurred",
        error_code=exc.error_code,
        message=exc.message,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
    )

    if isinstance(exc, OPAQUE_ERRORS):
        return create_error_response(
            error_code=exc.error_code,
            message="Operation failed",
            status_code=status_code,
        )

    headers = exc.headers if isinstance(exc, RateLimitExceededError) else None
    return create_error_response(
        error_code=exc.error_code,
        message=exc.message,
        status_code=status_code,
        details=exc.details,
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request-body validation failures without echoing input values."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    logger.warning(
        "Validation error occurred",
        errors=errors,
        path=request.url.path,
        method=request.method,
    )

    return create_error_response(
        error_code="VALIDATION_ERROR",
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"validation_errors": errors},
    )


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    logger.warning(
        "HTTP exception occurred",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )

    return create_error_response(
        error_code="HTTP_ERROR",
        message=str(exc.detail),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; the exception text stays in the logs."""
    error_id = id(exc)

    logger.error(
        "Unexpected exception occurred",
        error_id=error_id,
        error_type=type(exc).__name__,
        error=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    return create_error_response(
        error_code="INTERNAL_SERVER_ERROR",
        message="An unexpected error occurred",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        details={"error_id": error_id},
    )
