import re
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from querysafe.config import Environment, settings
from querysafe.logging import get_logger

logger = get_logger(__name__)

DEV_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:3001",
)

_ORIGIN = re.compile(r"^https?://[A-Za-z0-9.\-]+(:\d{1,5})?$")


def configure_cors(app: FastAPI) -> None:
    """Configure CORS with environment-specific origins.

    Rate-limit headers are exposed so browser clients can read them.
    """
    allowed_origins = _get_allowed_origins()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
        expose_headers=settings.CORS_EXPOSE_HEADERS,
        max_age=settings.CORS_MAX_AGE,
    )

    logger.info(
        "CORS middleware configured",
        environment=settings.ENVIRONMENT.value,
        allow_origins=allowed_origins if len(allowed_origins) < 10 else f"{len(allowed_origins)} origins",
    )


def _get_allowed_origins() -> List[str]:
    configured = list(settings.CORS_ALLOWED_ORIGINS or [])

    if settings.ENVIRONMENT == Environment.DEVELOPMENT:
        if settings.CORS_ALLOW_ALL_ORIGINS:
            return ["*"]
        return configured + [origin for origin in DEV_ORIGINS if origin not in configured]

    if settings.ENVIRONMENT == Environment.PRODUCTION:
        if not configured:
            logger.warning("No CORS origins configured for production; cross-origin requests will be blocked")
            return []
        valid = [origin for origin in configured if is_valid_origin(origin)]
        for origin in set(configured) - set(valid):
            logger.warning("Invalid CORS origin skipped", origin=origin)
        return valid

    return configured or ["*"]


def is_valid_origin(origin: str) -> bool:
    if origin == "*":
        return True
    match = _ORIGIN.match(origin or "")
    if not match:
        return False
    port = match.group(1)
    return port is None or 1 <= int(port[1:]) <= 65535
