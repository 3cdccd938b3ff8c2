from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from querysafe.config import Environment, settings

DOCS_PATHS = ("/docs", "/redoc", "/openapi.json")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers to every response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        if not settings.SECURITY_HEADERS_ENABLED:
            return response

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = settings.X_FRAME_OPTIONS
        response.headers["Referrer-Policy"] = settings.REFERRER_POLICY
        response.headers["X-Permitted-Cross-Domain-Policies"] = "none"
        # Query results are per-user data
        response.headers["Cache-Control"] = "no-store"

        if settings.ENVIRONMENT == Environment.PRODUCTION and settings.HSTS_ENABLED:
            hsts_value = f"max-age={settings.HSTS_MAX_AGE}"
            if settings.HSTS_INCLUDE_SUBDOMAINS:
                hsts_value += "; includeSubDomains"
            response.headers["Strict-Transport-Security"] = hsts_value

        if settings.CSP_ENABLED and settings.CONTENT_SECURITY_POLICY and not self._is_docs_endpoint(request.url.path):
            response.headers["Content-Security-Policy"] = settings.CONTENT_SECURITY_POLICY

        if settings.REMOVE_SERVER_HEADER and "Server" in response.headers:
            del response.headers["Server"]

        return response

    @staticmethod
    def _is_docs_endpoint(path: str) -> bool:
        return path in DOCS_PATHS or path.startswith("/docs/") or path.startswith("/redoc/")
