"""Metrics middleware for tracking HTTP request/response metrics."""

import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from querysafe.api.metrics import (
    http_exceptions_total,
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)

EXCLUDED_ENDPOINTS = {"/health", "/metrics", "/docs", "/redoc", "/openapi.json"}

_UUID = re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
_NUMERIC = re.compile(r"/\d+")


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_ENDPOINTS:
            return await call_next(request)

        endpoint = self._normalize_endpoint(request.url.path)
        method = request.method
        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()

        try:
            response = await call_next(request)
            http_requests_total.labels(method=method, endpoint=endpoint, status_code=response.status_code).inc()
            return response

        except Exception as exc:
            http_exceptions_total.labels(method=method, endpoint=endpoint, exception_type=type(exc).__name__).inc()
            raise

        finally:
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()

    @staticmethod
    def _normalize_endpoint(path: str) -> str:
        """Collapse ids so connection routes share one label.

        Examples:
            /api/v1/connections/123e4567-e89b-12d3-a456-426614174000/metrics -> /api/v1/connections/{id}/metrics

        """
        return _NUMERIC.sub("/{id}", _UUID.sub("/{id}", path))
