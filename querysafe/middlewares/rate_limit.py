from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from querysafe.exceptions.handlers import create_error_response
from querysafe.middlewares.metrics import EXCLUDED_ENDPOINTS


class GlobalRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP global tier, checked before any route runs.

    The limiter is read from ``app.state.rate_limiter``; without one the
    request passes through.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        limiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None or request.url.path in EXCLUDED_ENDPOINTS:
            return await call_next(request)

        forwarded = request.headers.get("X-Forwarded-For")
        ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else "unknown")

        result = await limiter.check_global(ip_address)
        if not result.success:
            return create_error_response(
                error_code="RATE_LIMITED",
                message=result.message or "Global rate limit exceeded",
                status_code=429,
                details={"retry_after": result.retry_after},
                headers=result.headers(),
            )
        return await call_next(request)
