import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from querysafe.logging import get_correlation_id, get_logger, get_trace_id, set_correlation_id

logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging with correlation IDs.

    Only the path is logged; query strings and bodies may carry SQL or
    credentials and stay out of the access log.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        correlation_id = request.headers.get("X-Correlation-ID")
        if correlation_id:
            set_correlation_id(correlation_id)
        else:
            correlation_id = get_correlation_id()
        request.state.correlation_id = correlation_id

        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
            user_agent=request.headers.get("User-Agent") or "unknown",
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                process_time=round((time.time() - start_time) * 1000, 2),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=round((time.time() - start_time) * 1000, 2),
        )

        response.headers["X-Correlation-ID"] = correlation_id
        trace_id = get_trace_id()
        if trace_id:
            response.headers["X-Trace-ID"] = trace_id

        return response
