from .cors import configure_cors
from .logging import LoggingMiddleware
from .metrics import MetricsMiddleware
from .rate_limit import GlobalRateLimitMiddleware
from .security import SecurityHeadersMiddleware

__all__ = [
    "GlobalRateLimitMiddleware",
    "LoggingMiddleware",
    "MetricsMiddleware",
    "SecurityHeadersMiddleware",
    "configure_cors",
]
