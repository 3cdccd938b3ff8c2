"""HTTP API metrics for Prometheus monitoring."""

from prometheus_client import Counter, Gauge, Histogram

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently being processed",
    ["method", "endpoint"],
)

http_exceptions_total = Counter(
    "http_exceptions_total",
    "Total number of exceptions during HTTP request processing",
    ["method", "endpoint", "exception_type"],
)

api_requests_total = Counter(
    "api_requests_total",
    "Total API requests by resource, operation and outcome",
    ["resource", "operation", "status"],
)
