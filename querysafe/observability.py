import asyncio
import sys
from functools import wraps
from typing import Any, Dict, List, Optional

from opentelemetry import trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.metrics import set_meter_provider
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter, SpanExportResult
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from prometheus_client import start_http_server

from querysafe.config import Environment, settings

logger = None


def _get_logger():
    """Get logger instance, avoiding circular import."""
    global logger
    if logger is None:
        from querysafe.logging import get_logger

        logger = get_logger(__name__)
    return logger


tracer: Optional[trace.Tracer] = None
_trace_provider: Optional[TracerProvider] = None
_span_processors: List[BatchSpanProcessor] = []
_meter_provider: Optional[MeterProvider] = None
_logger_provider: Optional[LoggerProvider] = None
_log_processors: List[BatchLogRecordProcessor] = []
_logging_handler: Optional[LoggingHandler] = None


class ConsoleSpanExporter(SpanExporter):
    """Development span exporter printing one line per span; tolerant of a closed stdout."""

    def __init__(self):
        self._shutdown = False

    def export(self, spans) -> SpanExportResult:
        if self._shutdown:
            return SpanExportResult.FAILURE

        try:
            for span in spans:
                ctx = span.get_span_context()
                duration_ms = (span.end_time - span.start_time) / 1e6 if span.end_time else None
                sys.stdout.write(f"Span: {span.name} trace={ctx.trace_id:032x} span={ctx.span_id:016x} ms={duration_ms}\n")
            sys.stdout.flush()
            return SpanExportResult.SUCCESS
        except (ValueError, OSError) as e:
            _get_logger().debug("Console exporter I/O error", error=str(e))
            return SpanExportResult.FAILURE

    def shutdown(self) -> None:
        self._shutdown = True

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return not self._shutdown


def create_resource() -> Resource:
    return Resource.create(
        {
            "service.name": settings.OTEL_SERVICE_NAME,
            "service.version": settings.OTEL_SERVICE_VERSION,
            "service.environment": settings.ENVIRONMENT.value,
        }
    )


def setup_tracing() -> None:
    """Configure OpenTelemetry tracing; OTLP when Jaeger is enabled, console in development."""
    global tracer, _trace_provider

    provider = TracerProvider(resource=create_resource(), sampler=TraceIdRatioBased(rate=settings.TRACE_SAMPLING_RATE))
    _trace_provider = provider

    if settings.JAEGER_ENABLED:
        otlp_endpoint = f"http://{settings.JAEGER_AGENT_HOST}:4317"
        processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        provider.add_span_processor(processor)
        _span_processors.append(processor)
        _get_logger().info("OTLP gRPC trace exporter configured", endpoint=otlp_endpoint)

    if not _span_processors and settings.ENVIRONMENT == Environment.DEVELOPMENT:
        processor = BatchSpanProcessor(
            ConsoleSpanExporter(),
            export_timeout_millis=1000,
            max_export_batch_size=64,
            schedule_delay_millis=500,
        )
        provider.add_span_processor(processor)
        _span_processors.append(processor)
        _get_logger().info("Console trace exporter configured for development")

    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)
    _get_logger().info(
        "OpenTelemetry tracing configured",
        sampling_rate=settings.TRACE_SAMPLING_RATE,
        exporters_count=len(_span_processors),
    )


def setup_metrics() -> None:
    """Expose OpenTelemetry metrics through the Prometheus reader on METRICS_PORT."""
    global _meter_provider

    if not settings.ENABLE_METRICS:
        return

    provider = MeterProvider(resource=create_resource(), metric_readers=[PrometheusMetricReader()])
    set_meter_provider(provider)
    _meter_provider = provider

    try:
        start_http_server(settings.METRICS_PORT)
        _get_logger().info("Prometheus metrics server started", port=settings.METRICS_PORT)
    except OSError as e:
        _get_logger().error("Failed to start Prometheus metrics server", error=str(e))


def setup_logging() -> None:
    global _logger_provider, _logging_handler

    if not (settings.JAEGER_LOGS_ENABLED and settings.JAEGER_ENABLED):
        return

    provider = LoggerProvider(resource=create_resource())
    set_logger_provider(provider)
    _logger_provider = provider

    otlp_endpoint = f"http://{settings.JAEGER_AGENT_HOST}:4317"
    processor = BatchLogRecordProcessor(OTLPLogExporter(endpoint=otlp_endpoint, insecure=True))
    provider.add_log_record_processor(processor)
    _log_processors.append(processor)

    _logging_handler = LoggingHandler(logger_provider=provider)
    _get_logger().info("OpenTelemetry logging configured", endpoint=otlp_endpoint)


def get_logging_handler() -> Optional[LoggingHandler]:
    return _logging_handler


def instrument_app(app: Any) -> None:
    """Instrument the FastAPI app and the Redis client used by rate limiting and caches."""
    try:
        FastAPIInstrumentor.instrument_app(
            app,
            tracer_provider=trace.get_tracer_provider(),
            excluded_urls="/health,/metrics",
        )
        RedisInstrumentor().instrument()
        _get_logger().info("FastAPI and Redis instrumentation enabled")
    except Exception as e:
        _get_logger().error("Failed to instrument application", error=str(e))


def get_tracer() -> trace.Tracer:
    return tracer or trace.get_tracer(__name__)


def _add_trace_attributes(span, attributes: Optional[Dict[str, Any]], args, kwargs):
    for key, value in (attributes or {}).items():
        span.set_attribute(key, value)
    if args:
        span.set_attribute("function.args_count", len(args))
    if kwargs:
        span.set_attribute("function.kwargs_count", len(kwargs))


def trace_function(name: Optional[str] = None, attributes: Optional[Dict[str, Any]] = None):
    """Decorator wrapping a sync or async callable in a span."""

    def decorator(func):
        span_name = name or f"{func.__module__}.{func.__name__}"

        if asyncio.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with get_tracer().start_as_current_span(span_name) as span:
                    _add_trace_attributes(span, attributes, args, kwargs)
                    try:
                        result = await func(*args, **kwargs)
                        span.set_attribute("function.success", True)
                        return result
                    except Exception as e:
                        span.set_attribute("function.success", False)
                        span.set_attribute("function.error", type(e).__name__)
                        raise

            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with get_tracer().start_as_current_span(span_name) as span:
                _add_trace_attributes(span, attributes, args, kwargs)
                try:
                    result = func(*args, **kwargs)
                    span.set_attribute("function.success", True)
                    return result
                except Exception as e:
                    span.set_attribute("function.success", False)
                    span.set_attribute("function.error", type(e).__name__)
                    raise

        return sync_wrapper

    return decorator


def shutdown_observability() -> None:
    """Flush and shut down span and log processors."""
    global _trace_provider, _meter_provider, _logger_provider, _logging_handler

    _get_logger().info("Shutting down observability components")

    for processor in [*_log_processors, *_span_processors]:
        try:
            processor.force_flush(timeout_millis=1000)
            processor.shutdown()
        except Exception as e:
            _get_logger().warning("Error shutting down processor", error=str(e))

    _log_processors.clear()
    _span_processors.clear()
    _trace_provider = None
    _meter_provider = None
    _logger_provider = None
    _logging_handler = None


def init_observability() -> None:
    try:
        setup_tracing()
        setup_logging()
        setup_metrics()
        _get_logger().info("Observability initialized")
    except Exception as e:
        # Observability failures never block startup
        _get_logger().error("Failed to initialize observability", error=str(e))
