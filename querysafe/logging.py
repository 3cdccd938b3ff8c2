import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Optional

import structlog
import ujson
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from querysafe.config import Environment, settings
from querysafe.observability import get_logging_handler

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys whose values never reach a log line, whatever the caller passes
REDACTED_KEYS = frozenset({"password", "password_encrypted", "secret", "token", "api_key", "encryption_key", "dsn"})
REDACTED = "***"


def get_correlation_id() -> str:
    """Get or create a correlation ID for the current request context."""
    correlation_id = correlation_id_var.get()
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
        correlation_id_var.set(correlation_id)
    return correlation_id


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def add_correlation_id(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def add_service_info(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict["service"] = settings.OTEL_SERVICE_NAME
    event_dict["version"] = settings.OTEL_SERVICE_VERSION
    event_dict["environment"] = settings.ENVIRONMENT.value
    return event_dict


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: (REDACTED if str(k).lower() in REDACTED_KEYS else _redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


def redact_secrets(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credential-like keys, including inside nested ``extra`` dicts."""
    return _redact(event_dict)


def get_trace_id() -> Optional[str]:
    """Get the current trace ID from OpenTelemetry context."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.trace_id != trace.INVALID_TRACE_ID:
        return f"{span_context.trace_id:032x}"
    return None


def get_span_id() -> Optional[str]:
    span_context = trace.get_current_span().get_span_context()
    if span_context.span_id != trace.INVALID_SPAN_ID:
        return f"{span_context.span_id:016x}"
    return None


def add_trace_context(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    trace_id = get_trace_id()
    span_id = get_span_id()

    if trace_id:
        event_dict["trace_id"] = trace_id
    if span_id:
        event_dict["span_id"] = span_id

    return event_dict


def add_otel_logging(_logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Forward log entries to the OpenTelemetry logging handler when one is configured."""
    otel_handler = get_logging_handler()
    if not otel_handler:
        return event_dict

    level = logging.getLevelName(str(event_dict.get("level", method_name)).upper())
    record = logging.LogRecord(
        name=event_dict.get("logger", "structlog"),
        level=level if isinstance(level, int) else logging.INFO,
        pathname="",
        lineno=0,
        msg=event_dict.get("event", ""),
        args=(),
        exc_info=None,
    )
    for key, value in event_dict.items():
        if key not in ("event", "level", "logger", "timestamp"):
            setattr(record, key, value)

    try:
        otel_handler.emit(record)
    except (ValueError, OSError):
        # Exporter shut down underneath us; stdout logging still works
        pass

    return event_dict


def configure_logging() -> None:
    """Configure structured logging with structlog."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.value),
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
        add_trace_context,
        add_service_info,
        redact_secrets,
        add_otel_logging,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.LOG_FORMAT == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=settings.ENVIRONMENT == Environment.DEVELOPMENT)

    structlog.configure(
        processors=processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    otel_handler = get_logging_handler()
    if otel_handler:
        logging.getLogger().addHandler(otel_handler)

    if settings.ENVIRONMENT == Environment.PRODUCTION:
        for noisy in ("uvicorn", "uvicorn.access", "redis", "asyncpg", "aiomysql"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


class CentralizedLogger:
    """structlog logger that mirrors every event onto the active OpenTelemetry span."""

    def __init__(self, name: str = __name__):
        self.name = name
        self.logger = structlog.get_logger(name)

    def _log_with_trace(self, level: str, event: str, **kwargs):
        span = trace.get_current_span()
        if span.is_recording():
            attributes = {"level": level.upper(), "logger": self.name, "timestamp": int(time.time() * 1000)}
            for key, value in _redact(kwargs).items():
                if key != "exc_info":
                    attributes[key] = self._convert_to_safe_attribute(value)
            span.add_event(f"[{level.upper()}] {event}", attributes=attributes)
            if level in ("error", "critical"):
                span.set_status(Status(StatusCode.ERROR, event))

        getattr(self.logger, level)(event, **kwargs)

    @staticmethod
    def _convert_to_safe_attribute(value):
        if value is None:
            return "null"
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return str(value) if (value > 2**63 - 1 or value < -(2**63)) else value
        if isinstance(value, float):
            return value
        if isinstance(value, (dict, list, tuple)):
            return ujson.dumps(value, default=str)[:500]
        return str(value)[:500]

    def debug(self, event: str, **kwargs):
        self._log_with_trace("debug", event, **kwargs)

    def info(self, event: str, **kwargs):
        self._log_with_trace("info", event, **kwargs)

    def warning(self, event: str, **kwargs):
        self._log_with_trace("warning", event, **kwargs)

    warn = warning

    def error(self, event: str, **kwargs):
        self._log_with_trace("error", event, **kwargs)

    def critical(self, event: str, **kwargs):
        self._log_with_trace("critical", event, **kwargs)

    def exception(self, event: str, **kwargs):
        """Log at error level with the active exception attached to log and span."""
        kwargs["exc_info"] = True
        self._log_with_trace("error", event, **kwargs)

        span = trace.get_current_span()
        _, exc_value, _ = sys.exc_info()
        if exc_value and span.is_recording():
            span.record_exception(exc_value)

    def bind(self, **kwargs) -> "CentralizedLogger":
        bound = CentralizedLogger(self.name)
        bound.logger = self.logger.bind(**kwargs)
        return bound


def get_logger(name: str) -> CentralizedLogger:
    """Get a configured centralized logger instance."""
    return CentralizedLogger(name)
