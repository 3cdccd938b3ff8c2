from enum import Enum
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "QuerySafe Service"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Environment = Environment.DEVELOPMENT
    DEBUG: bool = Field(default=True)

    # Server
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)

    # Query pipeline
    QUERY_MAX_ROWS: int = Field(default=1000, ge=1)
    QUERY_TIMEOUT_SECONDS: int = Field(default=30, ge=1)
    QUERY_MIN_TIMEOUT_SECONDS: int = Field(default=5, ge=1)
    MAX_SUBQUERY_DEPTH: int = Field(default=3)
    MAX_JOINS: int = Field(default=10)

    # Adapter lifecycle
    ADAPTER_CACHE_TTL_SECONDS: int = Field(default=1800)  # 30 minutes
    ADAPTER_IDLE_TIMEOUT_SECONDS: int = Field(default=600)  # 10 minutes
    ADAPTER_CACHE_MAX_SIZE: Optional[int] = Field(default=None)
    HEALTH_CHECK_INTERVAL_SECONDS: int = Field(default=60)
    HEALTH_CHECK_TIMEOUT_SECONDS: float = Field(default=5.0)
    HEALTH_HEALTHY_LATENCY_MS: float = Field(default=1000.0)
    HEALTH_DEGRADED_LATENCY_MS: float = Field(default=3000.0)
    HEALTH_UPTIME_WINDOW: Optional[int] = Field(default=None)  # None = lifetime ratio
    POOL_MIN_SIZE: int = Field(default=1)
    POOL_MAX_SIZE: int = Field(default=10)
    SQLSERVER_ODBC_DRIVER: str = Field(default="ODBC Driver 18 for SQL Server")

    # Connection retry
    CONNECT_MAX_RETRIES: int = Field(default=3)
    CONNECT_RETRY_BASE_DELAY_MS: int = Field(default=1000)
    CONNECT_RETRY_MAX_DELAY_MS: int = Field(default=10000)
    CONNECT_RETRY_MULTIPLIER: float = Field(default=2.0)

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_BACKEND: str = Field(default="redis")  # redis or memory
    RATE_LIMIT_GLOBAL_MIDDLEWARE: bool = Field(default=False)

    # Redis
    REDIS_URL: Optional[str] = Field(default=None)
    REDIS_MAX_CONNECTIONS: int = Field(default=50)
    REDIS_RETRY_ON_TIMEOUT: bool = Field(default=True)

    # Schema cache
    SCHEMA_CACHE_ENABLED: bool = Field(default=True)
    SCHEMA_CACHE_TTL: int = Field(default=86400)  # 24 hours

    # Credential encryption
    ENCRYPTION_KEY: str = Field(default="")  # 64 hex chars (32 bytes)

    # Connection store
    CONNECTION_STORE_BACKEND: str = Field(default="platform")  # platform or memory
    PLATFORM_SERVICE_URL: str = Field(default="http://localhost:8000/api/v1")
    PLATFORM_SERVICE_TIMEOUT: int = Field(default=30)  # seconds
    PLATFORM_SERVICE_RETRY_ATTEMPTS: int = Field(default=3)

    # Audit
    AUDIT_SINK: str = Field(default="log")  # log or redis
    AUDIT_STREAM_MAXLEN: int = Field(default=100000)

    # LLM
    PORTKEY_API_KEY: str = Field(default="")
    PORTKEY_VIRTUAL_KEY: str = Field(default="")
    LLM_MODEL: str = Field(default="gpt-4")
    LLM_TEMPERATURE: float = Field(default=0.0, ge=0.0, le=2.0)

    # Logging
    LOG_LEVEL: LogLevel = LogLevel.INFO
    LOG_FORMAT: str = Field(default="json")  # json or text

    # OpenTelemetry
    OTEL_SERVICE_NAME: str = Field(default="querysafe-service")
    OTEL_SERVICE_VERSION: str = Field(default="0.1.0")

    # Jaeger Configuration
    JAEGER_ENABLED: bool = Field(default=False)
    JAEGER_LOGS_ENABLED: bool = Field(default=False)
    JAEGER_AGENT_HOST: str = Field(default="localhost")
    TRACE_SAMPLING_RATE: float = Field(default=1.0, ge=0.0, le=1.0)

    # Prometheus
    METRICS_PORT: int = Field(default=8003)
    ENABLE_METRICS: bool = Field(default=True)

    # Security Headers
    SECURITY_HEADERS_ENABLED: bool = Field(default=True)
    X_FRAME_OPTIONS: str = Field(default="DENY")
    HSTS_ENABLED: bool = Field(default=True)
    HSTS_MAX_AGE: int = Field(default=31536000)  # 1 year
    HSTS_INCLUDE_SUBDOMAINS: bool = Field(default=True)
    REFERRER_POLICY: str = Field(default="strict-origin-when-cross-origin")
    CSP_ENABLED: bool = Field(default=True)
    CONTENT_SECURITY_POLICY: Optional[str] = Field(
        default=(
            "default-src 'self'; img-src 'self' data: https:; "
            "object-src 'none'; frame-ancestors 'none'; base-uri 'self';"
        )
    )
    REMOVE_SERVER_HEADER: bool = Field(default=True)

    # CORS Settings
    CORS_ALLOWED_ORIGINS: Optional[List[str]] = Field(default=None)
    CORS_ALLOW_ALL_ORIGINS: bool = Field(default=False)
    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)
    CORS_ALLOW_METHODS: List[str] = Field(default=["GET", "POST", "PUT", "DELETE", "OPTIONS"])
    CORS_ALLOW_HEADERS: List[str] = Field(default=["*"])
    CORS_EXPOSE_HEADERS: List[str] = Field(
        default=[
            "X-Correlation-ID",
            "X-Trace-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ]
    )
    CORS_MAX_AGE: int = Field(default=86400)  # 24 hours

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore")


settings = Settings()
