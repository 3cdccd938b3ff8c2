"""Connection service.

Validates, tests, stores and activates user connections, and keeps the
adapter cache consistent with the stored records: every change that can
affect a live adapter invalidates it before returning.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from opentelemetry import trace
from pydantic import SecretStr

from querysafe.cache.schema_cache import SchemaCache
from querysafe.data_connectors.base import BaseConnector
from querysafe.data_connectors.factory import create_connector
from querysafe.data_connectors.policy import resolve_policy
from querysafe.data_connectors.types import ConnectionConfig, DatabaseType
from querysafe.exceptions.base import NotFoundError, ValidationError
from querysafe.exceptions.connector import ConnectionTimeoutError, InvalidCredentialsError
from querysafe.exceptions.pipeline import RateLimitExceededError
from querysafe.logging import get_logger
from querysafe.security.encryption import CredentialCipher, get_cipher
from querysafe.services.connections.health import HealthMonitor, HealthStatus
from querysafe.services.connections.lifecycle import AdapterFactory, AdapterLifecycleManager
from querysafe.services.connections.retry import RetryConfig, with_retry
from querysafe.services.connections.store import ConnectionRecord, ConnectionStore
from querysafe.services.ratelimit.rate_limiter import RateLimiter, RateLimitResult

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

CACHE_CLEARED_MESSAGE = "Connection cache cleared successfully"
RELIABLE_MIN_ATTEMPTS = 5
RELIABLE_MIN_SUCCESS_RATE = 90.0


def validate_config(data: Dict[str, Any]) -> List[str]:
    """Field-level problems with a connection config; empty when valid."""
    errors: List[str] = []

    if not str(data.get("name") or "").strip():
        errors.append("Connection name is required")

    db_type = data.get("db_type")
    if not db_type:
        errors.append("Database type is required")
        return errors
    try:
        db_type = DatabaseType(db_type)
    except ValueError:
        errors.append("Invalid database type")
        return errors

    if db_type == DatabaseType.SQLITE:
        if not str(data.get("database") or "").strip():
            errors.append("Database file path is required for SQLite")
        return errors

    if not str(data.get("host") or "").strip():
        errors.append("Host is required")

    port = data.get("port")
    try:
        port_number = int(port) if port is not None else None
    except (TypeError, ValueError):
        port_number = None
    if port_number is None or not 1 <= port_number <= 65535:
        errors.append("Valid port number is required (1-65535)")

    if not str(data.get("database") or "").strip():
        errors.append("Database name is required")
    if not str(data.get("username") or "").strip():
        errors.append("Username is required")
    if not data.get("password"):
        errors.append("Password is required")

    return errors


def _error_text(error: BaseException) -> str:
    parts = []
    current: Optional[BaseException] = error
    while current is not None:
        parts.append(f"{type(current).__name__} {current}")
        current = current.__cause__
    return " ".join(parts).lower()


def friendly_connection_error(error: BaseException, db_type: DatabaseType) -> str:
    """Map a failed connection attempt to a message safe to show the user."""
    text = _error_text(error)
    if isinstance(error, InvalidCredentialsError) or any(
        marker in text for marker in ("sasl", "scram", "authentication", "access denied", "login failed", "password")
    ):
        return "Authentication failed. Please check your username and password."
    if db_type == DatabaseType.SQLITE and ("unable to open" in text or "no such file" in text or "open" in text):
        return "SQLite file not found or cannot be opened. Please check the file path."
    if any(
        marker in text
        for marker in ("enotfound", "name or service not known", "nodename nor servname", "getaddrinfo", "unknown host")
    ):
        return "Host not found. Please check the hostname and ensure it's accessible."
    if "refused" in text:
        return "Connection refused. Please check the host and port are correct."
    if isinstance(error, ConnectionTimeoutError) or "timeout" in text or "timed out" in text:
        return "Connection timeout. The database server may be unreachable or slow to respond."
    return "Connection failed. Please check your connection settings."


@dataclass
class ConnectionAttemptMetrics:
    connection_id: str
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    total_latency_ms: float = 0.0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.total_attempts if self.total_attempts else 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_attempts / self.total_attempts * 100 if self.total_attempts else 0.0

    @property
    def reliable(self) -> bool:
        return self.total_attempts >= RELIABLE_MIN_ATTEMPTS and self.success_rate >= RELIABLE_MIN_SUCCESS_RATE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "totalAttempts": self.total_attempts,
            "successfulAttempts": self.successful_attempts,
            "failedAttempts": self.failed_attempts,
            "averageLatencyMs": round(self.average_latency_ms, 2),
            "successRate": round(self.success_rate, 2),
            "reliable": self.reliable,
            "lastAttemptAt": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "lastError": self.last_error,
        }


class ConnectionMetricsTracker:
    def __init__(self) -> None:
        self._metrics: Dict[str, ConnectionAttemptMetrics] = {}

    def record(self, connection_id: str, success: bool, latency_ms: float, error: Optional[str] = None) -> None:
        metrics = self._metrics.setdefault(connection_id, ConnectionAttemptMetrics(connection_id=connection_id))
        metrics.total_attempts += 1
        metrics.total_latency_ms += latency_ms
        metrics.last_attempt_at = datetime.now(timezone.utc)
        if success:
            metrics.successful_attempts += 1
            metrics.last_error = None
        else:
            metrics.failed_attempts += 1
            metrics.last_error = error

    def get(self, connection_id: str) -> Optional[ConnectionAttemptMetrics]:
        return self._metrics.get(connection_id)

    def clear(self, connection_id: Optional[str] = None) -> None:
        if connection_id is None:
            self._metrics.clear()
        else:
            self._metrics.pop(connection_id, None)


@dataclass
class ConnectionTestResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    latency_ms: float = 0.0
    rate_limit: Optional[RateLimitResult] = None
    provider: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class ConnectionService:
    """Connection CRUD, testing and health reporting for one application."""

    def __init__(
        self,
        store: ConnectionStore,
        lifecycle: AdapterLifecycleManager,
        health_monitor: HealthMonitor,
        rate_limiter: RateLimiter,
        schema_cache: Optional[SchemaCache] = None,
        cipher: Optional[CredentialCipher] = None,
        adapter_factory: AdapterFactory = create_connector,
        metrics_tracker: Optional[ConnectionMetricsTracker] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.health_monitor = health_monitor
        self.rate_limiter = rate_limiter
        self.schema_cache = schema_cache
        self._cipher = cipher
        self._adapter_factory = adapter_factory
        self.metrics_tracker = metrics_tracker or ConnectionMetricsTracker()
        self.retry_config = retry_config or RetryConfig.for_connection_test()

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    def build_config(self, record: ConnectionRecord) -> ConnectionConfig:
        """Decrypt a stored record into an in-memory connection config.

        Raises:
            CredentialDecryptionError: If the stored password token is corrupt

        """
        password = self.cipher.decrypt(record.password_encrypted) if record.password_encrypted else None
        return ConnectionConfig(
            id=record.id,
            db_type=record.db_type,
            name=record.name,
            host=record.host,
            port=record.port,
            database=record.database,
            username=record.username,
            password=SecretStr(password) if password is not None else None,
            ssl=record.ssl,
        )

    async def load_config(self, user_id: str, connection_id: str) -> Optional[ConnectionConfig]:
        """Config loader handed to the adapter lifecycle manager."""
        record = await self.store.get(user_id, connection_id)
        if record is None:
            return None
        return self.build_config(record)

    async def list_connections(self, user_id: str) -> List[ConnectionRecord]:
        return await self.store.list_connections(user_id)

    async def get_active_connection(self, user_id: str) -> Optional[ConnectionRecord]:
        return await self.store.get_active(user_id)

    async def _require(self, user_id: str, connection_id: str) -> ConnectionRecord:
        record = await self.store.get(user_id, connection_id)
        if record is None:
            raise NotFoundError("Connection not found", resource_type="connection", resource_id=connection_id)
        return record

    async def create_connection(self, user_id: str, data: Dict[str, Any]) -> ConnectionRecord:
        """Validate and store a new connection with its password encrypted.

        Raises:
            ValidationError: If required fields are missing or invalid

        """
        errors = validate_config(data)
        if errors:
            raise ValidationError("Invalid connection configuration", errors=errors)

        payload = self._storable(data)
        record = await self.store.create(user_id, payload)
        logger.info(
            "Connection created",
            user_id=user_id,
            connection_id=record.id,
            db_type=record.db_type.value,
        )
        return record

    def _storable(self, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = {key: value for key, value in data.items() if key != "password"}
        if payload.get("port") is not None:
            payload["port"] = int(payload["port"])
        password = data.get("password")
        if password:
            payload["password_encrypted"] = self.cipher.encrypt(str(password))
        return payload

    async def test_connection(self, user_id: str, data: Dict[str, Any]) -> ConnectionTestResult:
        """Try a config with a throw-away adapter.

        Raises:
            RateLimitExceededError: If the connection-test tier is exhausted
            ValidationError: If the config is incomplete

        """
        rate_limit = await self.rate_limiter.check_connection_test(user_id)
        if not rate_limit.success:
            raise RateLimitExceededError(
                rate_limit.message or "Rate limit exceeded for connection testing",
                retry_after=rate_limit.retry_after or 1,
                headers=rate_limit.headers(),
            )

        data = {"name": "Test Connection", **data}
        errors = validate_config(data)
        if errors:
            raise ValidationError("Invalid connection configuration", errors=errors)

        db_type = DatabaseType(data["db_type"])
        config = ConnectionConfig(
            id=str(data.get("id") or f"test-{uuid4()}"),
            db_type=db_type,
            name=data.get("name"),
            host=data.get("host"),
            port=int(data["port"]) if data.get("port") is not None else None,
            database=data["database"],
            username=data.get("username"),
            password=SecretStr(str(data["password"])) if data.get("password") else None,
            ssl=data.get("ssl"),
        )

        async def attempt() -> BaseConnector:
            adapter = self._adapter_factory(config)
            try:
                await adapter.test_connection()
            finally:
                await adapter.close_pool()
            return adapter

        with tracer.start_as_current_span(
            "connections.test", attributes={"db_type": db_type.value}
        ) as span:
            start = time.perf_counter()
            result = await with_retry(attempt, self.retry_config)
            latency_ms = (time.perf_counter() - start) * 1000
            span.set_attribute("connection.success", result.success)
            span.set_attribute("connection.attempts", result.attempts)

        if result.success and result.data is not None:
            self.metrics_tracker.record(config.id, True, latency_ms)
            logger.info(
                "Connection test succeeded",
                user_id=user_id,
                db_type=db_type.value,
                provider=result.data.policy.provider,
                attempts=result.attempts,
            )
            return ConnectionTestResult(
                success=True,
                message=f"Connection successful to {config.database}",
                attempts=result.attempts,
                latency_ms=round(latency_ms, 2),
                rate_limit=rate_limit,
                provider=result.data.policy.provider,
            )

        error = result.error or RuntimeError("Connection test failed")
        message = friendly_connection_error(error, db_type)
        self.metrics_tracker.record(config.id, False, latency_ms, message)
        logger.warning(
            "Connection test failed",
            user_id=user_id,
            db_type=db_type.value,
            attempts=result.attempts,
            error_type=type(error).__name__,
            error=str(error),
        )
        return ConnectionTestResult(
            success=False,
            error=message,
            attempts=result.attempts,
            latency_ms=round(latency_ms, 2),
            rate_limit=rate_limit,
        )

    async def _forget(self, user_id: str, connection_id: str) -> None:
        await self.lifecycle.invalidate(user_id, connection_id)
        if self.schema_cache is not None:
            await self.schema_cache.delete(connection_id)

    async def activate(self, user_id: str, connection_id: str) -> ConnectionRecord:
        previous = await self.store.get_active(user_id)
        record = await self.store.set_active(user_id, connection_id)
        if previous is not None and previous.id != connection_id:
            await self.lifecycle.invalidate(user_id, previous.id)
        await self.lifecycle.invalidate(user_id, connection_id)
        logger.info("Connection activated", user_id=user_id, connection_id=connection_id)
        return record

    async def update(self, user_id: str, connection_id: str, changes: Dict[str, Any]) -> ConnectionRecord:
        """Apply changes and drop any adapter built from the old settings.

        Raises:
            NotFoundError: If the connection does not belong to the user
            ValidationError: If the merged config is invalid

        """
        current = await self._require(user_id, connection_id)
        merged = {**current.model_dump(), **changes}
        if not changes.get("password"):
            # Stored password carries over; only its presence is validated
            merged["password"] = "stored" if current.password_encrypted else None
        errors = validate_config(merged)
        if errors:
            raise ValidationError("Invalid connection configuration", errors=errors)

        record = await self.store.update(user_id, connection_id, self._storable(changes))
        await self._forget(user_id, connection_id)
        self.health_monitor.clear(connection_id)
        logger.info("Connection updated", user_id=user_id, connection_id=connection_id, fields=sorted(changes))
        return record

    async def delete(self, user_id: str, connection_id: str) -> None:
        deleted = await self.store.delete(user_id, connection_id)
        if not deleted:
            raise NotFoundError("Connection not found", resource_type="connection", resource_id=connection_id)
        await self._forget(user_id, connection_id)
        self.metrics_tracker.clear(connection_id)
        logger.info("Connection deleted", user_id=user_id, connection_id=connection_id)

    async def clear_cache(self, user_id: str) -> Dict[str, Any]:
        evicted = await self.lifecycle.invalidate_user(user_id)
        logger.info("Connection cache cleared", user_id=user_id, evicted=evicted)
        return {"message": CACHE_CLEARED_MESSAGE, "evicted": evicted}

    async def health(self, user_id: str) -> List[Dict[str, Any]]:
        records = await self.store.list_connections(user_id)
        report = []
        for record in records:
            health = self.health_monitor.get(record.id)
            entry = (
                health.to_dict()
                if health is not None
                else {"connectionId": record.id, "status": HealthStatus.UNKNOWN.value}
            )
            entry.update({"name": record.name, "dbType": record.db_type.value, "isActive": record.is_active})
            report.append(entry)
        return report

    async def metrics(self, user_id: str, connection_id: str) -> Dict[str, Any]:
        record = await self._require(user_id, connection_id)
        policy = resolve_policy(
            ConnectionConfig(
                id=record.id,
                db_type=record.db_type,
                host=record.host,
                port=record.port,
                database=record.database,
                ssl=record.ssl,
            )
        )
        attempts = self.metrics_tracker.get(connection_id)
        health = self.health_monitor.get(connection_id)
        return {
            "metrics": attempts.to_dict() if attempts else None,
            "health": health.to_dict() if health else None,
            "provider": policy.provider,
            "isCloud": policy.is_cloud,
            "connection": {
                "id": record.id,
                "name": record.name,
                "db_type": record.db_type.value,
                "host": record.host,
                "port": record.port,
            },
        }
