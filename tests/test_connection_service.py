import pytest

from querysafe.data_connectors.types import DatabaseType
from querysafe.exceptions import (
    ConnectionTimeoutError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitExceededError,
    ValidationError,
)
from querysafe.services.connections.manager import (
    CACHE_CLEARED_MESSAGE,
    ConnectionAttemptMetrics,
    friendly_connection_error,
    validate_config,
)
from querysafe.services.connections.retry import RetryConfig
from tests.conftest import POSTGRES_PAYLOAD, USER_ID


@pytest.fixture
def fast_retries(container):
    container.connections.retry_config = RetryConfig(max_retries=2, base_delay_ms=1, max_delay_ms=1, multiplier=1)
    return container


class TestValidateConfig:
    def test_complete_config_is_valid(self):
        assert validate_config(POSTGRES_PAYLOAD) == []

    def test_missing_fields(self):
        errors = validate_config({"db_type": "postgresql", "port": 70000})

        assert errors == [
            "Connection name is required",
            "Host is required",
            "Valid port number is required (1-65535)",
            "Database name is required",
            "Username is required",
            "Password is required",
        ]

    def test_sqlite_needs_only_a_path(self):
        assert validate_config({"name": "Local", "db_type": "sqlite", "database": "/data/app.db"}) == []
        assert validate_config({"name": "Local", "db_type": "sqlite"}) == ["Database file path is required for SQLite"]

    def test_unknown_type(self):
        assert validate_config({"name": "x", "db_type": "oracle"}) == ["Invalid database type"]


class TestCrud:
    async def test_password_is_stored_encrypted(self, container):
        record = await container.connections.create_connection(USER_ID, dict(POSTGRES_PAYLOAD))

        assert record.password_encrypted
        assert "s3cret-pw" not in record.password_encrypted
        assert "password_encrypted" not in record.public_dict()
        config = container.connections.build_config(record)
        assert config.password.get_secret_value() == "s3cret-pw"
        assert "s3cret-pw" not in repr(config)

    async def test_invalid_config_is_rejected(self, container):
        with pytest.raises(ValidationError) as exc_info:
            await container.connections.create_connection(USER_ID, {"name": "x", "db_type": "mysql"})

        assert "Host is required" in exc_info.value.details["errors"]

    async def test_activation_switches_adapter(self, container):
        first = await container.connections.create_connection(USER_ID, dict(POSTGRES_PAYLOAD))
        second = await container.connections.create_connection(USER_ID, {**POSTGRES_PAYLOAD, "name": "Replica"})
        await container.connections.activate(USER_ID, first.id)
        old_adapter = await container.lifecycle.acquire(USER_ID, first.id)

        await container.connections.activate(USER_ID, second.id)

        assert old_adapter.is_closed
        active = await container.connections.get_active_connection(USER_ID)
        assert active.id == second.id

    async def test_update_drops_adapter_built_from_old_settings(self, container, active_connection):
        adapter = await container.lifecycle.acquire(USER_ID, active_connection.id)

        updated = await container.connections.update(USER_ID, active_connection.id, {"database": "analytics"})

        assert updated.database == "analytics"
        assert updated.password_encrypted == active_connection.password_encrypted
        assert adapter.is_closed
        assert container.health_monitor.get(active_connection.id) is None

    async def test_update_rejects_invalid_merge(self, container, active_connection):
        with pytest.raises(ValidationError):
            await container.connections.update(USER_ID, active_connection.id, {"port": 0})

    async def test_delete(self, container, active_connection):
        adapter = await container.lifecycle.acquire(USER_ID, active_connection.id)

        await container.connections.delete(USER_ID, active_connection.id)

        assert adapter.is_closed
        assert await container.connections.list_connections(USER_ID) == []
        with pytest.raises(NotFoundError):
            await container.connections.delete(USER_ID, active_connection.id)

    async def test_clear_cache(self, container, active_connection):
        await container.lifecycle.acquire(USER_ID, active_connection.id)

        result = await container.connections.clear_cache(USER_ID)

        assert result == {"message": CACHE_CLEARED_MESSAGE, "evicted": 1}
        assert len(container.lifecycle) == 0


class TestConnectionTest:
    async def test_success(self, fast_retries, adapter_factory):
        result = await fast_retries.connections.test_connection(USER_ID, dict(POSTGRES_PAYLOAD))

        assert result.success
        assert result.message == "Connection successful to app"
        assert result.attempts == 1
        assert result.provider == "Local"
        assert all(adapter.is_closed for adapter in adapter_factory.created)

    async def test_bad_credentials_are_not_retried(self, fast_retries, adapter_factory):
        adapter_factory.behavior.create_error = InvalidCredentialsError()

        result = await fast_retries.connections.test_connection(USER_ID, dict(POSTGRES_PAYLOAD))

        assert not result.success
        assert result.attempts == 1
        assert result.error == "Authentication failed. Please check your username and password."

    async def test_transient_failures_are_retried(self, fast_retries, adapter_factory):
        adapter_factory.behavior.create_error = ConnectionRefusedError("[Errno 111] Connection refused")

        result = await fast_retries.connections.test_connection(USER_ID, dict(POSTGRES_PAYLOAD))

        assert not result.success
        assert result.attempts == 2
        assert result.error == "Connection refused. Please check the host and port are correct."
        assert len(adapter_factory.created) == 2

    async def test_incomplete_config(self, fast_retries):
        with pytest.raises(ValidationError):
            await fast_retries.connections.test_connection(USER_ID, {"db_type": "postgresql", "host": "db"})

    async def test_eleventh_test_is_rate_limited(self, fast_retries):
        for _ in range(10):
            await fast_retries.connections.test_connection(USER_ID, dict(POSTGRES_PAYLOAD))

        with pytest.raises(RateLimitExceededError) as exc_info:
            await fast_retries.connections.test_connection(USER_ID, dict(POSTGRES_PAYLOAD))

        assert exc_info.value.retry_after == 3600
        assert exc_info.value.headers["Retry-After"] == "3600"

    async def test_results_feed_connection_metrics(self, fast_retries, active_connection):
        await fast_retries.connections.test_connection(USER_ID, {**POSTGRES_PAYLOAD, "id": active_connection.id})

        report = await fast_retries.connections.metrics(USER_ID, active_connection.id)

        assert report["metrics"]["totalAttempts"] == 1
        assert report["metrics"]["successRate"] == 100.0
        assert report["provider"] == "Local"
        assert report["isCloud"] is False


class TestHealthReport:
    async def test_unchecked_connection_is_unknown(self, container, active_connection):
        [entry] = await container.connections.health(USER_ID)

        assert entry["status"] == "unknown"
        assert entry["isActive"] is True
        assert entry["dbType"] == "postgresql"

    async def test_checked_connection_reports_latency(self, container, active_connection):
        await container.lifecycle.acquire(USER_ID, active_connection.id)

        [entry] = await container.connections.health(USER_ID)

        assert entry["status"] == "healthy"
        assert entry["totalChecks"] == 1


class TestFriendlyErrors:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (InvalidCredentialsError(), "Authentication failed"),
            (OSError("[Errno -2] Name or service not known"), "Host not found"),
            (ConnectionRefusedError("Connection refused"), "Connection refused"),
            (ConnectionTimeoutError("Connecting timed out after 5 seconds"), "Connection timeout"),
            (RuntimeError("boom"), "Connection failed. Please check your connection settings."),
        ],
    )
    def test_mapping(self, error, expected):
        assert friendly_connection_error(error, DatabaseType.POSTGRESQL).startswith(expected)

    def test_cause_chain_is_inspected(self):
        try:
            try:
                raise OSError("password authentication failed for user app_user")
            except OSError as cause:
                raise RuntimeError("Failed to connect") from cause
        except RuntimeError as error:
            message = friendly_connection_error(error, DatabaseType.POSTGRESQL)

        assert message.startswith("Authentication failed")
        assert "app_user" not in message


class TestAttemptMetrics:
    def test_reliability(self):
        metrics = ConnectionAttemptMetrics("c", total_attempts=10, successful_attempts=9, failed_attempts=1, total_latency_ms=500)

        assert metrics.success_rate == 90.0
        assert metrics.average_latency_ms == 50.0
        assert metrics.reliable
