import pytest

from querysafe.services.connections.health import HealthMonitor, HealthStatus
from tests.conftest import FakeAdapterFactory, FakeDriverError, make_config


@pytest.fixture
def adapter():
    return FakeAdapterFactory()(make_config())


class TestHealthCheck:
    async def test_successful_check(self, adapter):
        monitor = HealthMonitor()

        health = await monitor.check("conn-1", adapter)

        assert health.status == HealthStatus.HEALTHY
        assert health.total_checks == 1
        assert health.successful_checks == 1
        assert health.consecutive_successes == 1
        assert health.uptime_percent == 100.0
        assert monitor.get("conn-1") is health

    async def test_failed_ping_is_down_with_safe_reason(self, adapter):
        adapter.behavior.ping_error = FakeDriverError("FATAL: password authentication failed for user bob", code="08006")
        monitor = HealthMonitor()

        health = await monitor.check("conn-1", adapter)

        assert health.status == HealthStatus.DOWN
        assert health.consecutive_failures == 1
        assert health.last_error == "Database connection failed"
        assert "bob" not in health.to_dict()["lastError"]

    async def test_slow_ping_times_out(self, adapter):
        adapter.behavior.ping_delay = 0.5
        monitor = HealthMonitor(check_timeout=0.05)

        health = await monitor.check("conn-1", adapter)

        assert health.status == HealthStatus.DOWN
        assert health.last_error == "Health check timeout"

    def test_latency_classification(self):
        monitor = HealthMonitor(healthy_latency_ms=1000, degraded_latency_ms=3000)

        assert monitor.classify_latency(999) == HealthStatus.HEALTHY
        assert monitor.classify_latency(1000) == HealthStatus.DEGRADED
        assert monitor.classify_latency(2999) == HealthStatus.DEGRADED
        assert monitor.classify_latency(3000) == HealthStatus.DOWN


class TestUptime:
    async def _run(self, monitor, adapter, outcomes):
        health = None
        for succeeds in outcomes:
            adapter.behavior.ping_error = None if succeeds else FakeDriverError("gone", code="08006")
            health = await monitor.check("conn-1", adapter)
        return health

    async def test_lifetime_uptime(self, adapter):
        health = await self._run(HealthMonitor(), adapter, [True, False, False])

        assert health.total_checks == 3
        assert health.successful_checks == 1
        assert health.uptime_percent == pytest.approx(33.33, abs=0.01)
        assert health.consecutive_failures == 2

    async def test_windowed_uptime(self, adapter):
        health = await self._run(HealthMonitor(uptime_window=2), adapter, [True, False, False])

        assert health.uptime_percent == 0.0
        assert health.total_checks == 3

    async def test_success_resets_failure_streak(self, adapter):
        health = await self._run(HealthMonitor(), adapter, [False, False, True])

        assert health.consecutive_failures == 0
        assert health.consecutive_successes == 1

    async def test_three_failures_after_a_success(self, adapter):
        health = await self._run(HealthMonitor(), adapter, [True, False, False, False])

        assert health.status == HealthStatus.DOWN
        assert health.consecutive_failures == 3
        assert health.consecutive_successes == 0
        assert health.uptime_percent == 25.0


class TestFreshness:
    async def test_is_healthy_respects_max_age(self, adapter, clock):
        monitor = HealthMonitor(clock=clock)
        await monitor.check("conn-1", adapter)

        assert monitor.is_healthy("conn-1", max_age=60)
        clock.advance(61)
        assert not monitor.is_healthy("conn-1", max_age=60)

    async def test_needs_check(self, adapter, clock):
        monitor = HealthMonitor(clock=clock)

        assert monitor.needs_check("conn-1", 60)
        await monitor.check("conn-1", adapter)
        assert not monitor.needs_check("conn-1", 60)
        clock.advance(61)
        assert monitor.needs_check("conn-1", 60)

    async def test_clear_forgets_record(self, adapter):
        monitor = HealthMonitor()
        await monitor.check("conn-1", adapter)

        monitor.clear("conn-1")

        assert monitor.get("conn-1") is None
        assert not monitor.is_healthy("conn-1")

    async def test_get_all_returns_a_snapshot(self, adapter):
        monitor = HealthMonitor()
        await monitor.check("conn-1", adapter)
        await monitor.check("conn-2", adapter)

        snapshot = monitor.get_all()
        monitor.clear("conn-1")

        assert sorted(snapshot) == ["conn-1", "conn-2"]
        assert list(monitor.get_all()) == ["conn-2"]
