"""
Tests for src/utils/circuit_breaker.py - closed / open / half-open transitions.
"""
from unittest.mock import AsyncMock, patch

import pytest

from src.utils.circuit_breaker import (
    STATE_CLOSED,
    STATE_HALF_OPEN,
    STATE_OPEN,
    CircuitBreaker,
    get_breaker,
)
from src.utils.errors import CircuitOpenError, PermanentProcessingFailure


class UpstreamDown(Exception):
    pass


async def _fail():
    raise UpstreamDown("503")


async def _ok():
    return "ok"


@pytest.fixture
def breaker(fake_redis):
    return CircuitBreaker("test_upstream", failure_threshold=3, window_seconds=60, cooldown_seconds=30)


@pytest.fixture(autouse=True)
def quiet_alerts():
    with patch("src.utils.alerting.send_alert", new_callable=AsyncMock) as mock:
        yield mock


class TestClosedState:
    async def test_success_passes_through(self, breaker):
        assert await breaker.call(_ok) == "ok"
        assert await breaker.state() == STATE_CLOSED

    async def test_failures_below_threshold_stay_closed(self, breaker):
        for _ in range(2):
            with pytest.raises(UpstreamDown):
                await breaker.call(_fail)
        assert await breaker.state() == STATE_CLOSED

    async def test_success_resets_failure_count(self, breaker, fake_redis):
        for _ in range(2):
            with pytest.raises(UpstreamDown):
                await breaker.call(_fail)
        await breaker.call(_ok)
        assert await fake_redis.get("agentpulse:circuit:test_upstream:failures") is None

    async def test_permanent_failure_is_not_counted(self, breaker):
        async def _gone():
            raise PermanentProcessingFailure("404")

        for _ in range(5):
            with pytest.raises(PermanentProcessingFailure):
                await breaker.call(_gone)
        assert await breaker.state() == STATE_CLOSED


class TestOpenState:
    async def test_threshold_opens_circuit_and_alerts(self, breaker, quiet_alerts):
        for _ in range(3):
            with pytest.raises(UpstreamDown):
                await breaker.call(_fail)

        assert await breaker.state() == STATE_OPEN
        quiet_alerts.assert_awaited_once()

    async def test_open_circuit_fails_fast_without_calling(self, breaker):
        for _ in range(3):
            with pytest.raises(UpstreamDown):
                await breaker.call(_fail)

        func = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(func)

        func.assert_not_awaited()
        assert exc_info.value.retry_after is not None
        assert exc_info.value.retry_after <= 30


class TestHalfOpenState:
    async def _trip_and_cool(self, breaker, fake_redis):
        for _ in range(3):
            with pytest.raises(UpstreamDown):
                await breaker.call(_fail)
        # Cooldown elapsed
        await fake_redis.delete("agentpulse:circuit:test_upstream:open")

    async def test_cooldown_elapsed_is_half_open(self, breaker, fake_redis):
        await self._trip_and_cool(breaker, fake_redis)
        assert await breaker.state() == STATE_HALF_OPEN

    async def test_successful_probe_closes(self, breaker, fake_redis):
        await self._trip_and_cool(breaker, fake_redis)
        assert await breaker.call(_ok) == "ok"
        assert await breaker.state() == STATE_CLOSED

    async def test_failed_probe_reopens(self, breaker, fake_redis):
        await self._trip_and_cool(breaker, fake_redis)
        with pytest.raises(UpstreamDown):
            await breaker.call(_fail)
        assert await breaker.state() == STATE_OPEN

    async def test_only_one_probe_at_a_time(self, breaker, fake_redis):
        await self._trip_and_cool(breaker, fake_redis)
        await fake_redis.set("agentpulse:circuit:test_upstream:probe", "1", nx=True, ex=30)

        func = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError):
            await breaker.call(func)
        func.assert_not_awaited()


class TestRedisUnavailable:
    async def test_redis_down_calls_through(self):
        breaker = CircuitBreaker("no_redis")
        with patch(
            "src.utils.dedup.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("Redis down"),
        ):
            assert await breaker.call(_ok) == "ok"


class TestGetBreaker:
    def test_same_instance_per_name(self):
        assert get_breaker("github_api") is get_breaker("github_api")

    def test_configured_from_settings(self):
        breaker = get_breaker("some_other_upstream")
        assert breaker.failure_threshold >= 1
        assert breaker.cooldown_seconds >= 1
