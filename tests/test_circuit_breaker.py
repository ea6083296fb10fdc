"""
Tests for the Circuit Breaker in front of the WMS transport
"""
import pytest
import asyncio

from wms_sync.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_wms_circuit_breaker,
)
from wms_sync.core.exceptions import CircuitBreakerOpenError, ClientError, ServerError


class TestCircuitBreaker:
    """Tests for circuit breaker functionality"""

    @pytest.fixture
    def config(self) -> CircuitBreakerConfig:
        """Create test configuration with fast timeouts"""
        return CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=2,
            timeout_seconds=0.1,  # Fast timeout for tests
            half_open_max_calls=2,
            ignored_exceptions=(ClientError,),
        )

    @pytest.fixture
    def breaker(self, config: CircuitBreakerConfig) -> CircuitBreaker:
        """Create circuit breaker for testing"""
        return CircuitBreaker("test-service", config)

    async def _open(self, breaker: CircuitBreaker) -> None:
        async def fail_func():
            raise ServerError("boom")

        for _ in range(3):
            with pytest.raises(ServerError):
                await breaker.execute(fail_func)

    @pytest.mark.unit
    async def test_initial_state_is_closed(self, breaker: CircuitBreaker):
        """Circuit should start in closed state"""
        assert breaker.is_closed
        assert not breaker.is_open
        assert not breaker.is_half_open

    @pytest.mark.unit
    async def test_successful_execution_keeps_closed(self, breaker: CircuitBreaker):
        async def success_func():
            return "success"

        result = await breaker.execute(success_func)

        assert result == "success"
        assert breaker.is_closed

    @pytest.mark.unit
    async def test_failures_open_circuit(self, breaker: CircuitBreaker):
        await self._open(breaker)
        assert breaker.is_open

    @pytest.mark.unit
    async def test_open_circuit_blocks_requests(self, breaker: CircuitBreaker):
        await self._open(breaker)

        async def success_func():
            return "success"

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(success_func)

        assert "test-service" in str(exc_info.value)
        assert exc_info.value.details["retry_after_seconds"] > 0

    @pytest.mark.unit
    async def test_ignored_exceptions_do_not_count(self, breaker: CircuitBreaker):
        """4xx מה-WMS אומר שהשרת חי - לא נספר ככשל"""
        async def rejected():
            raise ClientError("invalid address")

        for _ in range(5):
            with pytest.raises(ClientError):
                await breaker.execute(rejected)

        assert breaker.is_closed
        assert breaker.snapshot()["failure_count"] == 0

    @pytest.mark.unit
    async def test_circuit_transitions_to_half_open(self, breaker: CircuitBreaker):
        await self._open(breaker)
        assert breaker.is_open

        await asyncio.sleep(0.15)

        assert breaker.can_execute()
        assert breaker.is_half_open

    @pytest.mark.unit
    async def test_half_open_success_closes_circuit(self, breaker: CircuitBreaker):
        async def success_func():
            return "success"

        await self._open(breaker)
        await asyncio.sleep(0.15)

        for _ in range(2):
            assert await breaker.execute(success_func) == "success"

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_half_open_failure_reopens_circuit(self, breaker: CircuitBreaker):
        async def fail_func():
            raise ServerError("still down")

        await self._open(breaker)
        await asyncio.sleep(0.15)

        with pytest.raises(ServerError):
            await breaker.execute(fail_func)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_snapshot(self, breaker: CircuitBreaker):
        await self._open(breaker)

        snapshot = breaker.snapshot()

        assert snapshot["service"] == "test-service"
        assert snapshot["state"] == CircuitState.OPEN.value
        assert snapshot["failure_count"] == 3
        assert 0 < snapshot["retry_after_seconds"] <= 0.1

    @pytest.mark.unit
    async def test_singleton_pattern(self):
        """Should return same instance for same service"""
        cb1 = CircuitBreaker.get_instance("singleton-test", CircuitBreakerConfig())
        cb2 = CircuitBreaker.get_instance("singleton-test")

        assert cb1 is cb2

    @pytest.mark.unit
    def test_wms_breaker_is_shared(self):
        assert get_wms_circuit_breaker() is get_wms_circuit_breaker()
        assert ClientError in get_wms_circuit_breaker().config.ignored_exceptions
