"""Unit tests for CircuitBreaker and CircuitBreakerRegistry."""

import pytest

from src.workflow.capabilities.models import FailureClass, StageResult
from src.workflow.recovery.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)

from workflow_fakes import FakeClock


TRANSIENT = StageResult.transient("upstream 503")
SUCCESS = StageResult.success()


@pytest.fixture
def clock():
    return FakeClock(start=0.0)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        "resolver",
        CircuitBreakerConfig(failure_threshold=3, open_duration_seconds=60, failure_window_seconds=300),
        clock=clock,
    )


def _fail(breaker, times):
    for _ in range(times):
        assert breaker.allow()
        breaker.record(TRANSIENT)


class TestClosed:
    def test_starts_closed_and_allows_calls(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow()

    def test_opens_after_threshold_consecutive_failures(self, breaker):
        _fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        _fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.allow() is False

    def test_success_resets_failure_count(self, breaker):
        _fail(breaker, 2)
        breaker.record(SUCCESS)
        _fail(breaker, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot().consecutive_failures == 2

    def test_permanent_failure_counts_as_answer(self, breaker):
        _fail(breaker, 2)
        breaker.record(StageResult.permanent("bad input"))

        assert breaker.snapshot().consecutive_failures == 0

    def test_circuit_open_rejections_are_ignored(self, breaker):
        for _ in range(5):
            breaker.record(StageResult.transient("open", FailureClass.CIRCUIT_OPEN))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot().consecutive_failures == 0

    def test_faults_count_toward_opening(self, breaker):
        for _ in range(3):
            breaker.record_fault(RuntimeError("boom"))

        assert breaker.state == CircuitState.OPEN

    def test_failures_outside_window_do_not_accumulate(self, breaker, clock):
        _fail(breaker, 2)
        clock.advance(301)
        _fail(breaker, 1)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot().consecutive_failures == 1


class TestOpenAndHalfOpen:
    def test_rejects_until_open_duration_elapses(self, breaker, clock):
        _fail(breaker, 3)
        clock.advance(59)
        assert breaker.allow() is False

        clock.advance(1)
        assert breaker.allow() is True
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_admits_single_probe(self, breaker, clock):
        _fail(breaker, 3)
        clock.advance(60)

        assert breaker.allow() is True
        assert breaker.allow() is False
        assert breaker.snapshot().probe_in_flight is True

    def test_successful_probe_closes(self, breaker, clock):
        _fail(breaker, 3)
        clock.advance(60)
        breaker.allow()
        breaker.record(SUCCESS)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow() is True

    def test_failed_probe_reopens_with_fresh_timeout(self, breaker, clock):
        _fail(breaker, 3)
        clock.advance(60)
        breaker.allow()
        breaker.record(TRANSIENT)

        assert breaker.state == CircuitState.OPEN
        assert breaker.snapshot().open_until == clock.now + 60
        assert breaker.allow() is False

    def test_abandoned_probe_lets_next_caller_probe(self, breaker, clock):
        _fail(breaker, 3)
        clock.advance(60)
        assert breaker.allow() is True

        breaker.abandon_probe()

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow() is True
        assert breaker.state == CircuitState.HALF_OPEN

    def test_abandon_without_probe_is_noop(self, breaker):
        breaker.abandon_probe()

        assert breaker.state == CircuitState.CLOSED

    def test_reset_forces_closed(self, breaker):
        _fail(breaker, 3)
        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot().open_until is None


class TestConfig:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"failure_threshold": 0},
            {"open_duration_seconds": 0},
            {"failure_window_seconds": -1},
        ],
    )
    def test_invalid_config_rejected(self, kwargs):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(**kwargs)


class TestRegistry:
    def test_one_breaker_per_name(self, clock):
        registry = CircuitBreakerRegistry(clock=clock, names=["analyzer", "resolver"])

        assert registry.get("resolver") is registry.get("resolver")
        assert registry.get("resolver") is not registry.get("analyzer")
        assert {s.name for s in registry.snapshots()} == {"analyzer", "resolver"}

    def test_open_circuits_lists_non_closed(self, clock):
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1), clock=clock, names=["analyzer", "resolver"]
        )
        registry.get("resolver").record(TRANSIENT)

        assert registry.open_circuits() == ["resolver"]
