"""Per-capability circuit breakers.

A breaker stops calling a capability that keeps failing transiently.
After ``failure_threshold`` consecutive transient failures it opens and
rejects calls without invoking the capability. Once the open duration
has elapsed it lets exactly one probe call through (half-open); the
probe's result either closes the breaker or re-opens it with a fresh
timeout.

Breakers are shared by all tasks. Reads and writes go through a lock so
the state seen by ``snapshot()`` is always consistent.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from src.workflow.capabilities.models import FailureClass, StageResult

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states.

    Attributes:
        CLOSED: Calls flow normally; consecutive failures are counted.
        OPEN: Calls are rejected until the open duration elapses.
        HALF_OPEN: One probe call is allowed to test recovery.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Circuit breaker thresholds.

    Attributes:
        failure_threshold: Consecutive transient failures that open the breaker.
        open_duration_seconds: How long the breaker stays open before probing.
        failure_window_seconds: A failure older than this no longer counts
            toward the threshold. None disables the window.
    """

    failure_threshold: int = 5
    open_duration_seconds: float = 60.0
    failure_window_seconds: Optional[float] = 300.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.open_duration_seconds <= 0:
            raise ValueError("open_duration_seconds must be positive")
        if self.failure_window_seconds is not None and self.failure_window_seconds <= 0:
            raise ValueError("failure_window_seconds must be positive")


@dataclass(frozen=True)
class CircuitSnapshot:
    """Consistent point-in-time view of a breaker."""

    name: str
    state: CircuitState
    consecutive_failures: int
    last_failure_at: Optional[float]
    open_until: Optional[float]
    probe_in_flight: bool


class CircuitBreaker:
    """Circuit breaker guarding one capability.

    Example:
        >>> breaker = CircuitBreaker("resolver", CircuitBreakerConfig(failure_threshold=3))
        >>> if breaker.allow():
        ...     result = await resolver.resolve(task, workspace, analysis)
        ...     breaker.record(result)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._open_until: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def allow(self) -> bool:
        """Decide whether a call may be made now.

        Moves an expired OPEN breaker to HALF_OPEN and claims its single
        probe slot for the caller.

        Returns:
            True if the caller may invoke the capability. A caller that
            gets True must later call record(), record_fault() or
            abandon_probe().
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._clock() < (self._open_until or 0.0):
                    return False
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                logger.info(
                    "Circuit breaker half-open, admitting probe",
                    extra={"breaker": self.name},
                )
                return True

            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record(self, result: StageResult) -> None:
        """Update the breaker with the result of an admitted call.

        Transient failures count toward opening the breaker. Successes and
        permanent failures both prove the capability is answering, so they
        reset the count and close a half-open breaker. Synthetic
        circuit-open rejections are ignored.
        """
        if result.is_transient:
            if result.failure_class == FailureClass.CIRCUIT_OPEN:
                return
            self._on_failure(result.reason)
        else:
            self._on_success()

    def record_fault(self, error: BaseException) -> None:
        """Count an unexpected exception from the capability as a failure."""
        self._on_failure(f"{type(error).__name__}: {error}")

    def abandon_probe(self) -> None:
        """Release a probe whose call was cancelled before it returned.

        The breaker returns to OPEN with an already-expired timeout so the
        next caller can probe immediately.
        """
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._probe_in_flight:
                self._state = CircuitState.OPEN
                self._open_until = self._clock()
                self._probe_in_flight = False

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                last_failure_at=self._last_failure_at,
                open_until=self._open_until if self._state != CircuitState.CLOSED else None,
                probe_in_flight=self._probe_in_flight,
            )

    def reset(self) -> None:
        """Force the breaker closed (manual recovery)."""
        with self._lock:
            self._close()

    def _on_failure(self, reason: Optional[str]) -> None:
        with self._lock:
            now = self._clock()
            window = self.config.failure_window_seconds
            if (
                window is not None
                and self._last_failure_at is not None
                and now - self._last_failure_at > window
            ):
                self._consecutive_failures = 0

            self._consecutive_failures += 1
            self._last_failure_at = now

            if self._state == CircuitState.HALF_OPEN:
                self._open(now)
                logger.warning(
                    "Circuit breaker probe failed, re-opening",
                    extra={"breaker": self.name, "reason": reason},
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._open(now)
                logger.error(
                    "Circuit breaker opened",
                    extra={
                        "breaker": self.name,
                        "consecutive_failures": self._consecutive_failures,
                        "reason": reason,
                    },
                )

    def _on_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(
                    "Circuit breaker closed",
                    extra={"breaker": self.name},
                )
            self._close()

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._open_until = now + self.config.open_duration_seconds
        self._probe_in_flight = False

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._open_until = None
        self._probe_in_flight = False


class CircuitBreakerRegistry:
    """Holds one breaker per capability name."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        names: Optional[List[str]] = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        for name in names or []:
            self.get(name)

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self.config, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def snapshots(self) -> List[CircuitSnapshot]:
        return [breaker.snapshot() for breaker in self._breakers.values()]

    def open_circuits(self) -> List[str]:
        return [
            snapshot.name
            for snapshot in self.snapshots()
            if snapshot.state != CircuitState.CLOSED
        ]
