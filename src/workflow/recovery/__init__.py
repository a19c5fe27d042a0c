"""Failure recovery: circuit breakers, backoff, and retry budgets."""

from src.workflow.recovery.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitSnapshot,
    CircuitState,
)
from src.workflow.recovery.retry import RetryBudget, RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitSnapshot",
    "CircuitState",
    "RetryBudget",
    "RetryPolicy",
]
