"""Retry policies and per-stage retry budgets.

A RetryPolicy describes how a stage may be retried: how many attempts,
how long to back off between them, and optional limits per failure
class. A RetryBudget tracks one stage execution of one task against its
policy; it is created when the stage begins and discarded when the stage
succeeds or the task ends.

Backoff follows ``base * multiplier ** retry_index`` capped at
``max_delay``, then shortened by a random amount of up to
``jitter_ratio`` of itself so that tasks failing together do not retry
together.
"""

import random
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from src.workflow.capabilities.models import FailureClass, StageResult


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one stage.

    Attributes:
        max_attempts: Total attempts allowed, including the first call.
        base_delay_seconds: Delay before the first retry.
        multiplier: Growth factor applied per retry.
        max_delay_seconds: Upper bound on any single delay.
        jitter_ratio: Fraction of the delay that may be randomly removed
            (0 disables jitter).
        class_budgets: Optional maximum number of failures per failure
            class within one stage execution.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.5
    class_budgets: Mapping[FailureClass, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds cannot be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")

    def compute_delay(
        self,
        retry_index: int,
        rng: Optional[random.Random] = None,
    ) -> float:
        """Delay before retry number ``retry_index`` (0 for the first retry)."""
        raw = min(
            self.base_delay_seconds * (self.multiplier ** retry_index),
            self.max_delay_seconds,
        )
        if self.jitter_ratio <= 0:
            return raw
        roll = (rng or random).random()
        return raw * (1.0 - self.jitter_ratio * roll)

    def new_budget(self) -> "RetryBudget":
        return RetryBudget(policy=self)


@dataclass
class RetryBudget:
    """Attempts consumed by one stage execution.

    Attributes:
        policy: The policy this budget is charged against.
        attempts: Calls made so far (including circuit-open rejections).
        failures_by_class: Transient failures seen, by class.
        next_eligible_at: Clock time before which no retry may start.
        exhausted: True once no further attempt is allowed.
    """

    policy: RetryPolicy
    attempts: int = 0
    failures_by_class: Dict[FailureClass, int] = field(default_factory=dict)
    next_eligible_at: Optional[float] = None
    exhausted: bool = False

    def charge(
        self,
        result: StageResult,
        now: float,
        rng: Optional[random.Random] = None,
    ) -> Optional[float]:
        """Charge one attempt and decide whether another is allowed.

        Args:
            result: Result of the attempt.
            now: Current clock time.
            rng: Random source for jitter.

        Returns:
            The delay to wait before retrying, or None when no retry
            should happen (success, permanent failure, or budget
            exhausted).
        """
        self.attempts += 1

        if result.is_success:
            return None

        if result.is_permanent:
            # Permanent failures are never retried
            self.exhausted = True
            return None

        failure_class = result.failure_class or FailureClass.ERROR
        count = self.failures_by_class.get(failure_class, 0) + 1
        self.failures_by_class[failure_class] = count

        class_limit = self.policy.class_budgets.get(failure_class)
        if self.attempts >= self.policy.max_attempts or (
            class_limit is not None and count >= class_limit
        ):
            self.exhausted = True
            return None

        delay = self.policy.compute_delay(self.attempts - 1, rng)
        self.next_eligible_at = now + delay
        return delay

    @property
    def remaining(self) -> int:
        if self.exhausted:
            return 0
        return max(0, self.policy.max_attempts - self.attempts)
