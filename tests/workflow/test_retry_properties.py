"""Property-based tests for RetryPolicy and RetryBudget.

Validates the backoff formula (base * multiplier^n, capped, with jitter)
and the budget rules: permanent failures are never retried, and no
stage gets more attempts than its policy allows.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import random

import pytest
from hypothesis import given, settings, strategies as st

from src.workflow.capabilities.models import FailureClass, StageResult
from src.workflow.recovery.retry import RetryPolicy


@st.composite
def retry_policies(draw: st.DrawFn) -> RetryPolicy:
    base = draw(st.floats(min_value=0.0, max_value=10.0, allow_nan=False))
    max_delay = draw(st.floats(min_value=base, max_value=base + 600.0, allow_nan=False))
    return RetryPolicy(
        max_attempts=draw(st.integers(min_value=1, max_value=10)),
        base_delay_seconds=base,
        multiplier=draw(st.floats(min_value=1.0, max_value=4.0, allow_nan=False)),
        max_delay_seconds=max_delay,
        jitter_ratio=draw(st.floats(min_value=0.0, max_value=1.0, allow_nan=False)),
    )


results = st.one_of(
    st.just(StageResult.success()),
    st.just(StageResult.permanent("invalid input")),
    st.sampled_from(list(FailureClass)).map(
        lambda failure_class: StageResult.transient("flaky", failure_class)
    ),
)


@settings(max_examples=100)
@given(policy=retry_policies(), retry_index=st.integers(min_value=0, max_value=30), seed=st.integers())
def test_delay_stays_within_jittered_bounds(policy, retry_index, seed):
    raw = min(
        policy.base_delay_seconds * policy.multiplier ** retry_index,
        policy.max_delay_seconds,
    )

    delay = policy.compute_delay(retry_index, random.Random(seed))

    assert delay <= raw + 1e-9
    assert delay >= raw * (1 - policy.jitter_ratio) - 1e-9
    assert delay <= policy.max_delay_seconds + 1e-9


@settings(max_examples=100)
@given(retry_index=st.integers(min_value=0, max_value=20))
def test_delay_without_jitter_is_exact(retry_index):
    policy = RetryPolicy(base_delay_seconds=0.5, multiplier=2.0, max_delay_seconds=60.0, jitter_ratio=0.0)

    assert policy.compute_delay(retry_index) == min(0.5 * 2 ** retry_index, 60.0)


@settings(max_examples=100)
@given(policy=retry_policies(), outcomes=st.lists(results, min_size=1, max_size=15))
def test_budget_never_allows_more_than_max_attempts(policy, outcomes):
    budget = policy.new_budget()
    attempts = 0

    for result in outcomes:
        attempts += 1
        delay = budget.charge(result, now=0.0, rng=random.Random(0))
        if delay is None:
            break

    assert attempts <= policy.max_attempts
    assert budget.attempts == attempts


@settings(max_examples=100)
@given(policy=retry_policies(), transient_before=st.integers(min_value=0, max_value=5))
def test_permanent_failure_is_never_retried(policy, transient_before):
    budget = policy.new_budget()
    for _ in range(transient_before):
        if budget.charge(StageResult.transient("flaky"), now=0.0) is None:
            return

    delay = budget.charge(StageResult.permanent("unfixable"), now=0.0)

    assert delay is None
    assert budget.exhausted
    assert budget.remaining == 0


@settings(max_examples=100)
@given(limit=st.integers(min_value=1, max_value=5), max_attempts=st.integers(min_value=6, max_value=10))
def test_class_budget_exhausts_independently(limit, max_attempts):
    policy = RetryPolicy(
        max_attempts=max_attempts,
        jitter_ratio=0.0,
        class_budgets={FailureClass.TIMEOUT: limit},
    )
    budget = policy.new_budget()

    delays = [
        budget.charge(StageResult.transient("slow", FailureClass.TIMEOUT), now=0.0)
        for _ in range(limit)
    ]

    assert all(delay is not None for delay in delays[:-1])
    assert delays[-1] is None
    assert budget.failures_by_class[FailureClass.TIMEOUT] == limit


class TestRetryBudgetUnit:
    def test_success_ends_stage_without_delay(self):
        budget = RetryPolicy().new_budget()

        assert budget.charge(StageResult.success(), now=10.0) is None
        assert not budget.exhausted

    def test_next_eligible_time_tracks_delay(self):
        budget = RetryPolicy(base_delay_seconds=2.0, jitter_ratio=0.0).new_budget()

        delay = budget.charge(StageResult.transient("flaky"), now=100.0)

        assert delay == 2.0
        assert budget.next_eligible_at == 102.0
        assert budget.remaining == 2

    def test_missing_failure_class_counts_as_error(self):
        budget = RetryPolicy(jitter_ratio=0.0).new_budget()

        budget.charge(StageResult(outcome=StageResult.transient("x").outcome), now=0.0)

        assert budget.failures_by_class == {FailureClass.ERROR: 1}

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_delay_seconds": -1.0},
            {"multiplier": 0.5},
            {"base_delay_seconds": 10.0, "max_delay_seconds": 5.0},
            {"jitter_ratio": 1.5},
        ],
    )
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
