"""Tests for the retry policy."""

import random

import pytest

from keel.core.errors import (
    CircuitOpenError,
    DeadlineExceededError,
    FailureKind,
    InvalidConfigError,
    PermanentError,
    TransientError,
)
from keel.execution.retry import (
    AttemptOutcome,
    AttemptRecord,
    RetryDecision,
    RetryPolicy,
)


class TestRetryPolicyConfiguration:
    """Tests for RetryPolicy construction."""

    def test_default_configuration(self):
        """Test documented defaults."""
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay == 4.0
        assert policy.max_delay == 10.0
        assert policy.multiplier == 2.0
        assert policy.jitter_fraction == 0.1

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_delay": -1},
            {"max_delay": -1},
            {"multiplier": 1.0},
            {"jitter_fraction": 1.0},
            {"jitter_fraction": -0.1},
        ],
    )
    def test_rejects_invalid_values(self, kwargs):
        """Test out-of-range values raise InvalidConfigError."""
        with pytest.raises(InvalidConfigError):
            RetryPolicy(**kwargs)

    def test_no_retry(self):
        """Test single-attempt policy."""
        policy = RetryPolicy.no_retry()
        assert policy.max_attempts == 1
        assert policy.decide(1, FailureKind.RETRYABLE) == RetryDecision.stop()


class TestDelays:
    """Tests for the backoff curve."""

    def test_delay_sequence(self):
        """Delays before attempts 2..5 with base 4, multiplier 2, cap 10."""
        policy = RetryPolicy(max_attempts=5, jitter_fraction=0.0)
        assert policy.schedule() == [4.0, 8.0, 10.0, 10.0]

    def test_base_delay_for_first_attempt_is_invalid(self):
        """No delay precedes the first attempt."""
        with pytest.raises(ValueError):
            RetryPolicy().base_delay_for(1)

    def test_jitter_stays_within_bounds(self):
        """Jittered delays stay within +/- jitter_fraction of the capped value."""
        policy = RetryPolicy(jitter_fraction=0.1, rng=random.Random(42))
        for _ in range(200):
            delay = policy.delay_for(2)
            assert 3.6 <= delay <= 4.4

    def test_jitter_applies_after_cap(self):
        """The cap is applied before jitter, so a capped delay may exceed max_delay slightly."""
        policy = RetryPolicy(max_attempts=10, jitter_fraction=0.1, rng=random.Random(7))
        delays = [policy.delay_for(6) for _ in range(200)]
        assert all(9.0 <= d <= 11.0 for d in delays)
        assert max(delays) > 10.0

    def test_seeded_rng_is_deterministic(self):
        """Two policies with identically seeded generators agree."""
        a = RetryPolicy(rng=random.Random(1))
        b = RetryPolicy(rng=random.Random(1))
        assert [a.delay_for(2) for _ in range(5)] == [b.delay_for(2) for _ in range(5)]

    def test_schedule_is_empty_for_single_attempt(self):
        assert RetryPolicy(max_attempts=1).schedule() == []


class TestDecide:
    """Tests for RetryPolicy.decide."""

    def test_retryable_within_budget(self):
        """First failure with base 4 and no jitter waits 4s."""
        policy = RetryPolicy(jitter_fraction=0.0)
        assert policy.decide(1, FailureKind.RETRYABLE) == RetryDecision(retry=True, delay=4.0)
        assert policy.decide(2, FailureKind.RETRYABLE) == RetryDecision(retry=True, delay=8.0)

    def test_stops_at_max_attempts(self):
        """Test the attempt limit."""
        policy = RetryPolicy(max_attempts=3, jitter_fraction=0.0)
        assert policy.decide(3, FailureKind.RETRYABLE).retry is False

    @pytest.mark.parametrize(
        "kind",
        [FailureKind.NON_RETRYABLE, FailureKind.CIRCUIT_OPEN, FailureKind.DEADLINE_EXCEEDED],
    )
    def test_only_retryable_kind_is_retried(self, kind):
        """Every other kind stops immediately, whatever the attempt budget."""
        policy = RetryPolicy(max_attempts=10)
        assert policy.decide(1, kind) == RetryDecision.stop()

    def test_decide_reads_kind_from_error(self):
        """Errors are classified by their own tag."""
        policy = RetryPolicy(jitter_fraction=0.0)
        assert policy.decide(1, TransientError("503")).retry is True
        assert policy.decide(1, PermanentError("400")).retry is False
        assert policy.decide(1, CircuitOpenError("llm")).retry is False
        assert policy.decide(1, DeadlineExceededError(timeout=1.0)).retry is False
        assert policy.decide(1, RuntimeError("unknown")).retry is True

    def test_attempts_are_one_based(self):
        with pytest.raises(ValueError):
            RetryPolicy().decide(0, FailureKind.RETRYABLE)

    def test_retry_after_clamps_negative(self):
        assert RetryDecision.retry_after(-1.0).delay == 0.0


class TestAttemptRecord:
    """Tests for AttemptRecord."""

    def test_succeeded(self):
        assert AttemptRecord(1, 0.0, AttemptOutcome.SUCCESS).succeeded
        assert not AttemptRecord(2, 4.0, AttemptOutcome.REJECTED).succeeded
