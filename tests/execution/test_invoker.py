"""Tests for the resilient invoker (sync)."""

import threading
import time

import pytest
import structlog

from keel.core.errors import (
    CircuitOpenError,
    DeadlineExceededError,
    FailureKind,
    PermanentError,
    TransientError,
)
from keel.core.logging import LogContext
from keel.core.result import Err, Ok
from keel.execution.circuit_breaker import BreakerConfig, CircuitBreakerRegistry, CircuitState
from keel.execution.invoker import ResilientInvoker, resilient
from keel.execution.retry import AttemptOutcome, RetryPolicy
from keel.execution.timeout import Deadline, deadline_scope, get_current_deadline


class Flaky:
    """Callable that fails a fixed number of times, then returns a value."""

    def __init__(self, failures, error_factory=lambda: TransientError("503"), value="ok"):
        self.failures = failures
        self.error_factory = error_factory
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return self.value


class TestExecute:
    """Tests for ResilientInvoker.execute."""

    def test_success_first_attempt(self, invoker, registry, manual_clock):
        op = Flaky(0)
        assert invoker.execute("llm", op) == "ok"
        assert op.calls == 1
        assert manual_clock.now == 1000.0
        assert "llm" in registry

    def test_retries_then_succeeds(self, invoker, registry, manual_clock):
        """One transient failure, then success after the 4s backoff."""
        records = []
        op = Flaky(1)
        assert invoker.execute("llm", op, on_attempt=records.append) == "ok"
        assert op.calls == 2
        assert manual_clock.now == 1004.0
        assert [r.outcome for r in records] == [
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.SUCCESS,
        ]
        assert [r.delay_before for r in records] == [0.0, 4.0]
        assert registry.get("llm").failure_count == 0

    def test_exhausts_attempts(self, invoker, registry, manual_clock):
        """Three retryable failures: the last error propagates after 4s + 8s."""
        op = Flaky(10)
        with pytest.raises(TransientError):
            invoker.execute("llm", op)
        assert op.calls == 3
        assert manual_clock.now == 1012.0
        # registry threshold is 3, so the third failure opens the circuit
        assert registry.get("llm").state == CircuitState.OPEN

    def test_non_retryable_stops_immediately(self, invoker, registry, manual_clock):
        op = Flaky(10, error_factory=lambda: PermanentError("400"))
        with pytest.raises(PermanentError):
            invoker.execute("llm", op)
        assert op.calls == 1
        assert manual_clock.now == 1000.0
        assert registry.get("llm").failure_count == 1

    def test_open_circuit_fails_fast(self, invoker, registry, manual_clock):
        """An open circuit ends the whole call before any attempt or delay."""
        registry.get_or_create("llm").force_open()
        op = Flaky(0)
        with pytest.raises(CircuitOpenError) as exc_info:
            invoker.execute("llm", op)
        assert op.calls == 0
        assert manual_clock.now == 1000.0
        assert exc_info.value.dependency == "llm"

    def test_circuit_opening_mid_loop_stops_retries(self, invoker, registry):
        """Remaining retry budget is ignored once the breaker rejects."""
        policy = RetryPolicy(max_attempts=6, jitter_fraction=0.0)
        records = []
        op = Flaky(10)
        with pytest.raises(CircuitOpenError):
            invoker.execute("llm", op, policy, on_attempt=records.append)
        assert op.calls == 3
        assert records[-1].outcome is AttemptOutcome.REJECTED
        assert records[-1].attempt == 4

    def test_half_open_probe_success_closes(self, invoker, registry, manual_clock):
        registry.get_or_create("llm").force_open()
        manual_clock.advance(30.0)
        assert invoker.execute("llm", Flaky(0)) == "ok"
        assert registry.get("llm").state == CircuitState.CLOSED

    def test_breaker_config_on_first_use(self, invoker, registry):
        invoker.execute("db", Flaky(0), breaker_config=BreakerConfig(failure_threshold=1))
        assert registry.get("db").failure_threshold == 1

    def test_err_return_is_failure(self, invoker):
        """Returning Err counts as a failure; Ok is unwrapped."""
        results = iter([Err(TransientError("503")), Ok("value")])
        assert invoker.execute("llm", lambda: next(results)) == "value"

    def test_err_with_permanent_error_raises(self, invoker):
        with pytest.raises(PermanentError):
            invoker.execute("llm", lambda: Err(PermanentError("bad request")))

    def test_custom_classifier(self, registry, manual_clock):
        """An injected classifier decides what is retried."""
        invoker = ResilientInvoker(
            registry,
            classifier=lambda e: FailureKind.NON_RETRYABLE,
            sleep=manual_clock.sleep,
        )
        op = Flaky(1)
        with pytest.raises(TransientError):
            invoker.execute("llm", op)
        assert op.calls == 1

    def test_negative_teardown_grace(self, registry):
        with pytest.raises(ValueError):
            ResilientInvoker(registry, teardown_grace=-1)


class TestExecuteResult:
    """Tests for execute_result."""

    def test_ok(self, invoker):
        assert invoker.execute_result("llm", Flaky(0)) == Ok("ok")

    def test_err_keeps_kind(self, invoker, registry):
        registry.get_or_create("llm").force_open()
        result = invoker.execute_result("llm", Flaky(0))
        assert result.is_err()
        assert result.kind is FailureKind.CIRCUIT_OPEN


class TestDeadlines:
    """Overall deadline across attempts and waits."""

    def test_deadline_ends_backoff(self, invoker, manual_clock):
        """A backoff longer than the time left ends the call at the deadline."""
        deadline = Deadline.after(5.0, operation="chat", clock=manual_clock)
        op = Flaky(10)
        with pytest.raises(DeadlineExceededError) as exc_info:
            invoker.execute("llm", op, deadline=deadline)
        assert op.calls == 2
        assert manual_clock.now == 1005.0
        assert exc_info.value.kind is FailureKind.DEADLINE_EXCEEDED

    def test_timeout_shorthand_uses_registry_clock(self, invoker, manual_clock):
        op = Flaky(10)
        with pytest.raises(DeadlineExceededError):
            invoker.execute("llm", op, timeout=5.0)
        assert manual_clock.now == 1005.0

    def test_expired_deadline_makes_no_attempt(self, invoker, manual_clock):
        op = Flaky(0)
        with pytest.raises(DeadlineExceededError):
            invoker.execute("llm", op, deadline=Deadline.after(0.0, clock=manual_clock))
        assert op.calls == 0

    def test_ambient_scope(self, invoker, manual_clock):
        """Invocations inside deadline_scope share its deadline."""
        op = Flaky(10)
        with deadline_scope(5.0, "turn", clock=manual_clock):
            with pytest.raises(DeadlineExceededError):
                invoker.execute("llm", op)
        assert op.calls == 2

    def test_attempt_sees_effective_deadline(self, invoker, manual_clock):
        """The operation runs with the invocation deadline made ambient."""
        seen = []

        def op():
            seen.append(get_current_deadline())
            return "ok"

        assert invoker.execute("llm", op, timeout=5.0) == "ok"
        assert seen[0] is not None
        assert seen[0].deadline == 1005.0

    def test_attempt_inherits_ambient_scope(self, invoker, manual_clock):
        seen = []

        def op():
            seen.append(get_current_deadline())
            return "ok"

        with deadline_scope(30.0, "turn", clock=manual_clock) as scope:
            invoker.execute("llm", op)
        assert seen == [scope]

    def test_nested_call_cannot_extend_deadline(self, invoker, manual_clock):
        """An inner invocation with a looser timeout keeps the outer deadline."""
        seen = []

        def inner():
            seen.append(get_current_deadline())
            return "inner"

        def outer():
            return invoker.execute("db", inner, timeout=60.0)

        assert invoker.execute("llm", outer, timeout=5.0) == "inner"
        assert seen[0].deadline == 1005.0

    def test_attempt_keeps_log_context(self, invoker):
        seen = []

        def op():
            seen.append(structlog.contextvars.get_contextvars().get("request_id"))
            return "ok"

        with LogContext(request_id="r1"):
            invoker.execute("llm", op, timeout=5.0)
        assert seen == ["r1"]

    @pytest.mark.slow
    def test_slow_attempt_is_abandoned(self):
        """The caller stops waiting at the deadline and the token is released."""
        registry = CircuitBreakerRegistry()
        invoker = ResilientInvoker(registry)
        release = threading.Event()

        def hangs():
            release.wait(2.0)
            return "late"

        start = time.monotonic()
        try:
            with pytest.raises(DeadlineExceededError):
                invoker.execute("llm", hangs, timeout=0.1)
        finally:
            release.set()
        assert time.monotonic() - start < 1.0

        breaker = registry.get("llm")
        assert breaker.failure_count == 0
        assert breaker.stats.released_requests == 1

    @pytest.mark.slow
    def test_teardown_grace_scores_late_failure(self):
        """A late failure inside the grace period is still recorded."""
        registry = CircuitBreakerRegistry()
        invoker = ResilientInvoker(registry, teardown_grace=1.0)

        def slow_failure():
            time.sleep(0.2)
            raise TransientError("late 503")

        with pytest.raises(DeadlineExceededError):
            invoker.execute("llm", slow_failure, timeout=0.05)
        assert registry.get("llm").failure_count == 1

    def test_operation_timeout_error_is_not_a_deadline(self, invoker):
        """An operation's own TimeoutError is an ordinary retryable failure."""
        op = Flaky(1, error_factory=lambda: TimeoutError("socket"))
        assert invoker.execute("llm", op, timeout=60.0) == "ok"
        assert op.calls == 2


class TestResilientWrapper:
    """Tests for resilient()."""

    def test_binds_arguments_per_call(self, invoker):
        calls = []

        def search(query, top_k=3):
            calls.append((query, top_k))
            if len(calls) == 1:
                raise TransientError("timeout")
            return [query] * top_k

        guarded = resilient(invoker, "vector-store")(search)
        assert guarded("q", top_k=2) == ["q", "q"]
        assert calls == [("q", 2), ("q", 2)]
        assert guarded.__name__ == "search"

    def test_reusable_with_operation_name(self, invoker):
        guarded = resilient(invoker, "llm", RetryPolicy.no_retry(), operation_name="complete")(
            lambda: "done"
        )
        assert guarded() == "done"
        assert guarded() == "done"
