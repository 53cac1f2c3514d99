"""Keel Execution: fault-tolerant calls to external dependencies.

WHY
───
Agent backends call language models, vector stores and tool APIs that
fail transiently, fail permanently, and sometimes fail for minutes at a
time. Retrying blindly floods a sick dependency; not retrying turns every
blip into a user-facing error. This package combines a retry policy, a
per-dependency circuit breaker and an overall deadline behind one call.

ARCHITECTURE
────────────
::

    ResilientInvoker.execute(dependency, operation, policy, deadline=...)
      │
      ├── CircuitBreakerRegistry ─ name → CircuitBreaker (shared, locked)
      │     └── CircuitBreaker   ─ CLOSED / OPEN / HALF_OPEN, admission tokens
      ├── RetryPolicy            ─ exponential backoff + jitter, attempt limit
      └── Deadline               ─ overall limit across attempts and waits

MODULE MAP
──────────
  1. retry.py           ─ RetryPolicy, RetryDecision, AttemptRecord
  2. circuit_breaker.py ─ CircuitBreaker, BreakerConfig, registry
  3. timeout.py         ─ Deadline, deadline_scope
  4. invoker.py         ─ ResilientInvoker, resilient()
"""

from keel.execution.circuit_breaker import (
    Admission,
    BreakerConfig,
    BreakerToken,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStats,
    DependencyHealth,
)
from keel.execution.invoker import ResilientInvoker, resilient
from keel.execution.retry import AttemptOutcome, AttemptRecord, RetryDecision, RetryPolicy
from keel.execution.timeout import (
    Deadline,
    check_deadline,
    deadline_scope,
    get_current_deadline,
    get_remaining_deadline,
)

__all__ = [
    # circuit breaker
    "CircuitState",
    "BreakerConfig",
    "DependencyHealth",
    "CircuitStats",
    "BreakerToken",
    "Admission",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    # retry
    "AttemptOutcome",
    "AttemptRecord",
    "RetryDecision",
    "RetryPolicy",
    # deadline
    "Deadline",
    "deadline_scope",
    "get_current_deadline",
    "get_remaining_deadline",
    "check_deadline",
    # invoker
    "ResilientInvoker",
    "resilient",
]
