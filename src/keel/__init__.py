"""keel-core: resilience and bounded-context primitives for agent backends.

Two independent halves:

- ``keel.execution`` wraps calls to external dependencies with retries,
  per-dependency circuit breakers and overall deadlines.
- ``keel.context`` assembles tiered content into a selection that fits a
  capacity budget.

Both build on ``keel.core`` (errors, clock, logging, settings).
"""

from keel.context import (
    AssembledContext,
    CharacterEstimator,
    ContentUnit,
    ContextAssembler,
    PriorityTier,
)
from keel.core import (
    CircuitOpenError,
    DeadlineExceededError,
    FailureKind,
    KeelError,
    ManualClock,
    PermanentError,
    TransientError,
)
from keel.execution import (
    BreakerConfig,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    Deadline,
    ResilientInvoker,
    RetryPolicy,
    deadline_scope,
    resilient,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # core
    "KeelError",
    "TransientError",
    "PermanentError",
    "CircuitOpenError",
    "DeadlineExceededError",
    "FailureKind",
    "ManualClock",
    # execution
    "BreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "Deadline",
    "deadline_scope",
    "RetryPolicy",
    "ResilientInvoker",
    "resilient",
    # context
    "ContextAssembler",
    "ContentUnit",
    "PriorityTier",
    "AssembledContext",
    "CharacterEstimator",
]
