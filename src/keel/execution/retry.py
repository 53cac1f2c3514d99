"""Retry policy with exponential backoff and jitter.

A ``RetryPolicy`` is a pure scheduling function: given the 1-based index of
the attempt that just failed and the failure's kind, it says stop or wait
this long. It never sleeps and never looks at the exception type; the
failure kind comes from the error itself (see ``keel.core.errors``).

Delay before attempt ``n`` (n >= 2)::

    min(max_delay, base_delay * multiplier ** (n - 2)) * uniform(1 - jitter, 1 + jitter)

Example:
    >>> from keel.execution.retry import RetryPolicy
    >>> from keel.core.errors import FailureKind
    >>>
    >>> policy = RetryPolicy(max_attempts=3, base_delay=4.0, multiplier=2.0, jitter_fraction=0.0)
    >>> policy.decide(1, FailureKind.RETRYABLE)
    RetryDecision(retry=True, delay=4.0)
    >>> policy.decide(3, FailureKind.RETRYABLE)
    RetryDecision(retry=False, delay=0.0)
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from keel.core.errors import FailureKind, InvalidConfigError, classify_failure

if TYPE_CHECKING:
    from keel.core.settings import KeelSettings


class AttemptOutcome(str, Enum):
    """Terminal outcome of a single attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    NON_RETRYABLE_FAILURE = "non_retryable_failure"
    REJECTED = "rejected"  # Breaker refused the attempt
    TIMED_OUT = "timed_out"  # Deadline elapsed during the attempt


@dataclass(frozen=True)
class AttemptRecord:
    """One attempt of a logical invocation. Never persisted."""

    attempt: int
    delay_before: float
    outcome: AttemptOutcome
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is AttemptOutcome.SUCCESS


@dataclass(frozen=True)
class RetryDecision:
    """Either stop, or retry after ``delay`` seconds."""

    retry: bool
    delay: float = 0.0

    @classmethod
    def stop(cls) -> RetryDecision:
        return cls(retry=False)

    @classmethod
    def retry_after(cls, delay: float) -> RetryDecision:
        return cls(retry=True, delay=max(0.0, delay))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter and an attempt limit.

    Attributes:
        max_attempts: Total attempts including the first (1 = no retries)
        base_delay: Delay before the second attempt, in seconds
        max_delay: Cap applied before jitter
        multiplier: Exponential growth factor, must be > 1
        jitter_fraction: Spread of the random factor, in [0, 1)
        rng: Random source; the module-level generator when None
    """

    max_attempts: int = 3
    base_delay: float = 4.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter_fraction: float = 0.1
    rng: random.Random | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidConfigError("max_attempts", self.max_attempts, "must be >= 1")
        if self.base_delay < 0:
            raise InvalidConfigError("base_delay", self.base_delay, "must be >= 0")
        if self.max_delay < 0:
            raise InvalidConfigError("max_delay", self.max_delay, "must be >= 0")
        if self.multiplier <= 1:
            raise InvalidConfigError("multiplier", self.multiplier, "must be > 1")
        if not 0 <= self.jitter_fraction < 1:
            raise InvalidConfigError("jitter_fraction", self.jitter_fraction, "must be in [0, 1)")

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Single attempt, no delays."""
        return cls(max_attempts=1, jitter_fraction=0.0)

    @classmethod
    def from_settings(cls, settings: KeelSettings, **overrides: object) -> RetryPolicy:
        values: dict[str, object] = {
            "max_attempts": settings.max_attempts,
            "base_delay": settings.base_delay,
            "max_delay": settings.max_delay,
            "multiplier": settings.multiplier,
            "jitter_fraction": settings.jitter_fraction,
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]

    def base_delay_for(self, attempt: int) -> float:
        """Un-jittered delay before ``attempt`` (2 or later)."""
        if attempt < 2:
            raise ValueError(f"No delay precedes attempt {attempt}; delays start at attempt 2")
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 2)))

    def delay_for(self, attempt: int) -> float:
        """Jittered delay before ``attempt`` (2 or later)."""
        delay = self.base_delay_for(attempt)
        if self.jitter_fraction:
            source = self.rng or random
            delay *= source.uniform(1 - self.jitter_fraction, 1 + self.jitter_fraction)
        return max(0.0, delay)

    def should_retry(self, attempt: int, kind: FailureKind) -> bool:
        """True when attempt ``attempt`` failed with ``kind`` and budget remains."""
        return kind is FailureKind.RETRYABLE and attempt < self.max_attempts

    def decide(self, attempt: int, failure: FailureKind | BaseException) -> RetryDecision:
        """Stop, or the delay to wait before attempt ``attempt + 1``.

        Args:
            attempt: 1-based index of the attempt that just failed
            failure: Its failure kind, or the error to read the kind from
        """
        if attempt < 1:
            raise ValueError(f"Attempts are 1-based, got {attempt}")
        kind = failure if isinstance(failure, FailureKind) else classify_failure(failure)
        if not self.should_retry(attempt, kind):
            return RetryDecision.stop()
        return RetryDecision.retry_after(self.delay_for(attempt + 1))

    def schedule(self) -> list[float]:
        """Un-jittered delays before attempts 2..max_attempts."""
        return [self.base_delay_for(n) for n in range(2, self.max_attempts + 1)]


__all__ = [
    "AttemptOutcome",
    "AttemptRecord",
    "RetryDecision",
    "RetryPolicy",
]
