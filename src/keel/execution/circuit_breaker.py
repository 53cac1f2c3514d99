"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when a downstream dependency
is unhealthy, and probes it for recovery with exactly one caller at a time.

States:
    CLOSED: Normal operation, requests pass through
    OPEN: Failing fast, requests rejected immediately
    HALF_OPEN: One probe admitted, everyone else rejected until it resolves

Transitions:
    CLOSED    → OPEN       consecutive failures reach ``failure_threshold``
    OPEN      → HALF_OPEN  first ``allow()`` after ``open_timeout`` has elapsed
    HALF_OPEN → CLOSED     probe succeeds (failure count reset to 0)
    HALF_OPEN → OPEN       probe fails (``open_timeout`` countdown restarts)

Every admission hands out a ``BreakerToken`` that must be resolved exactly
once: ``record_success``, ``record_failure``, or ``release`` when the
outcome is unknown (a released call is not scored). Tokens remember the
state epoch they were issued in; outcomes from an earlier epoch are kept
in the statistics but never drive a transition, so a slow call that
started while CLOSED cannot close a circuit that has since opened.

Example:
    >>> from keel.execution.circuit_breaker import CircuitBreaker, BreakerConfig
    >>>
    >>> breaker = CircuitBreaker("llm", BreakerConfig(failure_threshold=5, open_timeout=60.0))
    >>>
    >>> admission = breaker.allow()
    >>> if not admission:
    ...     raise admission.error()
    >>> try:
    ...     result = call_external_service()
    ... except Exception as e:
    ...     breaker.record_failure(admission.token, e)
    ...     raise
    ... else:
    ...     breaker.record_success(admission.token)
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from keel.core.clock import SYSTEM_CLOCK, Clock
from keel.core.errors import CircuitOpenError, InvalidConfigError, TokenAlreadyResolvedError
from keel.core.logging import get_logger

if TYPE_CHECKING:
    from keel.core.settings import KeelSettings

T = TypeVar("T")

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting requests
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass(frozen=True)
class BreakerConfig:
    """Per-dependency breaker configuration.

    Attributes:
        failure_threshold: Consecutive failures before opening
        open_timeout: Seconds to stay OPEN before admitting a probe
    """

    failure_threshold: int = 5
    open_timeout: float = 60.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise InvalidConfigError("failure_threshold", self.failure_threshold, "must be >= 1")
        if self.open_timeout < 0:
            raise InvalidConfigError("open_timeout", self.open_timeout, "must be >= 0")

    @classmethod
    def from_settings(cls, settings: KeelSettings) -> BreakerConfig:
        return cls(
            failure_threshold=settings.failure_threshold,
            open_timeout=settings.open_timeout,
        )


@dataclass(frozen=True)
class DependencyHealth:
    """Point-in-time copy of one dependency's health record."""

    name: str
    state: CircuitState
    failure_count: int
    last_transition: float
    failure_threshold: int
    open_timeout: float
    retry_after: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_transition": self.last_transition,
            "failure_threshold": self.failure_threshold,
            "open_timeout": self.open_timeout,
            "retry_after": self.retry_after,
        }


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    released_requests: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    last_state_change: float | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


class BreakerToken:
    """Proof of admission, resolved exactly once."""

    __slots__ = ("_breaker", "epoch", "probe", "_resolved")

    def __init__(self, breaker: CircuitBreaker, epoch: int, probe: bool):
        self._breaker = breaker
        self.epoch = epoch
        self.probe = probe
        self._resolved = False

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def resolved(self) -> bool:
        return self._resolved

    def succeed(self) -> None:
        self._breaker.record_success(self)

    def fail(self, error: BaseException | None = None) -> None:
        self._breaker.record_failure(self, error)

    def release(self) -> None:
        self._breaker.release(self)

    def _mark_resolved(self) -> None:
        # Called with the breaker lock held
        if self._resolved:
            raise TokenAlreadyResolvedError(
                f"Token for circuit '{self._breaker.name}' was already resolved"
            )
        self._resolved = True

    def __repr__(self) -> str:
        kind = "probe" if self.probe else "call"
        return f"BreakerToken({self._breaker.name!r}, {kind}, epoch={self.epoch}, resolved={self._resolved})"


@dataclass(frozen=True)
class Admission:
    """Outcome of ``CircuitBreaker.allow()``; truthy when admitted."""

    admitted: bool
    state: CircuitState
    dependency: str
    token: BreakerToken | None = None
    retry_after: float | None = None

    def __bool__(self) -> bool:
        return self.admitted

    def error(self) -> CircuitOpenError:
        """The fail-fast error to raise for a rejected admission."""
        return CircuitOpenError(
            self.dependency,
            state=self.state.value,
            retry_after=self.retry_after,
        )


class CircuitBreaker:
    """Circuit breaker for one named dependency.

    All reads and writes of the health record happen under one lock, so
    concurrent ``allow()``/``record_*()`` calls are linearizable.

    Attributes:
        name: Dependency name
        config: Threshold and timeout
    """

    def __init__(
        self,
        name: str = "default",
        config: BreakerConfig | None = None,
        *,
        clock: Clock | None = None,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock or SYSTEM_CLOCK
        self._lock = threading.RLock()
        self._stats = CircuitStats()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_transition = self._clock.monotonic()
        self._epoch = 0
        self._probe_in_flight = False

    @property
    def failure_threshold(self) -> int:
        return self.config.failure_threshold

    @property
    def open_timeout(self) -> float:
        return self.config.open_timeout

    @property
    def state(self) -> CircuitState:
        """Current stored state.

        Reading the state never transitions it; OPEN becomes HALF_OPEN
        only when a call is attempted through ``allow()``.
        """
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def stats(self) -> CircuitStats:
        """Copy of the circuit statistics, taken under the lock."""
        with self._lock:
            return replace(self._stats)

    def snapshot(self) -> DependencyHealth:
        """Consistent copy of the health record."""
        with self._lock:
            retry_after: float | None = None
            if self._state == CircuitState.OPEN:
                retry_after = self._open_remaining(self._clock.monotonic())
            return DependencyHealth(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                last_transition=self._last_transition,
                failure_threshold=self.config.failure_threshold,
                open_timeout=self.config.open_timeout,
                retry_after=retry_after,
            )

    def _open_remaining(self, now: float) -> float:
        return max(0.0, self.config.open_timeout - (now - self._last_transition))

    def _transition_to(self, new_state: CircuitState, now: float) -> None:
        old_state = self._state
        self._state = new_state
        self._last_transition = now
        self._epoch += 1
        self._probe_in_flight = False
        self._stats.state_changes += 1
        self._stats.last_state_change = now

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            logger.info("circuit_closed", dependency=self.name, previous=old_state.value)
        elif new_state == CircuitState.OPEN:
            logger.warning(
                "circuit_opened",
                dependency=self.name,
                previous=old_state.value,
                failures=self._failure_count,
                open_timeout=self.config.open_timeout,
            )
        else:
            logger.info("circuit_half_open", dependency=self.name)

    def _admit(self, probe: bool) -> Admission:
        if probe:
            self._probe_in_flight = True
        token = BreakerToken(self, self._epoch, probe)
        return Admission(admitted=True, state=self._state, dependency=self.name, token=token)

    def _reject(self, retry_after: float | None) -> Admission:
        self._stats.rejected_requests += 1
        logger.debug("circuit_rejected", dependency=self.name, state=self._state.value)
        return Admission(
            admitted=False,
            state=self._state,
            dependency=self.name,
            retry_after=retry_after,
        )

    def allow(self) -> Admission:
        """Decide whether a call may proceed.

        Returns:
            Admission carrying a token when admitted. Rejections leave the
            health record untouched.
        """
        with self._lock:
            now = self._clock.monotonic()
            self._stats.total_requests += 1

            if self._state == CircuitState.CLOSED:
                return self._admit(probe=False)

            if self._state == CircuitState.OPEN:
                remaining = self._open_remaining(now)
                if remaining > 0:
                    return self._reject(remaining)
                self._transition_to(CircuitState.HALF_OPEN, now)
                return self._admit(probe=True)

            # Half-open: a single probe at a time
            if not self._probe_in_flight:
                return self._admit(probe=True)
            return self._reject(None)

    def _check_owner(self, token: BreakerToken) -> None:
        if token.breaker is not self:
            raise ValueError(
                f"Token belongs to circuit '{token.breaker.name}', not '{self.name}'"
            )

    def record_success(self, token: BreakerToken) -> None:
        """Record a successful call."""
        self._check_owner(token)
        with self._lock:
            token._mark_resolved()
            now = self._clock.monotonic()
            self._stats.successful_requests += 1
            self._stats.last_success_time = now

            if token.epoch != self._epoch:
                return

            if self._state == CircuitState.CLOSED:
                self._failure_count = 0
            elif self._state == CircuitState.HALF_OPEN and token.probe:
                self._failure_count = 0
                self._transition_to(CircuitState.CLOSED, now)

    def record_failure(self, token: BreakerToken, error: BaseException | None = None) -> None:
        """Record a failed call."""
        self._check_owner(token)
        with self._lock:
            token._mark_resolved()
            now = self._clock.monotonic()
            self._stats.failed_requests += 1
            self._stats.last_failure_time = now

            if token.epoch != self._epoch:
                return

            if self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN, now)
                else:
                    logger.debug(
                        "circuit_failure_recorded",
                        dependency=self.name,
                        failures=self._failure_count,
                        threshold=self.config.failure_threshold,
                        error=repr(error) if error is not None else None,
                    )
            elif self._state == CircuitState.HALF_OPEN and token.probe:
                # A failed probe reopens on its own, whatever the count
                self._failure_count += 1
                self._transition_to(CircuitState.OPEN, now)

    def release(self, token: BreakerToken) -> None:
        """Resolve a token whose outcome is unknown, without scoring it."""
        self._check_owner(token)
        with self._lock:
            token._mark_resolved()
            self._stats.released_requests += 1
            if (
                token.probe
                and token.epoch == self._epoch
                and self._state == CircuitState.HALF_OPEN
            ):
                self._probe_in_flight = False

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED, self._clock.monotonic())

    def force_open(self) -> None:
        """Force circuit to open state (for maintenance)."""
        with self._lock:
            self._transition_to(CircuitState.OPEN, self._clock.monotonic())

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a function through the circuit breaker (no retries).

        Raises:
            CircuitOpenError: If the call was rejected
        """
        admission = self.allow()
        if not admission.admitted or admission.token is None:
            raise admission.error()
        token = admission.token
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(token, e)
            raise
        except BaseException:
            self.release(token)
            raise
        self.record_success(token)
        return result

    async def call_async(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Execute an async function through the circuit breaker (no retries)."""
        admission = self.allow()
        if not admission.admitted or admission.token is None:
            raise admission.error()
        token = admission.token
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(token, e)
            raise
        except BaseException:
            self.release(token)
            raise
        self.record_success(token)
        return result

    def __repr__(self) -> str:
        return f"CircuitBreaker({self.name!r}, state={self.state.value})"


class CircuitBreakerRegistry:
    """Registry of named circuit breakers.

    One per process (or per test), passed explicitly to every
    ``ResilientInvoker``. Breakers are created on first reference and never
    removed.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        default_config: BreakerConfig | None = None,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()
        self._clock = clock or SYSTEM_CLOCK
        self._default_config = default_config or BreakerConfig()

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def default_config(self) -> BreakerConfig:
        return self._default_config

    def get(self, name: str) -> CircuitBreaker | None:
        """Get a circuit breaker by name, returns None if not found."""
        with self._lock:
            return self._breakers.get(name)

    def get_or_create(self, name: str, config: BreakerConfig | None = None) -> CircuitBreaker:
        """Get or create a circuit breaker by name.

        ``config`` only applies when the breaker is created.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config or self._default_config,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def names(self) -> list[str]:
        """List all registered dependency names."""
        with self._lock:
            return list(self._breakers)

    def snapshot_all(self) -> dict[str, DependencyHealth]:
        """Health snapshot of every registered dependency."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.snapshot() for breaker in breakers}

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)


__all__ = [
    "CircuitState",
    "BreakerConfig",
    "DependencyHealth",
    "CircuitStats",
    "BreakerToken",
    "Admission",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]
