"""Overall deadlines for resilient invocations.

A ``Deadline`` bounds a whole attempt loop: every attempt, every backoff
wait and every probe. It is distinct from per-attempt timeouts and from the
breaker's ``open_timeout``.

Deadlines nest. Inside ``deadline_scope(30.0)`` every invocation that does
not pass its own deadline inherits the scope's, and one that does gets the
earlier of the two. Scopes live in a ``ContextVar``, so they follow asyncio
tasks as well as threads.

Examples:
    Explicit deadline:

    >>> deadline = Deadline.after(10.0, operation="summarize")
    >>> invoker.execute("llm", call_llm, deadline=deadline)

    Ambient deadline for a request handler:

    >>> with deadline_scope(30.0, operation="chat_turn"):
    ...     docs = invoker.execute("vector-store", search)
    ...     answer = invoker.execute("llm", generate)   # shares the 30s

    Check remaining time:

    >>> with deadline_scope(5.0) as ctx:
    ...     if ctx.remaining() < 1.0:
    ...         skip_optional_work()

Guardrails:
    - Always handle DeadlineExceededError at the request boundary
    - A sync attempt cannot be killed; at expiry the caller stops waiting
      and the worker thread is abandoned
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import Context, ContextVar, copy_context
from dataclasses import dataclass, field

from keel.core.clock import SYSTEM_CLOCK, Clock
from keel.core.errors import DeadlineExceededError


@dataclass
class Deadline:
    """Absolute deadline on a clock.

    Attributes:
        deadline: Absolute deadline reading on ``clock``
        timeout_seconds: Original timeout value in seconds
        operation: Name/description of the operation
        clock: Clock the deadline is measured on
        start_time: When the deadline started
    """

    deadline: float
    timeout_seconds: float
    operation: str = "operation"
    clock: Clock = field(default=SYSTEM_CLOCK, repr=False, compare=False)
    start_time: float | None = None

    def __post_init__(self) -> None:
        if self.start_time is None:
            self.start_time = self.deadline - self.timeout_seconds

    @classmethod
    def after(
        cls,
        seconds: float,
        *,
        operation: str = "operation",
        clock: Clock | None = None,
    ) -> Deadline:
        """Deadline ``seconds`` from now."""
        if seconds < 0:
            raise ValueError(f"Timeout must be non-negative, got {seconds}")
        clock = clock or SYSTEM_CLOCK
        now = clock.monotonic()
        return cls(
            deadline=now + seconds,
            timeout_seconds=seconds,
            operation=operation,
            clock=clock,
            start_time=now,
        )

    def remaining(self) -> float:
        """Remaining time until deadline in seconds (negative if expired)."""
        return self.deadline - self.clock.monotonic()

    @property
    def elapsed(self) -> float:
        """Elapsed time since start in seconds."""
        start = self.deadline - self.timeout_seconds if self.start_time is None else self.start_time
        return self.clock.monotonic() - start

    def is_expired(self) -> bool:
        """True if deadline has passed."""
        return self.clock.monotonic() >= self.deadline

    def bound(self, seconds: float) -> float:
        """Clip a wait so it ends no later than the deadline."""
        return max(0.0, min(seconds, self.remaining()))

    def expired_error(self, op_name: str | None = None) -> DeadlineExceededError:
        return DeadlineExceededError(
            timeout=self.timeout_seconds,
            elapsed=self.elapsed,
            operation=op_name or self.operation,
        )

    def check(self, op_name: str | None = None) -> None:
        """Raise if the deadline has passed.

        Raises:
            DeadlineExceededError: If deadline has passed
        """
        if self.is_expired():
            raise self.expired_error(op_name)


_current_deadline: ContextVar[Deadline | None] = ContextVar("keel_deadline", default=None)


def get_current_deadline() -> Deadline | None:
    """Innermost active ``deadline_scope``, if any."""
    return _current_deadline.get()


def earliest(*deadlines: Deadline | None) -> Deadline | None:
    """The deadline that expires first, ignoring None."""
    present = [d for d in deadlines if d is not None]
    if not present:
        return None
    return min(present, key=lambda d: d.remaining())


def get_remaining_deadline() -> float | None:
    """Remaining seconds on the current scope, or None outside a scope."""
    ctx = get_current_deadline()
    if ctx is None:
        return None
    return ctx.remaining()


def check_deadline() -> None:
    """Raise if the current scope's deadline has passed. No-op outside a scope."""
    ctx = get_current_deadline()
    if ctx is not None:
        ctx.check()


@contextmanager
def deadline_scope(
    seconds: float,
    operation: str | None = None,
    *,
    clock: Clock | None = None,
) -> Iterator[Deadline]:
    """Make a deadline ambient for the enclosed block.

    Nested scopes never extend an outer one: the inner scope gets the
    earlier of its own deadline and the enclosing one.
    """
    own = Deadline.after(seconds, operation=operation or "operation", clock=clock)
    outer = get_current_deadline()
    effective = earliest(own, outer) or own
    token = _current_deadline.set(effective)
    try:
        yield effective
    finally:
        _current_deadline.reset(token)


def attempt_context(deadline: Deadline | None) -> Context:
    """Copy of the caller's context with ``deadline`` made ambient.

    Attempts run on worker threads or in their own task; running them in
    this context keeps the caller's log fields and deadline visible, so a
    nested call can only tighten the deadline.
    """
    ctx = copy_context()
    if deadline is not None:
        ctx.run(_current_deadline.set, deadline)
    return ctx


__all__ = [
    "Deadline",
    "deadline_scope",
    "get_current_deadline",
    "get_remaining_deadline",
    "check_deadline",
    "earliest",
    "attempt_context",
]
