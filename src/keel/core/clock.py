"""
Clock abstraction for time-based state transitions.

The circuit breaker and deadline logic never call ``time.monotonic()``
directly. They take a ``Clock`` so that tests can drive OPEN → HALF_OPEN
transitions and deadline expiry without sleeping.

Examples:
    >>> from keel.core.clock import ManualClock
    >>> clock = ManualClock()
    >>> clock.monotonic()
    0.0
    >>> clock.advance(60.0)
    >>> clock.monotonic()
    60.0

Tags:
    clock, time, testing, keel-core
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of monotonic time in seconds."""

    def monotonic(self) -> float:
        ...


class MonotonicClock:
    """Clock backed by ``time.monotonic()``."""

    def monotonic(self) -> float:
        return time.monotonic()

    def __repr__(self) -> str:
        return "MonotonicClock()"


class ManualClock:
    """Clock that only moves when told to.

    Thread-safe so that concurrent tests can share one instance.

    Attributes:
        now: Current reading in seconds
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        """Move the clock forward."""
        if seconds < 0:
            raise ValueError(f"Cannot move clock backwards by {seconds}s")
        with self._lock:
            self._now += seconds

    def sleep(self, seconds: float) -> None:
        """Drop-in for ``time.sleep`` that advances instead of blocking."""
        self.advance(max(0.0, seconds))

    async def async_sleep(self, seconds: float) -> None:
        """Drop-in for ``asyncio.sleep`` that advances instead of waiting."""
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)

    @property
    def now(self) -> float:
        return self.monotonic()

    def __repr__(self) -> str:
        return f"ManualClock(now={self.now})"


SYSTEM_CLOCK = MonotonicClock()


__all__ = [
    "Clock",
    "MonotonicClock",
    "ManualClock",
    "SYSTEM_CLOCK",
]
