"""
Shared pytest fixtures for keel-core tests.

This module provides:
- A ManualClock so breaker and deadline transitions never need real sleeps
- A breaker registry and invoker wired to that clock
- Settings cache and environment isolation
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
import structlog

from keel.core.clock import ManualClock
from keel.core.settings import clear_settings_cache
from keel.execution.circuit_breaker import BreakerConfig, CircuitBreakerRegistry
from keel.execution.invoker import ResilientInvoker
from keel.execution.retry import RetryPolicy


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    """Drop KEEL_* variables and any cached settings around every test."""
    for key in list(os.environ):
        if key.startswith("KEEL_"):
            monkeypatch.delenv(key, raising=False)
    # Keep a stray .env in the working directory out of the picture
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield
    clear_settings_cache()
    # CLI commands configure logging globally
    structlog.reset_defaults()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock(start=1000.0)


@pytest.fixture
def registry(manual_clock: ManualClock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(
        clock=manual_clock,
        default_config=BreakerConfig(failure_threshold=3, open_timeout=30.0),
    )


@pytest.fixture
def no_jitter_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=4.0, max_delay=10.0, multiplier=2.0, jitter_fraction=0.0)


@pytest.fixture
def invoker(
    registry: CircuitBreakerRegistry,
    manual_clock: ManualClock,
    no_jitter_policy: RetryPolicy,
) -> ResilientInvoker:
    """Invoker whose backoff waits advance the manual clock."""
    return ResilientInvoker(
        registry,
        default_policy=no_jitter_policy,
        sleep=manual_clock.sleep,
        async_sleep=manual_clock.async_sleep,
    )
