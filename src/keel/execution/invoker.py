"""Resilient invoker: retry policy + circuit breaker + overall deadline.

``ResilientInvoker`` is the single entry point for calling a fallible
dependency. Each attempt asks the dependency's breaker for admission, runs
the operation, reports the outcome, and consults the retry policy.

Algorithm (per invocation)::

    for attempt in 1..max_attempts:
        deadline expired?            → DeadlineExceededError
        breaker.allow() rejected?    → CircuitOpenError (whole loop ends, no delay)
        run operation
          success                    → record_success, return value
          failure                    → record_failure, classify, policy.decide
              stop                   → re-raise the operation's error
              retry after d          → wait d (deadline-bounded), next attempt

An operation reports failure by raising, or by returning ``Err`` from
``keel.core.result``; an ``Ok`` return is unwrapped. The four failure kinds
reach the caller as distinct types: the operation's own error (retryable
or not, as tagged), ``CircuitOpenError`` and ``DeadlineExceededError``.

Under a deadline a sync attempt runs on a single-use worker thread so the
caller can stop waiting when time runs out; an async attempt runs as a
task that is cancelled. An attempt still in flight at expiry gets
``teardown_grace`` seconds to finish; if it does, its outcome is scored,
otherwise its breaker token is released unscored.

Example:
    >>> registry = CircuitBreakerRegistry()
    >>> invoker = ResilientInvoker(registry)
    >>> policy = RetryPolicy(max_attempts=3, base_delay=4.0, max_delay=10.0)
    >>>
    >>> try:
    ...     reply = invoker.execute("llm", lambda: client.complete(prompt), policy, timeout=30.0)
    ... except CircuitOpenError:
    ...     show_service_busy()
    ... except DeadlineExceededError:
    ...     show_timeout()
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from keel.core.errors import DeadlineExceededError, FailureKind, classify_failure
from keel.core.logging import get_logger
from keel.core.result import Err, Ok, Result
from keel.execution.circuit_breaker import (
    BreakerConfig,
    BreakerToken,
    CircuitBreaker,
    CircuitBreakerRegistry,
)
from keel.execution.retry import AttemptOutcome, AttemptRecord, RetryPolicy
from keel.execution.timeout import Deadline, attempt_context, earliest, get_current_deadline

T = TypeVar("T")

Classifier = Callable[[BaseException], FailureKind]
AttemptCallback = Callable[[AttemptRecord], None]

logger = get_logger(__name__)


def _split(value: Any) -> tuple[bool, Any]:
    """(succeeded, value-or-error) for an operation's return value."""
    if isinstance(value, Err):
        return False, value.error
    if isinstance(value, Ok):
        return True, value.value
    return True, value


def _settle(breaker: CircuitBreaker, token: BreakerToken, succeeded: bool, payload: Any) -> None:
    if succeeded:
        breaker.record_success(token)
    else:
        breaker.record_failure(token, payload)


class ResilientInvoker:
    """Runs operations under a dependency's breaker and a retry policy.

    The invoker keeps no state between calls; the registry's breakers are
    the only shared mutable state.

    Args:
        registry: Breaker registry shared by every caller of a dependency
        default_policy: Policy used when ``execute`` is not given one
        classifier: Maps an error to its FailureKind (``classify_failure``)
        sleep: Blocking wait for sync invocations (``time.sleep``)
        async_sleep: Awaitable wait for async invocations (``asyncio.sleep``)
        teardown_grace: Seconds an in-flight attempt may still resolve after
            the deadline before its token is released unscored
    """

    def __init__(
        self,
        registry: CircuitBreakerRegistry,
        *,
        default_policy: RetryPolicy | None = None,
        classifier: Classifier | None = None,
        sleep: Callable[[float], None] | None = None,
        async_sleep: Callable[[float], Awaitable[Any]] | None = None,
        teardown_grace: float = 0.0,
    ):
        if teardown_grace < 0:
            raise ValueError(f"teardown_grace must be non-negative, got {teardown_grace}")
        self._registry = registry
        self._default_policy = default_policy or RetryPolicy()
        self._classifier = classifier or classify_failure
        self._sleep = sleep or time.sleep
        self._async_sleep = async_sleep or asyncio.sleep
        self._teardown_grace = teardown_grace

    @property
    def registry(self) -> CircuitBreakerRegistry:
        return self._registry

    @property
    def default_policy(self) -> RetryPolicy:
        return self._default_policy

    # ── shared helpers ───────────────────────────────────────────────────

    def _resolve_deadline(
        self,
        deadline: Deadline | None,
        timeout: float | None,
        name: str,
    ) -> Deadline | None:
        own = deadline
        if own is None and timeout is not None:
            own = Deadline.after(timeout, operation=name, clock=self._registry.clock)
        return earliest(own, get_current_deadline())

    def _score(
        self,
        policy: RetryPolicy,
        attempt: int,
        error: BaseException,
    ) -> tuple[AttemptOutcome, float | None]:
        """Outcome of a failed attempt and the delay before the next one (None = stop)."""
        kind = self._classifier(error)
        outcome = (
            AttemptOutcome.RETRYABLE_FAILURE
            if kind is FailureKind.RETRYABLE
            else AttemptOutcome.NON_RETRYABLE_FAILURE
        )
        decision = policy.decide(attempt, kind)
        return outcome, (decision.delay if decision.retry else None)

    @staticmethod
    def _notify(callback: AttemptCallback | None, record: AttemptRecord) -> None:
        if callback is not None:
            callback(record)

    # ── sync ─────────────────────────────────────────────────────────────

    def execute(
        self,
        dependency: str,
        operation: Callable[[], Any],
        retry_policy: RetryPolicy | None = None,
        *,
        deadline: Deadline | None = None,
        timeout: float | None = None,
        breaker_config: BreakerConfig | None = None,
        on_attempt: AttemptCallback | None = None,
        operation_name: str | None = None,
    ) -> Any:
        """Run ``operation`` under the breaker for ``dependency``.

        Args:
            dependency: Breaker name; created on first use
            operation: Zero-argument callable
            retry_policy: Overrides the invoker's default policy
            deadline: Overall deadline across all attempts
            timeout: Shorthand for ``Deadline.after(timeout)``
            breaker_config: Used only if the breaker does not exist yet
            on_attempt: Called with an AttemptRecord after every attempt
            operation_name: Name used in logs and errors

        Returns:
            The operation's value (``Ok`` unwrapped)

        Raises:
            CircuitOpenError: The breaker rejected an attempt
            DeadlineExceededError: The overall deadline elapsed
            Exception: The operation's own error once retries stop
        """
        policy = retry_policy or self._default_policy
        name = operation_name or getattr(operation, "__name__", "operation")
        breaker = self._registry.get_or_create(dependency, breaker_config)
        effective = self._resolve_deadline(deadline, timeout, name)
        log = logger.bind(dependency=dependency, operation=name)

        attempt = 0
        delay = 0.0
        while True:
            attempt += 1
            if effective is not None and effective.is_expired():
                log.warning("deadline_exceeded", attempt=attempt, phase="before_attempt")
                raise effective.expired_error(name)

            admission = breaker.allow()
            if not admission.admitted or admission.token is None:
                error = admission.error()
                self._notify(on_attempt, AttemptRecord(attempt, delay, AttemptOutcome.REJECTED, error))
                log.info("circuit_fail_fast", attempt=attempt, state=admission.state.value)
                raise error

            token = admission.token
            try:
                succeeded, payload = self._run_sync(breaker, token, operation, effective, name)
            except DeadlineExceededError as exc:
                self._notify(on_attempt, AttemptRecord(attempt, delay, AttemptOutcome.TIMED_OUT, exc))
                log.warning("deadline_exceeded", attempt=attempt, phase="attempt")
                raise

            if succeeded:
                breaker.record_success(token)
                self._notify(on_attempt, AttemptRecord(attempt, delay, AttemptOutcome.SUCCESS))
                if attempt > 1:
                    log.info("retry_succeeded", attempt=attempt)
                return payload

            error = payload
            breaker.record_failure(token, error)
            outcome, next_delay = self._score(policy, attempt, error)
            self._notify(on_attempt, AttemptRecord(attempt, delay, outcome, error))

            if next_delay is None:
                log.warning(
                    "retry_stopped",
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    outcome=outcome.value,
                    error=repr(error),
                )
                raise error

            delay = next_delay
            log.info("retry_scheduled", attempt=attempt, next_attempt=attempt + 1, delay=round(delay, 3))
            self._wait_sync(delay, effective, name)

    def _run_sync(
        self,
        breaker: CircuitBreaker,
        token: BreakerToken,
        operation: Callable[[], Any],
        deadline: Deadline | None,
        name: str,
    ) -> tuple[bool, Any]:
        if deadline is None:
            try:
                value = operation()
            except Exception as e:
                return False, e
            except BaseException:
                breaker.release(token)
                raise
            return _split(value)

        remaining = deadline.remaining()
        if remaining <= 0:
            breaker.release(token)
            raise deadline.expired_error(name)

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"keel-{breaker.name}"
        )
        try:
            future = executor.submit(attempt_context(deadline).run, operation)
        finally:
            # Never join: an attempt past its deadline is abandoned
            executor.shutdown(wait=False)

        done, _ = concurrent.futures.wait([future], timeout=remaining)
        if not done:
            self._teardown_sync(breaker, token, future)
            raise deadline.expired_error(name)
        return self._future_outcome(breaker, token, future)

    def _future_outcome(
        self,
        breaker: CircuitBreaker,
        token: BreakerToken,
        future: concurrent.futures.Future[Any],
    ) -> tuple[bool, Any]:
        error = future.exception()
        if error is None:
            return _split(future.result())
        if isinstance(error, Exception):
            return False, error
        breaker.release(token)
        raise error

    def _teardown_sync(
        self,
        breaker: CircuitBreaker,
        token: BreakerToken,
        future: concurrent.futures.Future[Any],
    ) -> None:
        if self._teardown_grace > 0:
            concurrent.futures.wait([future], timeout=self._teardown_grace)
        if future.done() and not future.cancelled():
            error = future.exception()
            if error is None:
                _settle(breaker, token, *_split(future.result()))
                return
            if isinstance(error, Exception):
                breaker.record_failure(token, error)
                return
        future.cancel()
        breaker.release(token)

    def _wait_sync(self, delay: float, deadline: Deadline | None, name: str) -> None:
        if deadline is None:
            self._sleep(delay)
            return
        remaining = deadline.remaining()
        if delay >= remaining:
            self._sleep(max(0.0, remaining))
            logger.warning("deadline_exceeded", operation=name, phase="backoff")
            raise deadline.expired_error(name)
        self._sleep(delay)

    def execute_result(
        self,
        dependency: str,
        operation: Callable[[], Any],
        retry_policy: RetryPolicy | None = None,
        **kwargs: Any,
    ) -> Result[Any]:
        """Like ``execute`` but returns ``Ok``/``Err`` instead of raising."""
        try:
            return Ok(self.execute(dependency, operation, retry_policy, **kwargs))
        except Exception as e:
            return Err(e)

    # ── async ────────────────────────────────────────────────────────────

    async def execute_async(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[Any]],
        retry_policy: RetryPolicy | None = None,
        *,
        deadline: Deadline | None = None,
        timeout: float | None = None,
        breaker_config: BreakerConfig | None = None,
        on_attempt: AttemptCallback | None = None,
        operation_name: str | None = None,
    ) -> Any:
        """Async counterpart of ``execute`` for coroutine functions.

        Backoff waits use ``asyncio.sleep``, suspending only this task.
        """
        policy = retry_policy or self._default_policy
        name = operation_name or getattr(operation, "__name__", "operation")
        breaker = self._registry.get_or_create(dependency, breaker_config)
        effective = self._resolve_deadline(deadline, timeout, name)
        log = logger.bind(dependency=dependency, operation=name)

        attempt = 0
        delay = 0.0
        while True:
            attempt += 1
            if effective is not None and effective.is_expired():
                log.warning("deadline_exceeded", attempt=attempt, phase="before_attempt")
                raise effective.expired_error(name)

            admission = breaker.allow()
            if not admission.admitted or admission.token is None:
                error = admission.error()
                self._notify(on_attempt, AttemptRecord(attempt, delay, AttemptOutcome.REJECTED, error))
                log.info("circuit_fail_fast", attempt=attempt, state=admission.state.value)
                raise error

            token = admission.token
            try:
                succeeded, payload = await self._run_async(breaker, token, operation, effective, name)
            except DeadlineExceededError as exc:
                self._notify(on_attempt, AttemptRecord(attempt, delay, AttemptOutcome.TIMED_OUT, exc))
                log.warning("deadline_exceeded", attempt=attempt, phase="attempt")
                raise

            if succeeded:
                breaker.record_success(token)
                self._notify(on_attempt, AttemptRecord(attempt, delay, AttemptOutcome.SUCCESS))
                if attempt > 1:
                    log.info("retry_succeeded", attempt=attempt)
                return payload

            error = payload
            breaker.record_failure(token, error)
            outcome, next_delay = self._score(policy, attempt, error)
            self._notify(on_attempt, AttemptRecord(attempt, delay, outcome, error))

            if next_delay is None:
                log.warning(
                    "retry_stopped",
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    outcome=outcome.value,
                    error=repr(error),
                )
                raise error

            delay = next_delay
            log.info("retry_scheduled", attempt=attempt, next_attempt=attempt + 1, delay=round(delay, 3))
            await self._wait_async(delay, effective, name)

    async def _run_async(
        self,
        breaker: CircuitBreaker,
        token: BreakerToken,
        operation: Callable[[], Awaitable[Any]],
        deadline: Deadline | None,
        name: str,
    ) -> tuple[bool, Any]:
        if deadline is None:
            try:
                value = await operation()
            except Exception as e:
                return False, e
            except BaseException:
                breaker.release(token)
                raise
            return _split(value)

        remaining = deadline.remaining()
        if remaining <= 0:
            breaker.release(token)
            raise deadline.expired_error(name)

        async def _attempt() -> Any:
            return await operation()

        task = asyncio.get_running_loop().create_task(_attempt(), context=attempt_context(deadline))
        try:
            done, _ = await asyncio.wait({task}, timeout=remaining)
        except BaseException:
            # Caller cancelled while waiting
            task.cancel()
            breaker.release(token)
            raise

        if not done:
            await self._teardown_async(breaker, token, task)
            raise deadline.expired_error(name)

        if task.cancelled():
            breaker.release(token)
            raise asyncio.CancelledError()
        error = task.exception()
        if error is None:
            return _split(task.result())
        if isinstance(error, Exception):
            return False, error
        breaker.release(token)
        raise error

    async def _teardown_async(
        self,
        breaker: CircuitBreaker,
        token: BreakerToken,
        task: asyncio.Future[Any],
    ) -> None:
        if not task.done() and self._teardown_grace > 0:
            await asyncio.wait({task}, timeout=self._teardown_grace)
        if not task.done():
            task.cancel()
        elif not task.cancelled():
            error = task.exception()
            if error is None:
                _settle(breaker, token, *_split(task.result()))
                return
            if isinstance(error, Exception):
                breaker.record_failure(token, error)
                return
        breaker.release(token)

    async def _wait_async(self, delay: float, deadline: Deadline | None, name: str) -> None:
        if deadline is None:
            await self._async_sleep(delay)
            return
        remaining = deadline.remaining()
        if delay >= remaining:
            await self._async_sleep(max(0.0, remaining))
            logger.warning("deadline_exceeded", operation=name, phase="backoff")
            raise deadline.expired_error(name)
        await self._async_sleep(delay)

    async def execute_result_async(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[Any]],
        retry_policy: RetryPolicy | None = None,
        **kwargs: Any,
    ) -> Result[Any]:
        """Like ``execute_async`` but returns ``Ok``/``Err`` instead of raising."""
        try:
            return Ok(await self.execute_async(dependency, operation, retry_policy, **kwargs))
        except Exception as e:
            return Err(e)


def resilient(
    invoker: ResilientInvoker,
    dependency: str,
    retry_policy: RetryPolicy | None = None,
    **execute_kwargs: Any,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Bind a function to an invoker, dependency and policy.

    Works with both sync and async functions; arguments are bound at call
    time and every call is a fresh invocation.

    Example:
        >>> guarded_search = resilient(invoker, "vector-store", policy)(search)
        >>> hits = guarded_search("query", top_k=5)
    """

    fixed_name = execute_kwargs.pop("operation_name", None)

    def wrap(func: Callable[..., T]) -> Callable[..., T]:
        name = fixed_name or func.__name__

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                return await invoker.execute_async(
                    dependency,
                    functools.partial(func, *args, **kwargs),
                    retry_policy,
                    operation_name=name,
                    **execute_kwargs,
                )
            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            return invoker.execute(
                dependency,
                functools.partial(func, *args, **kwargs),
                retry_policy,
                operation_name=name,
                **execute_kwargs,
            )
        return sync_wrapper

    return wrap


__all__ = [
    "ResilientInvoker",
    "resilient",
    "Classifier",
    "AttemptCallback",
]
