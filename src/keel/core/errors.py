"""
Structured error types for keel-core.

Every failure that crosses the resilience layer is one of four kinds, and
callers need to tell them apart: a "service busy" message for an open
circuit is not the same user experience as a hard error for a malformed
request. Rather than leaving that to ``except`` clause ordering, each
error carries an explicit ``FailureKind`` tag next to the usual category,
retryable flag, context and cause.

Manifesto:
    - **Explicit classification:** The failure value says whether it may be
      retried; the retry policy only reads the tag
    - **Distinct outcomes:** Circuit-open and deadline failures are their own
      types, never coerced to a generic error
    - **Rich context:** Errors carry the dependency name and attempt index
    - **Error chaining:** Preserve original exceptions as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                         KeelError                             │
        │      (category, retryable, kind, retry_after, context)        │
        ├──────────────────────────────────────────────────────────────┤
        │  TransientError          PermanentError      ValidationError  │
        │  (RETRYABLE)             (NON_RETRYABLE)     (NON_RETRYABLE)  │
        │      │                        │                   │           │
        │  DependencyUnavailable   InvalidRequestError  ContextValidation│
        │  RateLimitError                                               │
        │                                                               │
        │  CircuitOpenError        DeadlineExceededError   ConfigError  │
        │  (CIRCUIT_OPEN)          (DEADLINE_EXCEEDED)         │        │
        │                                              InvalidConfigError│
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = TransientError("upstream returned 503", retry_after=2)
    >>> error.kind
    <FailureKind.RETRYABLE: 'retryable'>
    >>> classify_failure(InvalidRequestError("prompt too long"))
    <FailureKind.NON_RETRYABLE: 'non_retryable'>

    Foreign exceptions can opt in by carrying the tag themselves:

    >>> class UpstreamRejected(Exception):
    ...     retryable = False
    >>> classify_failure(UpstreamRejected())
    <FailureKind.NON_RETRYABLE: 'non_retryable'>

Guardrails:
    ❌ DON'T: Raise a generic Exception for a permanent failure
    ✅ DO: Raise PermanentError (or set ``retryable=False``) so it is not retried

    ❌ DON'T: Catch CircuitOpenError and retry in a loop
    ✅ DO: Surface it; the breaker already decides when to probe again

Tags:
    error-handling, exception-hierarchy, retry-logic, failure-kind,
    keel-core, circuit-breaker, deadline
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """The four outcomes a failed invocation can surface as."""

    NON_RETRYABLE = "non_retryable"
    RETRYABLE = "retryable"
    CIRCUIT_OPEN = "circuit_open"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class ErrorCategory(str, Enum):
    """Error categories for classification and log routing."""

    # Infrastructure (usually transient)
    NETWORK = "NETWORK"
    DEPENDENCY = "DEPENDENCY"

    # Caller input
    VALIDATION = "VALIDATION"
    CONTEXT = "CONTEXT"

    # Configuration (never retryable)
    CONFIG = "CONFIG"

    # Resilience layer signals
    CIRCUIT = "CIRCUIT"
    DEADLINE = "DEADLINE"

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        dependency: Name of the dependency being called
        operation: Name/description of the operation
        attempt: 1-based attempt index the error belongs to
        metadata: Additional key-value pairs
    """

    dependency: str | None = None
    operation: str | None = None
    attempt: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ("dependency", "operation", "attempt"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class KeelError(Exception):
    """
    Base exception for all keel-core errors.

    Subclasses set ``default_category``, ``default_retryable`` and, for the
    resilience-layer signals, ``failure_kind``. The ``kind`` property is
    what the retry policy and callers inspect.

    Attributes:
        message: Human-readable description
        category: ErrorCategory for routing
        retryable: Whether the failed operation may be attempted again
        retry_after: Suggested seconds to wait before trying again
        context: ErrorContext with structured metadata
        cause: Underlying exception, also set as ``__cause__``
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    # Fixed kind for resilience signals; None derives the kind from ``retryable``
    failure_kind: FailureKind | None = None

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    @property
    def kind(self) -> FailureKind:
        if self.failure_kind is not None:
            return self.failure_kind
        return FailureKind.RETRYABLE if self.retryable else FailureKind.NON_RETRYABLE

    def with_context(self, **kwargs: Any) -> KeelError:
        """
        Add context to this error (fluent API).

        Usage:
            raise PermanentError("rejected").with_context(
                dependency="llm",
                request_id="abc-123",
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "kind": self.kind.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# DEPENDENCY FAILURES
# =============================================================================


class TransientError(KeelError):
    """
    Temporary failure that may succeed on retry.

    Use for timeouts talking to the dependency, 5xx responses, dropped
    connections and rate limiting. Do NOT use for malformed requests.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class DependencyUnavailableError(TransientError):
    """The dependency answered but reported itself unavailable."""

    default_category = ErrorCategory.DEPENDENCY


class RateLimitError(TransientError):
    """The dependency asked the caller to slow down."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class PermanentError(KeelError):
    """Failure that will not go away by trying again."""

    default_category = ErrorCategory.DEPENDENCY
    default_retryable = False


class InvalidRequestError(PermanentError):
    """The dependency rejected the request as malformed."""

    default_category = ErrorCategory.VALIDATION


class ValidationError(KeelError):
    """Caller-supplied data failed validation."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class ContextValidationError(ValidationError):
    """Invalid input to context assembly (negative budget or cost, unknown tier)."""

    default_category = ErrorCategory.CONTEXT


class ConfigError(KeelError):
    """Configuration error."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """A configuration value is out of range."""

    def __init__(self, key: str, value: Any, reason: str = "", **kwargs: Any):
        self.key = key
        self.value = value
        message = f"Invalid value for {key}: {value!r}"
        if reason:
            message += f" ({reason})"
        super().__init__(message, **kwargs)


# =============================================================================
# RESILIENCE SIGNALS
# =============================================================================


class CircuitOpenError(KeelError):
    """
    Raised when a call is rejected fail-fast by a circuit breaker.

    The dependency was not contacted. ``retry_after`` holds the seconds
    until the breaker will admit a probe, when known.
    """

    default_category = ErrorCategory.CIRCUIT
    failure_kind = FailureKind.CIRCUIT_OPEN

    def __init__(
        self,
        dependency: str,
        *,
        state: str | None = None,
        retry_after: float | None = None,
        message: str | None = None,
        **kwargs: Any,
    ):
        self.dependency = dependency
        self.state = state
        super().__init__(
            message or f"Circuit '{dependency}' is open, rejecting request",
            retry_after=retry_after,
            context=kwargs.pop("context", None) or ErrorContext(dependency=dependency),
            **kwargs,
        )


class DeadlineExceededError(KeelError, builtins.TimeoutError):
    """
    Raised when the overall deadline across an attempt loop elapses.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout: The deadline length that was exceeded
        elapsed: How long the loop ran before giving up
        operation: Name/description of the operation
    """

    default_category = ErrorCategory.DEADLINE
    failure_kind = FailureKind.DEADLINE_EXCEEDED

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "operation",
        **kwargs: Any,
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation

        message = f"Operation '{operation}' exceeded its {timeout}s deadline"
        if elapsed is not None:
            message += f" (ran for {elapsed:.2f}s)"
        super().__init__(message, **kwargs)


class TokenAlreadyResolvedError(KeelError):
    """A breaker admission token was resolved more than once."""

    default_category = ErrorCategory.INTERNAL


# =============================================================================
# CLASSIFICATION
# =============================================================================


def classify_failure(error: BaseException) -> FailureKind:
    """
    Read the failure kind carried by an error.

    Resolution order: ``KeelError.kind``; an explicit ``failure_kind``
    attribute (enum or its string value); a boolean ``retryable``
    attribute. Anything else is treated as transient.
    """
    if isinstance(error, KeelError):
        return error.kind

    tagged = getattr(error, "failure_kind", None)
    if isinstance(tagged, FailureKind):
        return tagged
    if isinstance(tagged, str):
        try:
            return FailureKind(tagged)
        except ValueError:
            pass

    retryable = getattr(error, "retryable", None)
    if isinstance(retryable, bool):
        return FailureKind.RETRYABLE if retryable else FailureKind.NON_RETRYABLE

    return FailureKind.RETRYABLE


def is_retryable(error: BaseException) -> bool:
    """True when the error's failure kind allows another attempt."""
    return classify_failure(error) is FailureKind.RETRYABLE


def get_retry_after(error: BaseException) -> float | None:
    """Suggested wait from the error, if it carries one."""
    value = getattr(error, "retry_after", None)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    """Best-effort category for any exception."""
    if isinstance(error, KeelError):
        return error.category
    if isinstance(error, (ConnectionError, builtins.TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, (ValueError, TypeError)):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "FailureKind",
    "ErrorCategory",
    "ErrorContext",
    "KeelError",
    "TransientError",
    "DependencyUnavailableError",
    "RateLimitError",
    "PermanentError",
    "InvalidRequestError",
    "ValidationError",
    "ContextValidationError",
    "ConfigError",
    "InvalidConfigError",
    "CircuitOpenError",
    "DeadlineExceededError",
    "TokenAlreadyResolvedError",
    "classify_failure",
    "is_retryable",
    "get_retry_after",
    "categorize_error",
]
