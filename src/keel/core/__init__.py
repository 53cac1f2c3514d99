"""Core primitives shared by the execution and context packages.

Modules:
    clock     Clock protocol, MonotonicClock, ManualClock
    errors    KeelError hierarchy, FailureKind, classify_failure
    result    Ok / Err envelope
    logging   structlog configuration and get_logger
    settings  KeelSettings (pydantic-settings) and get_settings
"""

from keel.core.clock import SYSTEM_CLOCK, Clock, ManualClock, MonotonicClock
from keel.core.errors import (
    CircuitOpenError,
    ConfigError,
    ContextValidationError,
    DeadlineExceededError,
    DependencyUnavailableError,
    ErrorCategory,
    ErrorContext,
    FailureKind,
    InvalidConfigError,
    InvalidRequestError,
    KeelError,
    PermanentError,
    RateLimitError,
    TokenAlreadyResolvedError,
    TransientError,
    ValidationError,
    categorize_error,
    classify_failure,
    get_retry_after,
    is_retryable,
)
from keel.core.result import Err, Ok, Result, partition_results, try_result

__all__ = [
    # clock
    "Clock",
    "MonotonicClock",
    "ManualClock",
    "SYSTEM_CLOCK",
    # errors
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
    # result
    "Ok",
    "Err",
    "Result",
    "try_result",
    "partition_results",
]
