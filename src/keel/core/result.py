"""
Result envelope for explicit success/failure handling.

Operations wrapped by the resilient invoker may report failure either by
raising or by returning ``Err``. The invoker's ``execute_result`` returns
the same envelope, so calling code can branch on the failure kind without
``try``/``except``.

Examples:
    >>> from keel.core.result import Ok, Err
    >>> Ok(3).map(lambda v: v * 2)
    Ok(6)
    >>> result = Err(ValueError("boom"))
    >>> result.unwrap_or(0)
    0
    >>> result.kind
    <FailureKind.RETRYABLE: 'retryable'>

Tags:
    result-pattern, error-handling, keel-core
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from keel.core.errors import FailureKind, KeelError, classify_failure

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the value. Safe for Ok."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def unwrap_or_else(self, f: Callable[[BaseException], T]) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """Transform the value if Ok."""
        return Ok(f(self.value))

    def flat_map(self, f: Callable[[T], Result[U]]) -> Result[U]:
        """Chain to another Result-returning function."""
        return f(self.value)

    def map_err(self, f: Callable[[BaseException], BaseException]) -> Result[T]:
        return self

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed result carrying the error value."""

    error: BaseException

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    @property
    def kind(self) -> FailureKind:
        """Failure kind read from the carried error."""
        return classify_failure(self.error)

    def unwrap(self) -> T:
        """Raise the error. Use only when you're sure it's Ok."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def unwrap_or_else(self, f: Callable[[BaseException], T]) -> T:
        return f(self.error)

    def map(self, f: Callable[[T], U]) -> Result[U]:
        return Err(self.error)

    def flat_map(self, f: Callable[[T], Result[U]]) -> Result[U]:
        return Err(self.error)

    def map_err(self, f: Callable[[BaseException], BaseException]) -> Result[T]:
        """Transform the error."""
        return Err(f(self.error))

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.error, KeelError):
            return {"ok": False, "error": self.error.to_dict()}
        return {
            "ok": False,
            "error": {
                "error_type": type(self.error).__name__,
                "message": str(self.error),
                "kind": self.kind.value,
            },
        }

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Ok[T] | Err[T]


def try_result(f: Callable[[], T]) -> Result[T]:
    """Run a zero-argument callable and wrap its outcome."""
    try:
        return Ok(f())
    except Exception as e:
        return Err(e)


def partition_results(results: Iterable[Result[T]]) -> tuple[list[T], list[BaseException]]:
    """Split results into successful values and errors, preserving order."""
    values: list[T] = []
    errors: list[BaseException] = []
    for result in results:
        if isinstance(result, Ok):
            values.append(result.value)
        else:
            errors.append(result.error)
    return values, errors


__all__ = [
    "Ok",
    "Err",
    "Result",
    "try_result",
    "partition_results",
]
