"""
Budget estimation: content unit → cost in budget units.

Estimators are pure and deterministic, and costs are additive: the cost
of a sequence is exactly the sum of its units' costs. The assembler relies
on that to track the remaining budget by plain subtraction, so an
estimator must never apply cross-unit discounts.

A unit's declared ``cost`` always wins over the estimator; callers that
already have exact token counts from their tokenizer set it directly.

Examples:
    >>> from keel.context.budget import CharacterEstimator
    >>> from keel.context.models import ContentUnit, PriorityTier
    >>> estimator = CharacterEstimator(chars_per_token=4)
    >>> estimator.cost(ContentUnit("You are a helpful assistant.", PriorityTier.PINNED))
    7.0
    >>> estimator.cost(ContentUnit({"role": "user", "content": "hi there"}))
    2.0

Tags:
    context-budget, token-estimation, keel-core
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from keel.context.models import ContentUnit, check_cost


@runtime_checkable
class BudgetEstimator(Protocol):
    """Converts a content unit into a non-negative cost."""

    def cost(self, unit: ContentUnit) -> float:
        ...


def payload_text(payload: Any) -> str:
    """Text an estimator measures for a payload.

    - ``str`` as is; ``bytes`` decoded as UTF-8
    - chat messages (mappings or objects with ``content``) use the content
    - lists of content parts join their text parts with newlines
    - other mappings are serialised as sorted JSON
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    if isinstance(payload, Mapping):
        if "content" in payload:
            return payload_text(payload["content"])
        if "text" in payload:
            return payload_text(payload["text"])
        return json.dumps(payload, sort_keys=True, default=str)
    if isinstance(payload, (list, tuple)):
        return "\n".join(payload_text(part) for part in payload)
    content = getattr(payload, "content", None)
    if content is not None:
        return payload_text(content)
    return str(payload)


@dataclass(frozen=True)
class CharacterEstimator:
    """Approximate tokens as ``ceil(characters / chars_per_token)``.

    Attributes:
        chars_per_token: Characters per budget unit (4 suits English text)
        per_unit_overhead: Flat cost added to every unit (message framing)
    """

    chars_per_token: float = 4.0
    per_unit_overhead: float = 0.0

    def __post_init__(self) -> None:
        if self.chars_per_token <= 0:
            raise ValueError(f"chars_per_token must be positive, got {self.chars_per_token}")
        check_cost(self.per_unit_overhead, "per_unit_overhead")

    def cost(self, unit: ContentUnit) -> float:
        text = payload_text(unit.payload)
        return float(math.ceil(len(text) / self.chars_per_token)) + self.per_unit_overhead


@dataclass(frozen=True)
class WordEstimator:
    """Approximate tokens as whitespace-separated words."""

    per_unit_overhead: float = 0.0

    def __post_init__(self) -> None:
        check_cost(self.per_unit_overhead, "per_unit_overhead")

    def cost(self, unit: ContentUnit) -> float:
        return float(len(payload_text(unit.payload).split())) + self.per_unit_overhead


def unit_cost(unit: ContentUnit, estimator: BudgetEstimator) -> float:
    """Declared cost if present, otherwise the estimator's."""
    if unit.cost is not None:
        return float(unit.cost)
    return check_cost(estimator.cost(unit), f"estimated cost of {unit.key or 'unit'}")


def total_cost(units: Iterable[ContentUnit], estimator: BudgetEstimator) -> float:
    """Sum of unit costs."""
    return sum((unit_cost(unit, estimator) for unit in units), 0.0)


def estimator_from_name(name: str, *, chars_per_token: float = 4.0) -> BudgetEstimator:
    """Build an estimator by name: ``chars`` or ``words``."""
    key = name.strip().lower()
    if key in ("chars", "characters", "char"):
        return CharacterEstimator(chars_per_token=chars_per_token)
    if key in ("words", "word"):
        return WordEstimator()
    raise ValueError(f"Unknown estimator {name!r}; expected 'chars' or 'words'")


__all__ = [
    "BudgetEstimator",
    "CharacterEstimator",
    "WordEstimator",
    "payload_text",
    "unit_cost",
    "total_cost",
    "estimator_from_name",
]
