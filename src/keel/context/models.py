"""Data types for bounded context assembly."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterator

from keel.core.errors import ContextValidationError


class PriorityTier(str, Enum):
    """Selection tiers, highest priority first."""

    PINNED = "pinned"          # System directive, non-negotiable
    RECENT = "recent"          # Latest conversation turns
    RELEVANT = "relevant"      # Retrieved documents, ranked
    HISTORICAL = "historical"  # Older history / summaries

    @property
    def rank(self) -> int:
        """0 for PINNED, increasing as priority drops."""
        return TIER_ORDER.index(self)

    @classmethod
    def parse(cls, value: PriorityTier | str) -> PriorityTier:
        """Accept a tier, its value or its name (case-insensitive)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for tier in cls:
                if tier.value == key:
                    return tier
        raise ContextValidationError(
            f"Unknown priority tier: {value!r}",
        ).with_context(valid=[t.value for t in cls])


TIER_ORDER: tuple[PriorityTier, ...] = (
    PriorityTier.PINNED,
    PriorityTier.RECENT,
    PriorityTier.RELEVANT,
    PriorityTier.HISTORICAL,
)


def check_cost(value: Any, what: str = "cost") -> float:
    """Validate a budget or cost: a finite, non-negative number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ContextValidationError(f"{what} must be a number, got {value!r}")
    number = float(value)
    if not math.isfinite(number) or number < 0:
        raise ContextValidationError(f"{what} must be finite and non-negative, got {value!r}")
    return number


@dataclass(frozen=True)
class ContentUnit:
    """A message, document chunk or directive offered for assembly.

    Attributes:
        payload: Opaque content; the assembler never inspects or mutates it
        tier: Priority tier
        cost: Pre-computed cost in budget units; estimated when None
        key: Optional caller identifier (message id, chunk id)
    """

    payload: Any
    tier: PriorityTier = PriorityTier.RELEVANT
    cost: float | None = None
    key: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tier", PriorityTier.parse(self.tier))
        if self.cost is not None:
            check_cost(self.cost)

    def with_cost(self, cost: float) -> ContentUnit:
        return replace(self, cost=cost)


@dataclass(frozen=True)
class TierReport:
    """Per-tier accounting for one assembly."""

    tier: PriorityTier
    offered: int = 0
    accepted: int = 0
    rejected: int = 0
    cost: float = 0.0

    @property
    def truncated(self) -> bool:
        return self.rejected > 0


@dataclass(frozen=True)
class AssembledContext:
    """Result of one ``assemble`` call.

    Attributes:
        units: Accepted units, PINNED first, caller order within a tier
        costs: Cost of each accepted unit, aligned with ``units``
        tiers: Pool each accepted unit was selected from, aligned with ``units``
        total_cost: Sum of ``costs``
        budget: Budget the assembly started from
        remaining: Budget left; negative only when PINNED overflowed
        truncated: True when any unit at any tier was left out
        over_budget: True when PINNED units alone exceeded the budget
        tier_reports: One report per tier, in priority order
        rejected: Units that were left out, in scan order
    """

    units: tuple[ContentUnit, ...]
    costs: tuple[float, ...]
    tiers: tuple[PriorityTier, ...]
    total_cost: float
    budget: float
    remaining: float
    truncated: bool
    over_budget: bool
    tier_reports: tuple[TierReport, ...] = field(default=())
    rejected: tuple[ContentUnit, ...] = field(default=())

    def __len__(self) -> int:
        return len(self.units)

    def __iter__(self) -> Iterator[ContentUnit]:
        return iter(self.units)

    @property
    def payloads(self) -> list[Any]:
        return [unit.payload for unit in self.units]

    @property
    def truncated_tiers(self) -> tuple[PriorityTier, ...]:
        return tuple(report.tier for report in self.tier_reports if report.truncated)

    def report_for(self, tier: PriorityTier | str) -> TierReport:
        wanted = PriorityTier.parse(tier)
        for report in self.tier_reports:
            if report.tier is wanted:
                return report
        return TierReport(tier=wanted)

    def by_tier(self, tier: PriorityTier | str) -> list[ContentUnit]:
        wanted = PriorityTier.parse(tier)
        return [unit for unit, source in zip(self.units, self.tiers) if source is wanted]

    def to_dict(self) -> dict[str, Any]:
        """Summary for logs and the CLI (payloads excluded)."""
        return {
            "budget": self.budget,
            "total_cost": self.total_cost,
            "remaining": self.remaining,
            "accepted": len(self.units),
            "rejected": len(self.rejected),
            "truncated": self.truncated,
            "over_budget": self.over_budget,
            "tiers": {
                report.tier.value: {
                    "offered": report.offered,
                    "accepted": report.accepted,
                    "rejected": report.rejected,
                    "cost": report.cost,
                }
                for report in self.tier_reports
            },
        }


__all__ = [
    "PriorityTier",
    "TIER_ORDER",
    "ContentUnit",
    "TierReport",
    "AssembledContext",
    "check_cost",
]
