"""Bounded context assembly.

Selects content units for a downstream consumer (typically a language
model prompt) so the selection never exceeds a capacity budget, with one
documented exception: PINNED content is always kept.

Selection rules:
    - Tiers are processed PINNED, RECENT, RELEVANT, HISTORICAL
    - Within a tier, units are scanned in caller order and accepted while
      their cost fits the remaining budget
    - A unit that does not fit is skipped, not fatal: scanning continues in
      case a smaller unit still fits, and the result is marked truncated
    - PINNED units are accepted even past the budget; the remaining budget
      may go negative there, which flags ``over_budget``
    - Once the budget is negative, later tiers accept nothing

Example:
    >>> assembler = ContextAssembler(CharacterEstimator())
    >>> ctx = assembler.assemble(
    ...     100,
    ...     {
    ...         PriorityTier.PINNED: [ContentUnit("system", cost=30)],
    ...         PriorityTier.RECENT: [ContentUnit(m, cost=40) for m in ("a", "b", "c")],
    ...     },
    ... )
    >>> ctx.total_cost, ctx.truncated
    (70.0, True)
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence

from keel.context.budget import BudgetEstimator, CharacterEstimator, unit_cost
from keel.context.models import (
    TIER_ORDER,
    AssembledContext,
    ContentUnit,
    PriorityTier,
    TierReport,
    check_cost,
)
from keel.core.errors import ContextValidationError
from keel.core.logging import get_logger

logger = get_logger(__name__)

Pools = Mapping[PriorityTier | str, Iterable[ContentUnit]]


def _within(amount: float, budget: float) -> bool:
    # Fractional costs drift when summed; 0.1 * 3 must still fit 0.3
    return amount <= budget or math.isclose(amount, budget)


def group_by_tier(units: Iterable[ContentUnit]) -> dict[PriorityTier, list[ContentUnit]]:
    """Group a flat sequence by each unit's own tier, preserving order."""
    grouped: dict[PriorityTier, list[ContentUnit]] = {tier: [] for tier in TIER_ORDER}
    for unit in units:
        if not isinstance(unit, ContentUnit):
            raise ContextValidationError(f"Expected ContentUnit, got {type(unit).__name__}")
        grouped[unit.tier].append(unit)
    return grouped


def _normalize_pools(pools: Pools) -> dict[PriorityTier, list[ContentUnit]]:
    normalized: dict[PriorityTier, list[ContentUnit]] = {}
    for key, units in pools.items():
        tier = PriorityTier.parse(key)
        if tier in normalized:
            raise ContextValidationError(f"Pool for tier '{tier.value}' given more than once")
        pool = list(units)
        for unit in pool:
            if not isinstance(unit, ContentUnit):
                raise ContextValidationError(
                    f"Pool '{tier.value}' contains {type(unit).__name__}, expected ContentUnit"
                )
        normalized[tier] = pool
    return normalized


class ContextAssembler:
    """Selects a budget-respecting subset of tiered content.

    Stateless apart from the estimator, so one instance can be shared
    across threads and tasks.
    """

    def __init__(self, estimator: BudgetEstimator | None = None):
        self.estimator = estimator or CharacterEstimator()

    def assemble(self, budget: float, pools: Pools) -> AssembledContext:
        """Assemble a bounded context from tiered pools.

        Args:
            budget: Capacity in budget units, finite and non-negative
            pools: Tier (or tier name) → units in relevance order. The pool
                key decides the tier a unit is selected under.

        Returns:
            AssembledContext with the accepted units in selection order

        Raises:
            ContextValidationError: Invalid budget, cost, tier or pool
        """
        start_budget = check_cost(budget, "budget")
        by_tier = _normalize_pools(pools)

        # Estimate everything up front so a bad unit fails before selection
        costed = {
            tier: [(unit, unit_cost(unit, self.estimator)) for unit in by_tier.get(tier, ())]
            for tier in TIER_ORDER
        }

        consumed = 0.0
        units: list[ContentUnit] = []
        costs: list[float] = []
        tiers: list[PriorityTier] = []
        rejected: list[ContentUnit] = []
        reports: list[TierReport] = []

        for tier in TIER_ORDER:
            accepted = 0
            skipped = 0
            tier_cost = 0.0
            for unit, cost in costed[tier]:
                if tier is PriorityTier.PINNED or _within(consumed + cost, start_budget):
                    units.append(unit)
                    costs.append(cost)
                    tiers.append(tier)
                    consumed += cost
                    tier_cost += cost
                    accepted += 1
                else:
                    rejected.append(unit)
                    skipped += 1
            reports.append(
                TierReport(
                    tier=tier,
                    offered=len(costed[tier]),
                    accepted=accepted,
                    rejected=skipped,
                    cost=tier_cost,
                )
            )

        over_budget = not _within(consumed, start_budget)
        remaining = start_budget - consumed if over_budget else max(start_budget - consumed, 0.0)
        result = AssembledContext(
            units=tuple(units),
            costs=tuple(costs),
            tiers=tuple(tiers),
            total_cost=sum(costs, 0.0),
            budget=start_budget,
            remaining=remaining,
            truncated=bool(rejected) or over_budget,
            over_budget=over_budget,
            tier_reports=tuple(reports),
            rejected=tuple(rejected),
        )

        if over_budget:
            logger.warning(
                "pinned_over_budget",
                budget=start_budget,
                pinned_cost=reports[0].cost,
                overflow=-remaining,
            )
        logger.debug(
            "context_assembled",
            budget=start_budget,
            total_cost=result.total_cost,
            accepted=len(units),
            rejected=len(rejected),
            truncated=result.truncated,
        )
        return result

    def assemble_units(self, budget: float, units: Sequence[ContentUnit]) -> AssembledContext:
        """Assemble from a flat list, each unit under its own tier."""
        return self.assemble(budget, group_by_tier(units))


__all__ = ["ContextAssembler", "group_by_tier", "Pools"]
