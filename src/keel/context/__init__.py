"""Keel Context: budget-bounded selection of tiered content.

MODULE MAP
──────────
  1. models.py    ─ PriorityTier, ContentUnit, AssembledContext, TierReport
  2. budget.py    ─ BudgetEstimator protocol, character and word estimators
  3. assembler.py ─ ContextAssembler, group_by_tier
"""

from keel.context.assembler import ContextAssembler, group_by_tier
from keel.context.budget import (
    BudgetEstimator,
    CharacterEstimator,
    WordEstimator,
    estimator_from_name,
    payload_text,
    total_cost,
    unit_cost,
)
from keel.context.models import (
    TIER_ORDER,
    AssembledContext,
    ContentUnit,
    PriorityTier,
    TierReport,
)

__all__ = [
    # models
    "PriorityTier",
    "TIER_ORDER",
    "ContentUnit",
    "TierReport",
    "AssembledContext",
    # budget
    "BudgetEstimator",
    "CharacterEstimator",
    "WordEstimator",
    "payload_text",
    "unit_cost",
    "total_cost",
    "estimator_from_name",
    # assembler
    "ContextAssembler",
    "group_by_tier",
]
