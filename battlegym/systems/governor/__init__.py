"""
BattleGym — Budget Governor

Tracks today's spend from the billing ledger, classifies it into
normal / throttled / exceeded, and makes every admission decision.

Public interface:
  BudgetGovernor          — admission control and spend recording
  BudgetClassification    — result of classify()
  Admission               — result of admit(), carries the reservation
  BudgetSummary           — operator view with per-provider breakdown
"""

from battlegym.systems.governor.service import BudgetGovernor
from battlegym.systems.governor.types import (
    Admission,
    BudgetClassification,
    BudgetLevel,
    BudgetSummary,
)

__all__ = [
    "Admission",
    "BudgetClassification",
    "BudgetGovernor",
    "BudgetLevel",
    "BudgetSummary",
]
