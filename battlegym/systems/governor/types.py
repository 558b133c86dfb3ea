"""
BattleGym — Budget Governor Types

Design notes:
- BudgetClassification is recomputed from the ledger on every call. It is
  never cached across battle starts.
- `reserved` is the sum of provisional debits for admitted battles whose
  real cost has not reached the ledger yet. It is zero outside a batch.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from pydantic import Field

from battlegym.primitives.common import BGBaseModel, ModelTier, new_id


class BudgetLevel(enum.StrEnum):
    NORMAL = "normal"
    THROTTLED = "throttled"
    EXCEEDED = "exceeded"


class BudgetClassification(BGBaseModel):
    environment: str
    spend_today: Decimal
    reserved: Decimal = Decimal("0")
    daily_cap: Decimal
    throttled: bool
    exceeded: bool
    remaining: Decimal

    @property
    def level(self) -> BudgetLevel:
        if self.exceeded:
            return BudgetLevel.EXCEEDED
        if self.throttled:
            return BudgetLevel.THROTTLED
        return BudgetLevel.NORMAL


class Admission(BGBaseModel):
    """Outcome of one admission decision."""

    admitted: bool
    tier: ModelTier | None = None
    reservation_id: str = Field(default_factory=new_id)
    reserved_usd: Decimal = Decimal("0")
    classification: BudgetClassification


class BudgetSummary(BGBaseModel):
    """Operator view of today's spend."""

    environment: str
    day_start: datetime
    spend_today: Decimal
    # Provisional debits of battles in flight, not yet on the ledger
    reserved: Decimal = Decimal("0")
    daily_cap: Decimal
    remaining: Decimal
    percent_used: float
    throttled: bool
    exceeded: bool
    breakdown: dict[str, Decimal] = Field(default_factory=dict)
