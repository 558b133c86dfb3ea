"""
BattleGym — Promotion Types
"""

from __future__ import annotations

from pydantic import Field

from battlegym.primitives.common import BGBaseModel
from battlegym.primitives.entities import Tactic


class PromotionResult(BGBaseModel):
    tactic: Tactic
    created: bool = False
    already_active: bool = False

    @property
    def message(self) -> str:
        if self.already_active:
            return "Tactic already promoted to production"
        return "Tactic promoted to production successfully"


class HarvestReport(BGBaseModel):
    """Outcome of one harvest pass over high-score battles."""

    created: list[Tactic] = Field(default_factory=list)
    skipped_existing: int = 0
    skipped_no_rebuttal: int = 0

    @property
    def golden_samples(self) -> int:
        return sum(1 for t in self.created if t.is_golden_sample)
