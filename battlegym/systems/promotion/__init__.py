"""
BattleGym — Tactic Promotion

Public interface:
  PromotionService          — promote(tactic_id | battle_id), harvest()
  PromotionResult           — the promoted tactic and whether it was created
  HarvestReport             — outcome of one harvest pass
  extract_winning_rebuttal  — rebuttal text with transcript fallback
"""

from battlegym.systems.promotion.service import PromotionService, extract_winning_rebuttal
from battlegym.systems.promotion.types import HarvestReport, PromotionResult

__all__ = [
    "HarvestReport",
    "PromotionResult",
    "PromotionService",
    "extract_winning_rebuttal",
]
