"""
BattleGym — Scenario Types
"""

from __future__ import annotations

from decimal import Decimal

from battlegym.primitives.common import BGBaseModel
from battlegym.primitives.entities import ConflictState


class ConflictAnalysis(BGBaseModel):
    """The architect's breakdown of one objection plus what it cost."""

    state: ConflictState
    # False when the raw objection is passed through unstructured
    structured: bool = False
    cost_usd: Decimal = Decimal("0")
    model: str = ""
