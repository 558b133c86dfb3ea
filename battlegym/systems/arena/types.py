"""
BattleGym — Arena Types

Design notes:
- A unit is one admission decision plus, if admitted, one battle. Every
  unit settles into exactly one UnitOutcome.
- HALTED and BUDGET_EXCEEDED are admission refusals, not errors. They
  never add to BatchResult.errors.
- BatchResult aggregates (battles_completed, average_score, total_cost)
  cover only units that persisted a Battle.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import Field

from battlegym.primitives.common import BGBaseModel, utc_now
from battlegym.primitives.entities import Battle, Persona


class UnitOutcome(enum.StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    HALTED = "halted"
    BUDGET_EXCEEDED = "budget_exceeded"


class UnitRequest(BGBaseModel):
    """Everything needed to run one battle."""

    persona: Persona
    batch_id: str | None = None
    scenario_id: str | None = None
    # Pinned into the persona's context for scenario battles
    objection: str | None = None
    # Structured scenario prompt; replaces the plain objection block when set
    scenario_brief: str | None = None
    temperature: float | None = None


class UnitResult(BGBaseModel):
    persona_id: str
    outcome: UnitOutcome
    battle: Battle | None = None
    error: str | None = None
    cost_usd: Decimal = Decimal("0")


class SimulationResult(BGBaseModel):
    lines: list[str] = Field(default_factory=list)
    turns: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def transcript(self) -> str:
        return "\n\n".join(self.lines)


class BatchResult(BGBaseModel):
    batch_id: str
    battles_completed: int = 0
    average_score: float = 0.0
    total_cost: Decimal = Decimal("0")
    completed_at: datetime = Field(default_factory=utc_now)
    errors: list[str] = Field(default_factory=list)
    requested: int = 0
    halted: bool = False
    halted_units: int = 0
    budget_skipped_units: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "battlesCompleted": self.battles_completed,
            "averageScore": self.average_score,
            "totalCost": float(self.total_cost),
            "batchId": self.batch_id,
            "completedAt": self.completed_at.isoformat(),
            "errors": list(self.errors),
            "requested": self.requested,
            "halted": self.halted,
            "haltedUnits": self.halted_units,
            "budgetSkippedUnits": self.budget_skipped_units,
            "message": self.message,
        }
