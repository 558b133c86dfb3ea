"""
BattleGym — Sandbox Entities

The persisted records of the adversarial training pipeline. Every system
reads and writes these through the SandboxStore.

Design notes:
- Persona rows are seeded from the master persona table and are read-only
  to the pipeline.
- Battle rows are written exactly once, when a simulated conversation
  completes. Score ranges are enforced here and again by the store.
- BillingLedgerEntry is append-only. It is the only source of truth for
  daily spend.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from pydantic import Field

from battlegym.primitives.common import BGBaseModel, Identified, Timestamped, new_id, utc_now


class ScenarioStatus(enum.StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    # Every session settled but some were refused (kill-switch or budget)
    HALTED = "halted"


class Persona(Identified):
    """A synthetic seller profile with a scripted resistance style."""

    name: str
    category: str = "general"
    system_prompt: str
    traits: list[str] = Field(default_factory=list)
    attack_patterns: list[str] = Field(default_factory=list)
    is_active: bool = True


class Battle(Identified, Timestamped):
    """One simulated negotiation, scored by the referee."""

    persona_id: str
    batch_id: str | None = None
    scenario_id: str | None = None
    referee_score: int = Field(ge=0, le=100)
    success_score: int = Field(ge=0, le=10)
    math_defense_score: int = Field(default=0, ge=0, le=10)
    humanity_score: int = Field(default=0, ge=0, le=10)
    verbal_yes: bool = False
    margin_integrity: int = Field(default=0, ge=0, le=100)
    calculated_profit: Decimal | None = None
    cost_usd: Decimal = Field(default=Decimal("0"), ge=0)
    transcript: str = ""
    winning_rebuttal: str | None = None
    referee_feedback: str = ""
    turns: int = 0
    model_tier: str = "standard"


class ConflictState(BGBaseModel):
    """
    A raw objection broken down into what the seller needs before saying
    yes. Accepts the architect's camelCase JSON keys.
    """

    model_config = {"populate_by_name": True, "extra": "ignore"}

    objection: str
    emotional_state: str = Field(default="", alias="emotionalState")
    underlying_concern: str = Field(default="", alias="underlyingConcern")
    blockers: list[str] = Field(default_factory=list)
    resolution_criteria: list[str] = Field(default_factory=list, alias="resolutionCriteria")


class ScenarioInjection(Identified, Timestamped):
    """One raw objection replayed across many battles."""

    raw_objection: str
    seller_persona: str | None = None
    conflict_state: ConflictState | None = None
    # Scenario block appended to every child persona's prompt
    system_prompt: str | None = None
    status: ScenarioStatus = ScenarioStatus.PENDING
    total_sessions: int = Field(ge=1)
    completed_sessions: int = Field(default=0, ge=0)
    refused_sessions: int = Field(default=0, ge=0)
    top_3_identified: bool = False
    completed_at: datetime | None = None

    @property
    def progress(self) -> int:
        """Completion percentage, 0-100."""
        if self.total_sessions <= 0:
            return 0
        # Half-up rounding
        return (200 * self.completed_sessions + self.total_sessions) // (2 * self.total_sessions)

    @property
    def settled_sessions(self) -> int:
        return self.completed_sessions + self.refused_sessions


class ScenarioBreakthrough(Identified, Timestamped):
    """A top-ranked winning path for a scenario."""

    scenario_id: str
    battle_id: str
    rank: int = Field(ge=1, le=3)
    referee_score: int = Field(ge=0, le=100)
    conflict_resolved: bool
    price_maintained: bool
    winning_rebuttal: str
    insight: str = ""


class Tactic(Identified, Timestamped):
    """A reusable rebuttal eligible for the production closer prompt."""

    battle_id: str | None = None
    rebuttal_text: str
    is_synthetic: bool = False
    priority: int = 5
    is_active: bool = False
    is_golden_sample: bool = False
    promoted_at: datetime | None = None


class BillingLedgerEntry(BGBaseModel):
    """An append-only spend record."""

    id: str = Field(default_factory=new_id)
    environment: str
    provider: str = "openai"
    model: str | None = None
    cost_usd: Decimal = Field(ge=0)
    battle_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class KillSwitchState(BGBaseModel):
    """Process-wide halt flag."""

    active: bool = False
    activated_at: datetime | None = None
    activated_by: str | None = None
