"""
BattleGym — Error Taxonomy

Admission refusals (budget exceeded, kill-switch active) are not errors.
They are recorded as skipped units in the batch result. Everything here is
raised by a component and handled at the boundary that owns it: unit
failures by the orchestrator, promotion errors by the API router.
"""

from __future__ import annotations


class BattleGymError(Exception):
    """Base for all BattleGym errors."""


# ─── Unit failures (caught per battle) ─────────────────────────────


class SimulationError(BattleGymError):
    """The simulated conversation could not be completed."""


class SessionCostExceeded(SimulationError):
    """A single conversation spent more than the per-session cap."""

    def __init__(self, cost: object, cap: object) -> None:
        super().__init__(f"Session cost ${cost} exceeds cap ${cap}")
        self.cost = cost
        self.cap = cap


class MalformedJudgment(BattleGymError):
    """The referee's judgment did not match the rubric shape."""


# ─── Persistence ──────────────────────────────────────────────────


class StoreError(BattleGymError):
    """Base for persistence errors."""


class RecordNotFound(StoreError):
    pass


class DuplicateTacticError(StoreError):
    """A tactic already exists for this battle."""

    def __init__(self, battle_id: str) -> None:
        super().__init__(f"Tactic already exists for battle {battle_id}")
        self.battle_id = battle_id


# ─── Promotion ────────────────────────────────────────────────────


class PromotionError(BattleGymError):
    """A tactic could not be promoted. No partial state is left behind."""


class TacticNotFound(PromotionError):
    pass


class BattleNotFound(PromotionError):
    pass


class NoWinningRebuttal(PromotionError):
    pass


class PromotionConflict(PromotionError):
    pass


# ─── Scenarios ────────────────────────────────────────────────────


class ScenarioNotFound(BattleGymError):
    pass


class MalformedConflictState(BattleGymError):
    """The scenario architect's reply is not a usable conflict breakdown."""


class NoActivePersonas(BattleGymError):
    pass
