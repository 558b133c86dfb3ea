"""
BattleGym — Shared Primitives

Entity types and helpers every system communicates through.
"""

from battlegym.primitives.common import (
    BGBaseModel,
    HealthStatus,
    Identified,
    ModelTier,
    Timestamped,
    new_id,
    usd,
    utc_day_start,
    utc_now,
)
from battlegym.primitives.entities import (
    Battle,
    BillingLedgerEntry,
    ConflictState,
    KillSwitchState,
    Persona,
    ScenarioBreakthrough,
    ScenarioInjection,
    ScenarioStatus,
    Tactic,
)

__all__ = [
    "BGBaseModel",
    "Battle",
    "BillingLedgerEntry",
    "ConflictState",
    "HealthStatus",
    "Identified",
    "KillSwitchState",
    "ModelTier",
    "Persona",
    "ScenarioBreakthrough",
    "ScenarioInjection",
    "ScenarioStatus",
    "Tactic",
    "Timestamped",
    "new_id",
    "usd",
    "utc_day_start",
    "utc_now",
]
