"""
BattleGym — Arena (Battle Orchestration)

Runs batches of simulated negotiations under admission control.

Public interface:
  BattleOrchestrator   — run_batch(size), run_unit(request)
  BattleSimulator      — the closer/persona turn loop
  BatchResult          — aggregate outcome of one batch
  UnitOutcome          — completed / failed / halted / budget_exceeded
  select_personas      — seeded round-robin persona selection
"""

from battlegym.systems.arena.selection import select_personas
from battlegym.systems.arena.service import BattleOrchestrator
from battlegym.systems.arena.simulator import BattleSimulator, CostMeter, build_closer_prompt
from battlegym.systems.arena.types import (
    BatchResult,
    SimulationResult,
    UnitOutcome,
    UnitRequest,
    UnitResult,
)

__all__ = [
    "BatchResult",
    "BattleOrchestrator",
    "BattleSimulator",
    "CostMeter",
    "SimulationResult",
    "UnitOutcome",
    "UnitRequest",
    "UnitResult",
    "build_closer_prompt",
    "select_personas",
]
