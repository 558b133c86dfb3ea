"""
BattleGym — Scenario Injection & Breakthrough Ranking

Public interface:
  ScenarioService       — inject_scenario / rank / reset / status
  ConflictArchitect     — raw objection → ConflictState (optional LLM step)
  build_scenario_brief  — ConflictState → persona prompt block
  rank_battles          — pure top-3 selection over a scenario's battles
"""

from battlegym.systems.scenarios.conflict import (
    ConflictArchitect,
    build_scenario_brief,
    parse_conflict_state,
)
from battlegym.systems.scenarios.ranker import rank_battles
from battlegym.systems.scenarios.service import ScenarioService
from battlegym.systems.scenarios.types import ConflictAnalysis

__all__ = [
    "ConflictAnalysis",
    "ConflictArchitect",
    "ScenarioService",
    "build_scenario_brief",
    "parse_conflict_state",
    "rank_battles",
]
