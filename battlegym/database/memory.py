"""
BattleGym — In-Memory Sandbox Store

Used when no database is configured (local development) and in tests.
A single asyncio.Lock serialises every write, which gives the same
atomicity the Postgres store gets from transactions and constraints.
Records are copied on the way in and out so callers never alias stored state.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog

from battlegym.database.store import SandboxStore
from battlegym.errors import DuplicateTacticError, RecordNotFound
from battlegym.primitives.entities import (
    Battle,
    BillingLedgerEntry,
    Persona,
    ScenarioBreakthrough,
    ScenarioInjection,
    ScenarioStatus,
    Tactic,
)

logger = structlog.get_logger()


class InMemorySandboxStore(SandboxStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._personas: dict[str, Persona] = {}
        self._battles: dict[str, Battle] = {}
        self._ledger: list[BillingLedgerEntry] = []
        self._scenarios: dict[str, ScenarioInjection] = {}
        self._breakthroughs: dict[str, list[ScenarioBreakthrough]] = {}
        self._tactics: dict[str, Tactic] = {}

    async def connect(self) -> None:
        logger.warning("sandbox_store_in_memory", note="state is lost on restart")

    async def health_check(self) -> dict[str, Any]:
        return {"status": "connected", "backend": "memory"}

    # ─── Personas ─────────────────────────────────────────────────

    async def list_active_personas(self) -> list[Persona]:
        return [
            p.model_copy()
            for p in sorted(self._personas.values(), key=lambda p: p.id)
            if p.is_active
        ]

    async def get_persona(self, persona_id: str) -> Persona | None:
        persona = self._personas.get(persona_id)
        return persona.model_copy() if persona else None

    async def upsert_persona(self, persona: Persona) -> Persona:
        async with self._lock:
            self._personas[persona.id] = persona.model_copy()
        return persona

    # ─── Battles ──────────────────────────────────────────────────

    async def insert_battle(self, battle: Battle) -> Battle:
        async with self._lock:
            if battle.id in self._battles:
                raise ValueError(f"Battle {battle.id} already exists")
            self._battles[battle.id] = battle.model_copy()
        return battle

    async def get_battle(self, battle_id: str) -> Battle | None:
        battle = self._battles.get(battle_id)
        return battle.model_copy() if battle else None

    async def list_battles(
        self,
        scenario_id: str | None = None,
        score_above: int | None = None,
    ) -> list[Battle]:
        battles = [
            b for b in self._battles.values()
            if (scenario_id is None or b.scenario_id == scenario_id)
            and (score_above is None or b.referee_score > score_above)
        ]
        battles.sort(key=lambda b: b.referee_score, reverse=True)
        return [b.model_copy() for b in battles]

    async def list_recent_battles(self, limit: int, offset: int = 0) -> tuple[list[Battle], int]:
        # Ties on created_at: most recently inserted first
        battles = sorted(
            reversed(list(self._battles.values())), key=lambda b: b.created_at, reverse=True,
        )
        return [b.model_copy() for b in battles[offset:offset + limit]], len(battles)

    # ─── Billing ledger ───────────────────────────────────────────

    async def append_ledger_entry(self, entry: BillingLedgerEntry) -> None:
        async with self._lock:
            self._ledger.append(entry.model_copy())

    async def sum_ledger(self, environment: str, since: datetime) -> Decimal:
        return sum(
            (e.cost_usd for e in self._ledger
             if e.environment == environment and e.created_at >= since),
            Decimal("0"),
        )

    async def ledger_breakdown(self, environment: str, since: datetime) -> dict[str, Decimal]:
        breakdown: dict[str, Decimal] = {}
        for e in self._ledger:
            if e.environment == environment and e.created_at >= since:
                breakdown[e.provider] = breakdown.get(e.provider, Decimal("0")) + e.cost_usd
        return breakdown

    # ─── Scenarios ────────────────────────────────────────────────

    async def insert_scenario(self, scenario: ScenarioInjection) -> ScenarioInjection:
        async with self._lock:
            self._scenarios[scenario.id] = scenario.model_copy()
        return scenario

    async def get_scenario(self, scenario_id: str) -> ScenarioInjection | None:
        scenario = self._scenarios.get(scenario_id)
        return scenario.model_copy() if scenario else None

    def _require_scenario(self, scenario_id: str) -> ScenarioInjection:
        scenario = self._scenarios.get(scenario_id)
        if scenario is None:
            raise RecordNotFound(f"Scenario not found: {scenario_id}")
        return scenario

    async def mark_scenario_running(self, scenario_id: str) -> ScenarioInjection:
        async with self._lock:
            scenario = self._require_scenario(scenario_id)
            if scenario.status == ScenarioStatus.PENDING:
                scenario.status = ScenarioStatus.RUNNING
            return scenario.model_copy()

    async def increment_completed_sessions(self, scenario_id: str) -> ScenarioInjection:
        async with self._lock:
            scenario = self._require_scenario(scenario_id)
            if scenario.settled_sessions < scenario.total_sessions:
                scenario.completed_sessions += 1
            return scenario.model_copy()

    async def increment_refused_sessions(self, scenario_id: str) -> ScenarioInjection:
        async with self._lock:
            scenario = self._require_scenario(scenario_id)
            if scenario.settled_sessions < scenario.total_sessions:
                scenario.refused_sessions += 1
            return scenario.model_copy()

    async def complete_scenario_with_breakthroughs(
        self,
        scenario_id: str,
        breakthroughs: list[ScenarioBreakthrough],
        completed_at: datetime,
    ) -> bool:
        async with self._lock:
            scenario = self._require_scenario(scenario_id)
            if scenario.status == ScenarioStatus.COMPLETED:
                return False
            self._breakthroughs[scenario_id] = [b.model_copy() for b in breakthroughs]
            scenario.top_3_identified = True
            scenario.status = ScenarioStatus.COMPLETED
            scenario.completed_at = completed_at
            return True

    async def reset_scenario(self, scenario_id: str) -> ScenarioInjection:
        async with self._lock:
            scenario = self._require_scenario(scenario_id)
            self._breakthroughs.pop(scenario_id, None)
            scenario.top_3_identified = False
            scenario.status = ScenarioStatus.RUNNING
            scenario.completed_at = None
            return scenario.model_copy()

    async def mark_scenario_failed(self, scenario_id: str) -> None:
        async with self._lock:
            self._require_scenario(scenario_id).status = ScenarioStatus.FAILED

    async def mark_scenario_halted(self, scenario_id: str, halted_at: datetime) -> bool:
        async with self._lock:
            scenario = self._require_scenario(scenario_id)
            if scenario.status != ScenarioStatus.RUNNING:
                return False
            scenario.status = ScenarioStatus.HALTED
            scenario.completed_at = halted_at
            return True

    async def list_breakthroughs(self, scenario_id: str) -> list[ScenarioBreakthrough]:
        rows = self._breakthroughs.get(scenario_id, [])
        return [b.model_copy() for b in sorted(rows, key=lambda b: b.rank)]

    # ─── Tactics ──────────────────────────────────────────────────

    async def get_tactic(self, tactic_id: str) -> Tactic | None:
        tactic = self._tactics.get(tactic_id)
        return tactic.model_copy() if tactic else None

    async def find_tactic_by_battle(self, battle_id: str) -> Tactic | None:
        for tactic in self._tactics.values():
            if tactic.battle_id == battle_id:
                return tactic.model_copy()
        return None

    async def insert_tactic(self, tactic: Tactic) -> Tactic:
        async with self._lock:
            if tactic.battle_id is not None and any(
                t.battle_id == tactic.battle_id for t in self._tactics.values()
            ):
                raise DuplicateTacticError(tactic.battle_id)
            self._tactics[tactic.id] = tactic.model_copy()
        return tactic

    async def activate_tactic(self, tactic_id: str, promoted_at: datetime) -> Tactic | None:
        async with self._lock:
            tactic = self._tactics.get(tactic_id)
            if tactic is None:
                return None
            if not tactic.is_active:
                tactic.is_active = True
                tactic.promoted_at = promoted_at
            return tactic.model_copy()

    async def delete_tactic(self, tactic_id: str) -> None:
        async with self._lock:
            self._tactics.pop(tactic_id, None)

    async def list_active_tactics(self) -> list[Tactic]:
        active = [t for t in self._tactics.values() if t.is_active]
        active.sort(key=lambda t: (-t.priority, t.created_at))
        return [t.model_copy() for t in active]
