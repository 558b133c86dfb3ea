"""
BattleGym — Sandbox Store Interface

Every system persists through this interface. All writes are single-row
inserts or updates keyed by UUID, except the two operations that must be
atomic across rows:

- complete_scenario_with_breakthroughs: inserts up to three ranked
  breakthroughs, sets top_3_identified and status=completed, guarded by
  the scenario not already being completed.
- insert_tactic: at most one tactic per battle_id. A second insert for the
  same battle raises DuplicateTacticError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any

from battlegym.primitives.entities import (
    Battle,
    BillingLedgerEntry,
    Persona,
    ScenarioBreakthrough,
    ScenarioInjection,
    Tactic,
)


class SandboxStore(ABC):
    """Abstract relational store for the training sandbox."""

    async def connect(self) -> None:
        """Open connections and ensure the schema exists."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def health_check(self) -> dict[str, Any]: ...

    # ─── Personas ─────────────────────────────────────────────────

    @abstractmethod
    async def list_active_personas(self) -> list[Persona]:
        """Active personas ordered by id."""

    @abstractmethod
    async def get_persona(self, persona_id: str) -> Persona | None: ...

    @abstractmethod
    async def upsert_persona(self, persona: Persona) -> Persona: ...

    # ─── Battles ──────────────────────────────────────────────────

    @abstractmethod
    async def insert_battle(self, battle: Battle) -> Battle: ...

    @abstractmethod
    async def get_battle(self, battle_id: str) -> Battle | None: ...

    @abstractmethod
    async def list_battles(
        self,
        scenario_id: str | None = None,
        score_above: int | None = None,
    ) -> list[Battle]:
        """Battles ordered by referee_score descending."""

    @abstractmethod
    async def list_recent_battles(self, limit: int, offset: int = 0) -> tuple[list[Battle], int]:
        """A page of battles, newest first, and the total battle count."""

    # ─── Billing ledger (append-only) ─────────────────────────────

    @abstractmethod
    async def append_ledger_entry(self, entry: BillingLedgerEntry) -> None: ...

    @abstractmethod
    async def sum_ledger(self, environment: str, since: datetime) -> Decimal: ...

    @abstractmethod
    async def ledger_breakdown(self, environment: str, since: datetime) -> dict[str, Decimal]:
        """Spend since `since` grouped by provider."""

    # ─── Scenarios ────────────────────────────────────────────────

    @abstractmethod
    async def insert_scenario(self, scenario: ScenarioInjection) -> ScenarioInjection: ...

    @abstractmethod
    async def get_scenario(self, scenario_id: str) -> ScenarioInjection | None: ...

    @abstractmethod
    async def mark_scenario_running(self, scenario_id: str) -> ScenarioInjection: ...

    @abstractmethod
    async def increment_completed_sessions(self, scenario_id: str) -> ScenarioInjection:
        """Atomically add one session that ran. Settled sessions never exceed total_sessions."""

    @abstractmethod
    async def increment_refused_sessions(self, scenario_id: str) -> ScenarioInjection:
        """Atomically add one session the kill-switch or budget refused."""

    @abstractmethod
    async def complete_scenario_with_breakthroughs(
        self,
        scenario_id: str,
        breakthroughs: list[ScenarioBreakthrough],
        completed_at: datetime,
    ) -> bool:
        """Returns False (and writes nothing) if the scenario is already completed."""

    @abstractmethod
    async def reset_scenario(self, scenario_id: str) -> ScenarioInjection:
        """Delete breakthroughs, clear top_3_identified, return to running."""

    @abstractmethod
    async def mark_scenario_failed(self, scenario_id: str) -> None: ...

    @abstractmethod
    async def mark_scenario_halted(self, scenario_id: str, halted_at: datetime) -> bool:
        """Running → halted. Returns False (and writes nothing) from any other status."""

    @abstractmethod
    async def list_breakthroughs(self, scenario_id: str) -> list[ScenarioBreakthrough]:
        """Breakthroughs ordered by rank ascending."""

    # ─── Tactics ──────────────────────────────────────────────────

    @abstractmethod
    async def get_tactic(self, tactic_id: str) -> Tactic | None: ...

    @abstractmethod
    async def find_tactic_by_battle(self, battle_id: str) -> Tactic | None: ...

    @abstractmethod
    async def insert_tactic(self, tactic: Tactic) -> Tactic: ...

    @abstractmethod
    async def activate_tactic(self, tactic_id: str, promoted_at: datetime) -> Tactic | None: ...

    @abstractmethod
    async def delete_tactic(self, tactic_id: str) -> None: ...

    @abstractmethod
    async def list_active_tactics(self) -> list[Tactic]:
        """Active tactics ordered by priority descending."""
