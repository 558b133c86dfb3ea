"""
BattleGym — Scenario Injector

Fans one raw objection out into `total_sessions` battles, each with the
objection pinned into the persona's context, then ranks the results into
at most three breakthroughs.

Lifecycle:
  inject_scenario()  — analyse the objection into a ConflictState, insert
                       (pending), mark running, schedule the fan-out in the
                       background, return the running scenario
  _run_child()       — one battle through the orchestrator. A unit that
                       ran (persisted or failed) counts towards
                       completed_sessions; a unit the kill-switch or the
                       budget refused counts towards refused_sessions
  _settle()          — once every session is accounted for: rank when
                       nothing was refused, otherwise mark the scenario
                       halted and leave it unranked
  rank()             — status-guarded in the store, so a second call is a
                       no-op
  reset()            — drop breakthroughs, back to running, settle again

Child battles go through BattleOrchestrator.run_unit(), so they obey the
same kill-switch, budget and concurrency rules as scheduled batches.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from battlegym.errors import ScenarioNotFound
from battlegym.primitives.common import utc_now
from battlegym.primitives.entities import (
    ConflictState,
    ScenarioBreakthrough,
    ScenarioInjection,
    ScenarioStatus,
)
from battlegym.systems.arena.selection import select_personas
from battlegym.systems.arena.types import UnitOutcome, UnitRequest
from battlegym.systems.scenarios.conflict import ConflictArchitect, build_scenario_brief
from battlegym.systems.scenarios.ranker import rank_battles
from battlegym.systems.scenarios.types import ConflictAnalysis

if TYPE_CHECKING:
    from battlegym.config import ScenarioConfig
    from battlegym.database.store import SandboxStore
    from battlegym.primitives.entities import Persona
    from battlegym.systems.arena.service import BattleOrchestrator
    from battlegym.systems.governor.service import BudgetGovernor

logger = structlog.get_logger()

_REFUSED = (UnitOutcome.HALTED, UnitOutcome.BUDGET_EXCEEDED)


class ScenarioService:
    def __init__(
        self,
        store: SandboxStore,
        orchestrator: BattleOrchestrator,
        config: ScenarioConfig,
        selection_seed: int | None = None,
        architect: ConflictArchitect | None = None,
        governor: BudgetGovernor | None = None,
        provider_name: str = "openai",
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._config = config
        self._seed = selection_seed
        self._architect = architect or ConflictArchitect()
        # Architect spend goes on the ledger when a governor is wired
        self._governor = governor
        self._provider_name = provider_name
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logger.bind(system="scenarios")

    # ─── Injection ────────────────────────────────────────────────

    async def inject_scenario(
        self,
        raw_objection: str,
        total_sessions: int | None = None,
        seller_persona: str | None = None,
    ) -> ScenarioInjection:
        objection = raw_objection.strip()
        if not objection:
            raise ValueError("raw_objection must not be empty")
        total = self._config.default_total_sessions if total_sessions is None else total_sessions
        if not 1 <= total <= self._config.max_total_sessions:
            raise ValueError(
                f"total_sessions must be between 1 and {self._config.max_total_sessions}"
            )
        seller_persona = (seller_persona or "").strip() or None

        # Personas are resolved before anything is written or spent
        personas = select_personas(await self._store.list_active_personas(), total, self._seed)

        analysis = await self._analyse(objection, seller_persona)
        brief = None
        if analysis.structured or seller_persona:
            brief = build_scenario_brief(analysis.state, seller_persona)

        scenario = await self._store.insert_scenario(
            ScenarioInjection(
                raw_objection=objection,
                seller_persona=seller_persona,
                conflict_state=analysis.state if analysis.structured else None,
                system_prompt=brief,
                total_sessions=total,
            )
        )
        scenario = await self._store.mark_scenario_running(scenario.id)
        self._logger.info(
            "scenario_injected",
            scenario_id=scenario.id,
            total_sessions=total,
            structured=analysis.structured,
        )

        task = asyncio.get_running_loop().create_task(self._fan_out(scenario, personas))
        self._tasks.add(task)
        task.add_done_callback(self._on_fan_out_done)
        return scenario

    async def _analyse(self, objection: str, seller_persona: str | None) -> ConflictAnalysis:
        if self._governor is not None and (await self._governor.classify()).exceeded:
            self._logger.info("conflict_analysis_skipped", reason="budget_exceeded")
            return ConflictAnalysis(state=ConflictState(objection=objection))

        analysis = await self._architect.analyse(objection, seller_persona)
        if self._governor is not None and analysis.cost_usd > 0:
            await self._governor.record_spend(
                analysis.cost_usd, provider=self._provider_name, model=analysis.model or None,
            )
        return analysis

    def _on_fan_out_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error("scenario_fan_out_crashed", error=str(task.exception()))

    async def _fan_out(self, scenario: ScenarioInjection, personas: list[Persona]) -> None:
        with structlog.contextvars.bound_contextvars(scenario_id=scenario.id):
            results = await asyncio.gather(
                *(self._run_child(scenario, p) for p in personas),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, BaseException)]
            if not failures:
                return
            for exc in failures:
                self._logger.error("scenario_child_failed", error=str(exc))
            current = await self._store.get_scenario(scenario.id)
            if current is not None and current.status == ScenarioStatus.RUNNING:
                await self._store.mark_scenario_failed(scenario.id)
                self._logger.error("scenario_failed", failures=len(failures))

    async def _run_child(self, scenario: ScenarioInjection, persona: Persona) -> None:
        result = await self._orchestrator.run_unit(
            UnitRequest(
                persona=persona,
                scenario_id=scenario.id,
                objection=scenario.raw_objection,
                scenario_brief=scenario.system_prompt,
                temperature=self._config.temperature,
            )
        )
        if result.outcome in _REFUSED:
            updated = await self._store.increment_refused_sessions(scenario.id)
        else:
            updated = await self._store.increment_completed_sessions(scenario.id)
        self._logger.info(
            "scenario_session_settled",
            outcome=result.outcome,
            completed_sessions=updated.completed_sessions,
            refused_sessions=updated.refused_sessions,
            total_sessions=updated.total_sessions,
        )
        if result.outcome == UnitOutcome.FAILED and result.error:
            self._logger.warning("scenario_session_failed", error=result.error)
        await self._settle(updated)

    async def _settle(self, scenario: ScenarioInjection) -> None:
        if scenario.settled_sessions < scenario.total_sessions:
            return
        if scenario.refused_sessions == 0:
            await self.rank(scenario.id)
            return
        if await self._store.mark_scenario_halted(scenario.id, utc_now()):
            self._logger.warning(
                "scenario_halted",
                scenario_id=scenario.id,
                completed_sessions=scenario.completed_sessions,
                refused_sessions=scenario.refused_sessions,
            )

    async def wait(self) -> None:
        """Wait for every scheduled fan-out to finish (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait()

    # ─── Ranking ──────────────────────────────────────────────────

    async def rank(self, scenario_id: str) -> list[ScenarioBreakthrough]:
        """
        Write the top-3 breakthroughs and complete the scenario. Returns the
        breakthroughs written, or an empty list if the scenario was already
        completed.
        """
        scenario = await self._store.get_scenario(scenario_id)
        if scenario is None:
            raise ScenarioNotFound(f"Scenario not found: {scenario_id}")
        if scenario.status == ScenarioStatus.COMPLETED:
            self._logger.info("ranking_skipped", scenario_id=scenario_id, reason="already_completed")
            return []

        battles = await self._store.list_battles(scenario_id=scenario_id)
        breakthroughs = rank_battles(
            scenario_id, battles, self._config.price_maintained_threshold,
        )
        written = await self._store.complete_scenario_with_breakthroughs(
            scenario_id, breakthroughs, utc_now(),
        )
        if not written:
            self._logger.info("ranking_skipped", scenario_id=scenario_id, reason="lost_race")
            return []

        self._logger.info(
            "scenario_ranked",
            scenario_id=scenario_id,
            candidates=len(battles),
            breakthroughs=len(breakthroughs),
        )
        return breakthroughs

    async def reset(self, scenario_id: str) -> tuple[ScenarioInjection, list[ScenarioBreakthrough]]:
        if await self._store.get_scenario(scenario_id) is None:
            raise ScenarioNotFound(f"Scenario not found: {scenario_id}")
        scenario = await self._store.reset_scenario(scenario_id)
        self._logger.info("scenario_reset", scenario_id=scenario_id)
        await self._settle(scenario)
        return await self.status(scenario_id)

    async def status(self, scenario_id: str) -> tuple[ScenarioInjection, list[ScenarioBreakthrough]]:
        scenario = await self._store.get_scenario(scenario_id)
        if scenario is None:
            raise ScenarioNotFound(f"Scenario not found: {scenario_id}")
        return scenario, await self._store.list_breakthroughs(scenario_id)
