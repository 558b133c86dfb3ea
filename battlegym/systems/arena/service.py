"""
BattleGym — Battle Orchestrator

Runs a batch of simulated negotiations with bounded concurrency.

For every unit, inside the concurrency bound and immediately before the
battle would start:
  1. Kill-switch (fresh read) — active → HALTED, no budget consumed
  2. Budget governor admit()  — exceeded → BUDGET_EXCEEDED
  3. Simulate on the governor's tier, score with the referee, persist the
     Battle, then settle the real cost onto the ledger

Any exception raised while simulating, scoring or persisting one unit is
caught, logged, and recorded as a string in `errors`. Siblings keep going.
Spend incurred by a failed or cancelled unit is still written to the ledger.

A kill-switch activated mid-batch does not preempt battles in flight. It
only stops units that have not been admitted yet.

run_unit() is also the entry point for scenario battles, so scenario
fan-out shares this orchestrator's concurrency bound.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

from battlegym.primitives.common import ModelTier, new_id, utc_now
from battlegym.primitives.entities import Battle
from battlegym.systems.arena.selection import select_personas
from battlegym.systems.arena.simulator import CostMeter, build_closer_prompt
from battlegym.systems.arena.types import BatchResult, UnitOutcome, UnitRequest, UnitResult

if TYPE_CHECKING:
    from battlegym.clients.notifier import Notifier
    from battlegym.config import ArenaConfig
    from battlegym.database.store import SandboxStore
    from battlegym.systems.arena.simulator import BattleSimulator
    from battlegym.systems.governor.service import BudgetGovernor
    from battlegym.systems.governor.types import Admission
    from battlegym.systems.killswitch.service import KillSwitchController
    from battlegym.systems.referee.scorer import Referee

logger = structlog.get_logger()

HALT_MESSAGE_KILLSWITCH = "Kill-switch active: training halted, no new battles admitted."
HALT_MESSAGE_BUDGET = "Daily budget exceeded: new battles refused until the next UTC day."


class BattleOrchestrator:
    def __init__(
        self,
        store: SandboxStore,
        governor: BudgetGovernor,
        killswitch: KillSwitchController,
        simulator: BattleSimulator,
        referee: Referee,
        config: ArenaConfig,
        notifier: Notifier | None = None,
        provider_name: str = "openai",
    ) -> None:
        self._store = store
        self._governor = governor
        self._killswitch = killswitch
        self._simulator = simulator
        self._referee = referee
        self._config = config
        self._notifier = notifier
        self._provider_name = provider_name
        self._semaphore = asyncio.Semaphore(config.max_concurrent_battles)
        self._logger = logger.bind(system="arena")

    def clamp_batch_size(self, size: int | None) -> int:
        if size is None:
            size = self._config.default_batch_size
        if size < 1:
            raise ValueError(f"batch size must be >= 1, got {size}")
        return min(size, self._config.max_batch_size)

    async def closer_prompt(self) -> str:
        tactics = await self._store.list_active_tactics()
        return build_closer_prompt(self._config.closer_prompt, tactics)

    # ─── Batch ────────────────────────────────────────────────────

    async def run_batch(self, size: int | None = None) -> BatchResult:
        size = self.clamp_batch_size(size)
        batch_id = new_id()

        with structlog.contextvars.bound_contextvars(batch_id=batch_id):
            self._logger.info("batch_started", size=size)

            # Nothing is selected or scored while halted
            if await self._killswitch.is_active():
                result = BatchResult(
                    batch_id=batch_id,
                    requested=size,
                    halted=True,
                    halted_units=size,
                    message=HALT_MESSAGE_KILLSWITCH,
                )
                self._logger.warning("batch_halted", reason="killswitch")
                self._notify_halt(result)
                return result

            personas = select_personas(
                await self._store.list_active_personas(), size, self._config.selection_seed,
            )
            closer_prompt = await self.closer_prompt()

            units = await asyncio.gather(*(
                self.run_unit(UnitRequest(persona=p, batch_id=batch_id), closer_prompt)
                for p in personas
            ))

            result = self._aggregate(batch_id, size, list(units))
            self._logger.info(
                "batch_complete",
                battles_completed=result.battles_completed,
                average_score=result.average_score,
                total_cost=str(result.total_cost),
                errors=len(result.errors),
                halted=result.halted,
            )
            if result.halted:
                self._notify_halt(result)
            return result

    def _aggregate(self, batch_id: str, size: int, units: list[UnitResult]) -> BatchResult:
        battles = [u.battle for u in units if u.battle is not None]
        halted_units = sum(1 for u in units if u.outcome == UnitOutcome.HALTED)
        budget_units = sum(1 for u in units if u.outcome == UnitOutcome.BUDGET_EXCEEDED)

        average = (
            round(sum(b.referee_score for b in battles) / len(battles), 2) if battles else 0.0
        )
        if halted_units:
            message = HALT_MESSAGE_KILLSWITCH
        elif budget_units:
            message = HALT_MESSAGE_BUDGET
        else:
            message = f"Completed {len(battles)} of {size} battles."

        return BatchResult(
            batch_id=batch_id,
            battles_completed=len(battles),
            average_score=average,
            total_cost=sum((b.cost_usd for b in battles), Decimal("0")),
            completed_at=utc_now(),
            errors=[u.error for u in units if u.error],
            requested=size,
            halted=bool(halted_units or budget_units),
            halted_units=halted_units,
            budget_skipped_units=budget_units,
            message=message,
        )

    def _notify_halt(self, result: BatchResult) -> None:
        if self._notifier is None:
            return
        average = f"{result.average_score:.1f}" if result.battles_completed else "N/A"
        self._notifier.notify_in_background(
            ":warning: AUTONOMOUS BATTLE BATCH HALTED\n\n"
            f"{result.message}\n"
            f"Battles completed: {result.battles_completed}/{result.requested}\n"
            f"Total cost: ${result.total_cost:.2f}\n"
            f"Average score: {average}"
        )

    # ─── Unit ─────────────────────────────────────────────────────

    async def run_unit(self, request: UnitRequest, closer_prompt: str | None = None) -> UnitResult:
        """
        Admit and run one battle. Never raises: every unit settles into a
        UnitResult.
        """
        persona = request.persona
        async with self._semaphore:
            if await self._killswitch.is_active():
                self._logger.info("unit_skipped", reason="killswitch", persona_id=persona.id)
                return UnitResult(persona_id=persona.id, outcome=UnitOutcome.HALTED)

            try:
                admission = await self._governor.admit()
            except Exception as exc:
                self._logger.error("admission_failed", persona_id=persona.id, error=str(exc))
                return UnitResult(
                    persona_id=persona.id,
                    outcome=UnitOutcome.FAILED,
                    error=_describe(persona.name, exc),
                )
            if not admission.admitted:
                return UnitResult(persona_id=persona.id, outcome=UnitOutcome.BUDGET_EXCEEDED)

            return await self._run_admitted(request, admission, closer_prompt)

    async def _run_admitted(
        self,
        request: UnitRequest,
        admission: Admission,
        closer_prompt: str | None,
    ) -> UnitResult:
        persona = request.persona
        tier = admission.tier or ModelTier.STANDARD
        meter = CostMeter()

        try:
            if closer_prompt is None:
                closer_prompt = await self.closer_prompt()
            battle = await self._play(request, tier, closer_prompt, meter)
        except asyncio.CancelledError:
            # Shutdown mid-battle: the metered spend still reaches the ledger
            self._logger.warning(
                "battle_cancelled",
                persona_id=persona.id,
                scenario_id=request.scenario_id,
                cost_usd=str(meter.total),
            )
            await self._settle(admission, meter, tier, persona.id)
            raise
        except Exception as exc:
            self._logger.error(
                "battle_failed",
                persona_id=persona.id,
                scenario_id=request.scenario_id,
                error=str(exc),
                error_type=type(exc).__name__,
                cost_usd=str(meter.total),
            )
            result = UnitResult(
                persona_id=persona.id,
                outcome=UnitOutcome.FAILED,
                error=_describe(persona.name, exc),
                cost_usd=meter.total,
            )
        else:
            result = UnitResult(
                persona_id=persona.id,
                outcome=UnitOutcome.COMPLETED,
                battle=battle,
                cost_usd=meter.total,
            )

        ledger_error = await self._settle(
            admission, meter, tier, persona.id,
            battle_id=result.battle.id if result.battle else None,
        )
        if ledger_error:
            result.error = f"{result.error}; {ledger_error}" if result.error else ledger_error
        return result

    async def _settle(
        self,
        admission: Admission,
        meter: CostMeter,
        tier: ModelTier,
        persona_id: str,
        battle_id: str | None = None,
    ) -> str | None:
        """Move the unit's spend onto the ledger. Returns the ledger error, if any."""
        try:
            await self._governor.settle(
                admission,
                meter.total,
                battle_id=battle_id,
                provider=self._provider_name,
                model=self._simulator.closer_model(tier),
            )
        except Exception as exc:
            self._logger.error("ledger_append_failed", persona_id=persona_id, error=str(exc))
            return f"ledger: {type(exc).__name__}: {exc}"
        return None

    async def _play(
        self,
        request: UnitRequest,
        tier: ModelTier,
        closer_prompt: str,
        meter: CostMeter,
    ) -> Battle:
        persona = request.persona
        simulation = await self._simulator.simulate(
            persona,
            tier,
            closer_prompt,
            meter,
            objection=request.objection,
            temperature=request.temperature,
            brief=request.scenario_brief,
        )
        score = await self._referee.score(simulation.transcript, tier)
        meter.add(score.cost_usd)

        battle = Battle(
            persona_id=persona.id,
            batch_id=request.batch_id,
            scenario_id=request.scenario_id,
            referee_score=score.referee_score,
            success_score=score.success_score,
            math_defense_score=score.math_defense_score,
            humanity_score=score.humanity_score,
            verbal_yes=score.verbal_yes,
            margin_integrity=score.margin_integrity,
            calculated_profit=score.calculated_profit,
            cost_usd=meter.total,
            transcript=simulation.transcript,
            winning_rebuttal=score.winning_rebuttal,
            referee_feedback=score.feedback,
            turns=simulation.turns,
            model_tier=tier.value,
        )
        await self._store.insert_battle(battle)
        self._logger.info(
            "battle_completed",
            battle_id=battle.id,
            persona=persona.name,
            referee_score=battle.referee_score,
            cost_usd=str(battle.cost_usd),
            tier=tier,
        )
        return battle


def _describe(persona_name: str, exc: BaseException) -> str:
    detail = str(exc) or type(exc).__name__
    return f"{persona_name}: {type(exc).__name__}: {detail}"
