"""
Tests for the Battle Orchestrator.

Covers:
  - Partial-failure isolation across a batch
  - Budget refusals and kill-switch halts (not errors)
  - Tier propagation when throttled
  - Ledger writes for successful and failed units
  - Batch size clamping
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from battlegym.config import ArenaConfig, BudgetConfig
from battlegym.database.memory import InMemorySandboxStore
from battlegym.errors import NoActivePersonas
from battlegym.primitives.common import ModelTier, utc_day_start
from battlegym.primitives.entities import BillingLedgerEntry, Persona, Tactic
from battlegym.systems.arena import (
    BattleOrchestrator,
    SimulationResult,
    UnitOutcome,
    UnitRequest,
)
from battlegym.systems.arena.service import HALT_MESSAGE_BUDGET, HALT_MESSAGE_KILLSWITCH
from battlegym.systems.governor import BudgetGovernor
from battlegym.systems.killswitch import KillSwitchController
from battlegym.systems.referee import Judgment, JudgeVerdict, Referee, TranscriptJudge

UNIT_COST = Decimal("0.10")


class PersonaJudge(TranscriptJudge):
    """Scores a transcript by the persona named in it."""

    def __init__(self, judgments: dict[str, Judgment], default: Judgment | None = None) -> None:
        self._judgments = judgments
        self._default = default or Judgment(math_defense=5, humanity=5, success=5)

    async def judge(self, transcript, tier=ModelTier.STANDARD) -> JudgeVerdict:
        for name, judgment in self._judgments.items():
            if f"PERSONA: I am {name}" in transcript:
                return JudgeVerdict(judgment=judgment)
        return JudgeVerdict(judgment=self._default)


def make_simulator(fail: dict[str, Exception] | None = None) -> MagicMock:
    fail = fail or {}

    async def simulate(
        persona, tier, closer_prompt, meter, objection=None, temperature=None, brief=None,
    ):
        meter.add(UNIT_COST)
        if persona.name in fail:
            raise fail[persona.name]
        return SimulationResult(
            lines=[f"CLOSER: Hello {persona.name}", f"PERSONA: I am {persona.name}"],
            turns=2,
        )

    simulator = MagicMock()
    simulator.simulate = AsyncMock(side_effect=simulate)
    simulator.closer_model = MagicMock(return_value="gpt-4o")
    return simulator


async def seed_personas(store: InMemorySandboxStore, *names: str) -> list[Persona]:
    personas = [Persona(name=n, system_prompt=f"You are {n}.") for n in names]
    for p in personas:
        await store.upsert_persona(p)
    return personas


def make_orchestrator(
    store: InMemorySandboxStore,
    simulator: MagicMock | None = None,
    judge: TranscriptJudge | None = None,
    killswitch: KillSwitchController | None = None,
    notifier: MagicMock | None = None,
    **arena,
) -> BattleOrchestrator:
    return BattleOrchestrator(
        store=store,
        governor=BudgetGovernor(store, BudgetConfig()),
        killswitch=killswitch or KillSwitchController(),
        simulator=simulator or make_simulator(),
        referee=Referee(judge or PersonaJudge({})),
        config=ArenaConfig(selection_seed=42, **arena),
        notifier=notifier,
    )


async def record_spend(store: InMemorySandboxStore, amount: str) -> None:
    await store.append_ledger_entry(
        BillingLedgerEntry(environment="sandbox", cost_usd=Decimal(amount))
    )


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_one_failing_unit_does_not_abort_siblings(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1", "P2", "P3")
        judge = PersonaJudge({
            "P1": Judgment(math_defense=9, humanity=9, success=9, margin_integrity=82),
            "P3": Judgment(math_defense=8, humanity=8, success=8, margin_integrity=48),
        })
        simulator = make_simulator(fail={"P2": TimeoutError("LLM call timed out")})
        orchestrator = make_orchestrator(store, simulator, judge)

        result = await orchestrator.run_batch(3)

        assert result.battles_completed == 2
        assert result.average_score == 80
        assert len(result.errors) == 1
        assert "P2" in result.errors[0]
        assert "TimeoutError" in result.errors[0]
        assert result.halted is False
        assert result.total_cost == UNIT_COST * 2
        assert result.message == "Completed 2 of 3 battles."

        battles = await store.list_battles()
        assert sorted(b.referee_score for b in battles) == [72, 88]
        assert all(b.batch_id == result.batch_id for b in battles)

    @pytest.mark.asyncio
    async def test_failed_unit_spend_still_reaches_the_ledger(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1", "P2")
        orchestrator = make_orchestrator(
            store, make_simulator(fail={"P2": RuntimeError("boom")}),
        )

        await orchestrator.run_batch(2)

        assert await store.sum_ledger("sandbox", utc_day_start()) == UNIT_COST * 2
        assert len(store._ledger) == 2
        assert any(e.battle_id is None for e in store._ledger)

    @pytest.mark.asyncio
    async def test_budget_exceeded_admits_nothing_and_reports_no_errors(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1", "P2", "P3")
        await record_spend(store, "15.00")
        simulator = make_simulator()
        orchestrator = make_orchestrator(store, simulator)

        result = await orchestrator.run_batch(3)

        assert result.battles_completed == 0
        assert result.errors == []
        assert result.budget_skipped_units == 3
        assert result.halted is True
        assert result.message == HALT_MESSAGE_BUDGET
        simulator.simulate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_kill_switch_halts_regardless_of_budget(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1", "P2")
        await record_spend(store, "15.00")
        killswitch = KillSwitchController()
        await killswitch.activate("ops")
        simulator = make_simulator()
        notifier = MagicMock()
        orchestrator = make_orchestrator(store, simulator, killswitch=killswitch, notifier=notifier)

        result = await orchestrator.run_batch(2)

        assert result.battles_completed == 0
        assert result.halted is True
        assert result.halted_units == 2
        assert "Kill-switch" in result.message
        assert result.message == HALT_MESSAGE_KILLSWITCH
        assert result.errors == []
        simulator.simulate.assert_not_awaited()
        notifier.notify_in_background.assert_called_once()
        assert "HALTED" in notifier.notify_in_background.call_args.args[0]

    @pytest.mark.asyncio
    async def test_kill_switch_activated_mid_batch_stops_remaining_units(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1", "P2", "P3", "P4")
        killswitch = KillSwitchController()
        simulator = make_simulator()
        original = simulator.simulate.side_effect

        async def simulate_then_halt(persona, *args, **kwargs):
            result = await original(persona, *args, **kwargs)
            await killswitch.activate("ops")
            return result

        simulator.simulate.side_effect = simulate_then_halt
        orchestrator = make_orchestrator(
            store, simulator, killswitch=killswitch, max_concurrent_battles=1,
        )

        result = await orchestrator.run_batch(4)

        assert result.battles_completed == 1
        assert result.halted_units == 3
        assert result.message == HALT_MESSAGE_KILLSWITCH

    @pytest.mark.asyncio
    async def test_throttled_budget_runs_on_economy_tier(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1")
        await record_spend(store, "3.00")
        simulator = make_simulator()
        orchestrator = make_orchestrator(store, simulator)

        result = await orchestrator.run_batch(1)

        assert result.battles_completed == 1
        assert simulator.simulate.call_args.args[1] == ModelTier.ECONOMY
        battle = (await store.list_battles())[0]
        assert battle.model_tier == "economy"

    @pytest.mark.asyncio
    async def test_scores_stay_in_range(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1", "P2")
        judge = PersonaJudge({
            "P1": Judgment(math_defense=40, humanity=40, success=40, margin_integrity=900),
            "P2": Judgment(math_defense=-5, humanity=-5, success=-5, margin_integrity=-10),
        })
        await make_orchestrator(store, judge=judge).run_batch(2)

        for battle in await store.list_battles():
            assert 0 <= battle.referee_score <= 100
            assert 0 <= battle.success_score <= 10

    @pytest.mark.asyncio
    async def test_active_tactics_feed_the_closer_prompt(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1")
        await store.insert_tactic(
            Tactic(rebuttal_text="Walk them through the repair bids.", is_active=True)
        )
        simulator = make_simulator()

        await make_orchestrator(store, simulator).run_batch(1)

        closer_prompt = simulator.simulate.call_args.args[2]
        assert "PROVEN TACTICS" in closer_prompt
        assert "Walk them through the repair bids." in closer_prompt

    @pytest.mark.asyncio
    async def test_batch_size_is_clamped(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1", "P2", "P3")
        result = await make_orchestrator(store).run_batch(50)
        assert result.requested == 10
        assert result.battles_completed == 10

    @pytest.mark.asyncio
    async def test_default_batch_size(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1")
        result = await make_orchestrator(store).run_batch()
        assert result.requested == 5

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1")
        with pytest.raises(ValueError):
            await make_orchestrator(store).run_batch(0)

    @pytest.mark.asyncio
    async def test_no_active_personas(self):
        with pytest.raises(NoActivePersonas):
            await make_orchestrator(InMemorySandboxStore()).run_batch(2)

    @pytest.mark.asyncio
    async def test_result_serialises_camel_case(self):
        store = InMemorySandboxStore()
        await seed_personas(store, "P1")
        payload = (await make_orchestrator(store).run_batch(1)).to_dict()
        assert payload["battlesCompleted"] == 1
        assert isinstance(payload["totalCost"], float)
        assert {"batchId", "averageScore", "completedAt", "errors"} <= payload.keys()


class TestRunUnit:
    @pytest.mark.asyncio
    async def test_admission_error_is_a_unit_failure(self):
        store = InMemorySandboxStore()
        (persona,) = await seed_personas(store, "P1")
        orchestrator = make_orchestrator(store)
        orchestrator._governor.admit = AsyncMock(side_effect=RuntimeError("ledger unreachable"))

        result = await orchestrator.run_unit(UnitRequest(persona=persona))

        assert result.outcome == UnitOutcome.FAILED
        assert "ledger unreachable" in result.error

    @pytest.mark.asyncio
    async def test_ledger_failure_is_reported_with_the_unit(self):
        store = InMemorySandboxStore()
        (persona,) = await seed_personas(store, "P1")
        orchestrator = make_orchestrator(store)
        store.append_ledger_entry = AsyncMock(side_effect=RuntimeError("disk full"))

        result = await orchestrator.run_unit(UnitRequest(persona=persona))

        assert result.outcome == UnitOutcome.COMPLETED
        assert result.battle is not None
        assert "ledger" in result.error
        assert orchestrator._governor.reserved == Decimal("0")

    @pytest.mark.asyncio
    async def test_scenario_unit_pins_objection(self):
        store = InMemorySandboxStore()
        (persona,) = await seed_personas(store, "P1")
        simulator = make_simulator()
        orchestrator = make_orchestrator(store, simulator)

        result = await orchestrator.run_unit(
            UnitRequest(persona=persona, scenario_id="s-1", objection="Too low", temperature=0.8)
        )

        assert result.battle.scenario_id == "s-1"
        kwargs = simulator.simulate.call_args.kwargs
        assert kwargs["objection"] == "Too low"
        assert kwargs["temperature"] == 0.8

    @pytest.mark.asyncio
    async def test_cancelled_battle_settles_its_spend(self):
        store = InMemorySandboxStore()
        (persona,) = await seed_personas(store, "P1")
        metered = asyncio.Event()

        async def simulate_forever(persona, tier, closer_prompt, meter, **kwargs):
            meter.add(Decimal("0.40"))
            metered.set()
            await asyncio.Event().wait()

        simulator = make_simulator()
        simulator.simulate.side_effect = simulate_forever
        orchestrator = make_orchestrator(store, simulator)

        task = asyncio.create_task(orchestrator.run_unit(UnitRequest(persona=persona)))
        await metered.wait()
        assert orchestrator._governor.reserved == Decimal("0.25")
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert orchestrator._governor.reserved == Decimal("0")
        assert await store.sum_ledger("sandbox", utc_day_start()) == Decimal("0.40")
        assert store._ledger[0].battle_id is None

    @pytest.mark.asyncio
    async def test_scenario_brief_is_passed_to_the_simulator(self):
        store = InMemorySandboxStore()
        (persona,) = await seed_personas(store, "P1")
        simulator = make_simulator()
        orchestrator = make_orchestrator(store, simulator)

        await orchestrator.run_unit(
            UnitRequest(persona=persona, objection="Too low", scenario_brief="EMOTIONAL STATE: wary")
        )

        assert simulator.simulate.call_args.kwargs["brief"] == "EMOTIONAL STATE: wary"
