"""
Tests for the Scenario Injector.

Covers:
  - Fan-out of one objection into total_sessions battles
  - Ranking exactly once when the last child settles
  - Idempotent re-ranking and reset
  - Child failures, and refusals leaving the scenario halted
  - Conflict analysis and the scenario brief
"""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from battlegym.clients.llm import LLMProvider, LLMResponse
from battlegym.config import ArenaConfig, BudgetConfig, ScenarioConfig
from battlegym.database.memory import InMemorySandboxStore
from battlegym.errors import NoActivePersonas, ScenarioNotFound
from battlegym.primitives.common import ModelTier
from battlegym.primitives.entities import (
    BillingLedgerEntry,
    Persona,
    ScenarioInjection,
    ScenarioStatus,
)
from battlegym.systems.arena import BattleOrchestrator, SimulationResult, UnitOutcome, UnitResult
from battlegym.systems.governor import BudgetGovernor
from battlegym.systems.killswitch import KillSwitchController
from battlegym.systems.referee import Judgment, JudgeVerdict, Referee, TranscriptJudge
from battlegym.systems.scenarios import ConflictArchitect, ScenarioService

OBJECTION = "I already have a cash offer at $95k."

# persona → (math, humanity, success, margin, verbal_yes); composite in the name
JUDGMENTS = {
    "S95": (10, 10, 10, 80, True),
    "S90": (10, 9, 9, 80, True),
    "S85": (9, 9, 8, 80, True),
    "S40": (4, 4, 4, 40, False),
    "S60": (8, 6, 6, 40, True),
}


class NamedJudge(TranscriptJudge):
    async def judge(self, transcript, tier=ModelTier.STANDARD) -> JudgeVerdict:
        for name, (m, h, s, margin, yes) in JUDGMENTS.items():
            if f"PERSONA: I am {name}" in transcript:
                return JudgeVerdict(judgment=Judgment(
                    math_defense=m, humanity=h, success=s, margin_integrity=margin,
                    verbal_yes=yes, winning_rebuttal=f"Rebuttal that beat {name}",
                ))
        return JudgeVerdict(judgment=Judgment(math_defense=5, humanity=5, success=5))


def make_simulator() -> MagicMock:
    async def simulate(
        persona, tier, closer_prompt, meter, objection=None, temperature=None, brief=None,
    ):
        meter.add(Decimal("0.05"))
        return SimulationResult(
            lines=[f"CLOSER: Hi {persona.name}", f"PERSONA: I am {persona.name}"], turns=2,
        )

    simulator = MagicMock()
    simulator.simulate = AsyncMock(side_effect=simulate)
    simulator.closer_model = MagicMock(return_value="gpt-4o")
    return simulator


async def make_service(
    persona_names=tuple(JUDGMENTS),
    simulator: MagicMock | None = None,
    **service_kwargs,
) -> tuple[ScenarioService, InMemorySandboxStore]:
    store = InMemorySandboxStore()
    for name in persona_names:
        await store.upsert_persona(Persona(name=name, system_prompt=f"You are {name}."))
    orchestrator = BattleOrchestrator(
        store=store,
        governor=BudgetGovernor(store, BudgetConfig()),
        killswitch=KillSwitchController(),
        simulator=simulator or make_simulator(),
        referee=Referee(NamedJudge()),
        config=ArenaConfig(),
    )
    service = ScenarioService(
        store, orchestrator, ScenarioConfig(), selection_seed=3, **service_kwargs,
    )
    return service, store


class TestInjectScenario:
    @pytest.mark.asyncio
    async def test_returns_running_scenario(self):
        service, _ = await make_service()
        scenario = await service.inject_scenario(OBJECTION, 5)
        assert scenario.status == ScenarioStatus.RUNNING
        assert scenario.total_sessions == 5
        assert scenario.completed_sessions == 0
        await service.wait()

    @pytest.mark.asyncio
    async def test_ranks_exactly_once_after_last_session(self):
        service, store = await make_service()
        store.complete_scenario_with_breakthroughs = AsyncMock(
            wraps=store.complete_scenario_with_breakthroughs
        )

        scenario = await service.inject_scenario(OBJECTION, 5)
        await service.wait()

        current, breakthroughs = await service.status(scenario.id)
        assert current.completed_sessions == 5
        assert current.status == ScenarioStatus.COMPLETED
        assert current.top_3_identified is True
        assert current.completed_at is not None
        assert current.progress == 100
        assert store.complete_scenario_with_breakthroughs.await_count == 1

        # A sixth ranking attempt changes nothing
        assert await service.rank(scenario.id) == []
        assert store.complete_scenario_with_breakthroughs.await_count == 1
        _, again = await service.status(scenario.id)
        assert [b.id for b in again] == [b.id for b in breakthroughs]

    @pytest.mark.asyncio
    async def test_breakthroughs_skip_unresolved_battles(self):
        service, _ = await make_service()
        scenario = await service.inject_scenario(OBJECTION, 5)
        await service.wait()

        _, breakthroughs = await service.status(scenario.id)
        assert [b.referee_score for b in breakthroughs] == [95, 90, 85]
        assert [b.rank for b in breakthroughs] == [1, 2, 3]
        assert breakthroughs[0].winning_rebuttal == "Rebuttal that beat S95"

    @pytest.mark.asyncio
    async def test_objection_is_pinned_into_every_child(self):
        simulator = make_simulator()
        service, store = await make_service(simulator=simulator)
        scenario = await service.inject_scenario(f"  {OBJECTION}  ", 3)
        await service.wait()

        assert simulator.simulate.await_count == 3
        for call in simulator.simulate.call_args_list:
            assert call.kwargs["objection"] == OBJECTION
            assert call.kwargs["temperature"] == 0.8
            assert call.kwargs["brief"] is None
        battles = await store.list_battles(scenario_id=scenario.id)
        assert len(battles) == 3

    @pytest.mark.asyncio
    async def test_budget_refusals_halt_the_scenario_unranked(self):
        service, store = await make_service()
        await store.append_ledger_entry(
            BillingLedgerEntry(environment="sandbox", cost_usd=Decimal("15.00"))
        )
        scenario = await service.inject_scenario(OBJECTION, 3)
        await service.wait()

        current, breakthroughs = await service.status(scenario.id)
        assert current.status == ScenarioStatus.HALTED
        assert current.completed_sessions == 0
        assert current.refused_sessions == 3
        assert current.top_3_identified is False
        assert current.completed_at is not None
        assert current.progress == 0
        assert breakthroughs == []
        assert await store.list_battles(scenario_id=scenario.id) == []

    @pytest.mark.asyncio
    async def test_partial_refusal_still_halts(self):
        service, store = await make_service()
        service._orchestrator = MagicMock()
        service._orchestrator.run_unit = AsyncMock(side_effect=[
            UnitResult(persona_id="p", outcome=UnitOutcome.COMPLETED),
            UnitResult(persona_id="p", outcome=UnitOutcome.HALTED),
            UnitResult(persona_id="p", outcome=UnitOutcome.COMPLETED),
        ])
        store.complete_scenario_with_breakthroughs = AsyncMock(
            wraps=store.complete_scenario_with_breakthroughs
        )

        scenario = await service.inject_scenario(OBJECTION, 3)
        await service.wait()

        current, _ = await service.status(scenario.id)
        assert current.status == ScenarioStatus.HALTED
        assert (current.completed_sessions, current.refused_sessions) == (2, 1)
        store.complete_scenario_with_breakthroughs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_battles_count_as_run_and_rank(self):
        service, _ = await make_service()
        service._orchestrator = MagicMock()
        service._orchestrator.run_unit = AsyncMock(return_value=UnitResult(
            persona_id="p", outcome=UnitOutcome.FAILED, error="The Skeptic: referee timeout",
        ))

        scenario = await service.inject_scenario(OBJECTION, 2)
        await service.wait()

        current, breakthroughs = await service.status(scenario.id)
        assert current.status == ScenarioStatus.COMPLETED
        assert (current.completed_sessions, current.refused_sessions) == (2, 0)
        assert breakthroughs == []

    @pytest.mark.asyncio
    async def test_child_crash_marks_scenario_failed(self):
        service, store = await make_service()
        service._orchestrator = MagicMock()
        service._orchestrator.run_unit = AsyncMock(side_effect=[
            UnitResult(persona_id="p", outcome=UnitOutcome.COMPLETED),
            RuntimeError("store exploded"),
        ])

        scenario = await service.inject_scenario(OBJECTION, 2)
        await service.wait()

        current, _ = await service.status(scenario.id)
        assert current.status == ScenarioStatus.FAILED
        assert current.completed_sessions == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("objection,total", [("   ", 5), (OBJECTION, 0), (OBJECTION, 201)])
    async def test_invalid_input_writes_nothing(self, objection, total):
        service, store = await make_service()
        with pytest.raises(ValueError):
            await service.inject_scenario(objection, total)
        assert store._scenarios == {}

    @pytest.mark.asyncio
    async def test_no_personas_writes_nothing(self):
        service, store = await make_service(persona_names=())
        with pytest.raises(NoActivePersonas):
            await service.inject_scenario(OBJECTION, 3)
        assert store._scenarios == {}


class TestResetAndStatus:
    @pytest.mark.asyncio
    async def test_reset_reranks_completed_scenario(self):
        service, store = await make_service()
        scenario = await service.inject_scenario(OBJECTION, 5)
        await service.wait()
        _, before = await service.status(scenario.id)

        current, after = await service.reset(scenario.id)

        assert current.status == ScenarioStatus.COMPLETED
        assert current.top_3_identified is True
        assert [b.battle_id for b in after] == [b.battle_id for b in before]
        assert {b.id for b in after}.isdisjoint({b.id for b in before})

    @pytest.mark.asyncio
    async def test_reset_leaves_halted_scenario_halted(self):
        service, _ = await make_service()
        await service._orchestrator._killswitch.activate("ops")
        scenario = await service.inject_scenario(OBJECTION, 2)
        await service.wait()

        current, breakthroughs = await service.reset(scenario.id)

        assert current.status == ScenarioStatus.HALTED
        assert current.refused_sessions == 2
        assert current.top_3_identified is False
        assert breakthroughs == []

    @pytest.mark.asyncio
    async def test_unknown_scenario(self):
        service, _ = await make_service()
        with pytest.raises(ScenarioNotFound):
            await service.status("00000000-0000-0000-0000-000000000000")
        with pytest.raises(ScenarioNotFound):
            await service.reset("00000000-0000-0000-0000-000000000000")
        with pytest.raises(ScenarioNotFound):
            await service.rank("00000000-0000-0000-0000-000000000000")


class TestProgress:
    @pytest.mark.parametrize(
        "completed,total,expected",
        [(0, 5, 0), (1, 3, 33), (2, 3, 67), (1, 8, 13), (5, 5, 100)],
    )
    def test_progress_rounds_half_up(self, completed, total, expected):
        scenario = ScenarioInjection(
            raw_objection="x", total_sessions=total, completed_sessions=completed,
        )
        assert scenario.progress == expected


class ArchitectLLM(LLMProvider):
    model = "gpt-4o"

    def __init__(self, reply: str) -> None:
        self._reply = reply
        self.prompts: list[str] = []

    async def generate(self, system_prompt, messages, max_tokens=2000, temperature=0.7,
                       output_format=None) -> LLMResponse:
        self.prompts.append(messages[0].content)
        return LLMResponse(text=self._reply, model=self.model, input_tokens=1000, output_tokens=1000)

    async def close(self) -> None:
        pass


CONFLICT_JSON = json.dumps({
    "objection": "A cash buyer already offered $95k",
    "emotionalState": "skeptical",
    "underlyingConcern": "Leaving money on the table",
    "blockers": ["Competing offer", "Distrust of investors"],
    "resolutionCriteria": ["Sees the repair math", "Trusts the closing timeline"],
})


class TestConflictAnalysis:
    @pytest.mark.asyncio
    async def test_conflict_state_is_stored_and_briefs_every_child(self):
        simulator = make_simulator()
        service, store = await make_service(
            simulator=simulator, architect=ConflictArchitect(ArchitectLLM(CONFLICT_JSON)),
        )
        scenario = await service.inject_scenario(OBJECTION, 3, seller_persona="Retired nurse")
        await service.wait()

        stored = await store.get_scenario(scenario.id)
        assert stored.seller_persona == "Retired nurse"
        assert stored.conflict_state.emotional_state == "skeptical"
        assert stored.conflict_state.blockers == ["Competing offer", "Distrust of investors"]
        assert "1. Competing offer" in stored.system_prompt
        assert "ADDITIONAL PERSONA CONTEXT: Retired nurse" in stored.system_prompt
        for call in simulator.simulate.call_args_list:
            assert call.kwargs["brief"] == stored.system_prompt
            assert call.kwargs["objection"] == OBJECTION

    @pytest.mark.asyncio
    async def test_unusable_analysis_falls_back_to_raw_objection(self):
        simulator = make_simulator()
        service, store = await make_service(
            simulator=simulator, architect=ConflictArchitect(ArchitectLLM("I can't help with that")),
        )
        scenario = await service.inject_scenario(OBJECTION, 2)
        await service.wait()

        stored = await store.get_scenario(scenario.id)
        assert stored.conflict_state is None
        assert stored.system_prompt is None
        assert stored.status == ScenarioStatus.COMPLETED
        assert all(c.kwargs["brief"] is None for c in simulator.simulate.call_args_list)

    @pytest.mark.asyncio
    async def test_seller_persona_briefs_children_without_analysis(self):
        service, store = await make_service()
        scenario = await service.inject_scenario(OBJECTION, 1, seller_persona="  Widow, 70s  ")
        await service.wait()

        stored = await store.get_scenario(scenario.id)
        assert stored.conflict_state is None
        assert stored.system_prompt.startswith(f'SCENARIO OBJECTION: "{OBJECTION}"')
        assert "ADDITIONAL PERSONA CONTEXT: Widow, 70s" in stored.system_prompt

    @pytest.mark.asyncio
    async def test_architect_spend_is_recorded_on_the_ledger(self):
        service, store = await make_service(architect=ConflictArchitect(ArchitectLLM(CONFLICT_JSON)))
        service._governor = service._orchestrator._governor

        await service.inject_scenario(OBJECTION, 1)
        await service.wait()

        architect_entries = [e for e in store._ledger if e.battle_id is None]
        # gpt-4o: 1000 * 2.50 + 1000 * 10.00 per 1M tokens
        assert [e.cost_usd for e in architect_entries] == [Decimal("0.0125")]
        assert architect_entries[0].model == "gpt-4o"

    @pytest.mark.asyncio
    async def test_analysis_is_skipped_when_budget_is_exhausted(self):
        llm = ArchitectLLM(CONFLICT_JSON)
        service, store = await make_service(architect=ConflictArchitect(llm))
        service._governor = service._orchestrator._governor
        await store.append_ledger_entry(
            BillingLedgerEntry(environment="sandbox", cost_usd=Decimal("15.00"))
        )

        scenario = await service.inject_scenario(OBJECTION, 1)
        await service.wait()

        assert llm.prompts == []
        current, _ = await service.status(scenario.id)
        assert current.conflict_state is None
        assert current.status == ScenarioStatus.HALTED
