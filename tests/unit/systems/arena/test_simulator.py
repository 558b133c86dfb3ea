"""
Tests for the Battle Simulator and persona selection.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from battlegym.clients.llm import LLMProvider, LLMResponse, Message
from battlegym.config import ArenaConfig
from battlegym.errors import NoActivePersonas, SessionCostExceeded, SimulationError
from battlegym.primitives.common import ModelTier
from battlegym.primitives.entities import Persona, Tactic
from battlegym.systems.arena import (
    BattleSimulator,
    CostMeter,
    build_closer_prompt,
    select_personas,
)


class ScriptedLLM(LLMProvider):
    """Replies from a fixed script and records every call."""

    def __init__(self, model: str, replies: list[str] | None = None, tokens: int = 100) -> None:
        self.model = model
        self._replies = list(replies or [])
        self._tokens = tokens
        self.calls: list[dict] = []

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        max_tokens: int = 2000,
        temperature: float = 0.7,
        output_format: str | None = None,
    ) -> LLMResponse:
        self.calls.append({
            "system_prompt": system_prompt,
            "messages": [(m.role, m.content) for m in messages],
            "temperature": temperature,
        })
        text = self._replies.pop(0) if self._replies else f"{self.model} line {len(self.calls)}"
        return LLMResponse(
            text=text, model=self.model, input_tokens=self._tokens, output_tokens=self._tokens,
        )

    async def close(self) -> None:
        pass


def make_persona(name: str = "The Skeptic", **kwargs) -> Persona:
    return Persona(name=name, system_prompt=f"You are {name}.", **kwargs)


def make_simulator(standard=None, economy=None, **kwargs) -> BattleSimulator:
    defaults = {"max_turns": 4}
    return BattleSimulator(
        standard or ScriptedLLM("gpt-4o"),
        economy or ScriptedLLM("gpt-4o-mini"),
        ArenaConfig(**{**defaults, **kwargs}),
    )


class TestSimulate:
    @pytest.mark.asyncio
    async def test_turns_alternate_starting_with_closer(self):
        standard = ScriptedLLM("gpt-4o", ["Hi, it's Sam.", "Repairs run $30k."])
        economy = ScriptedLLM("gpt-4o-mini", ["Who is this?", "Fine, yes."])
        result = await make_simulator(standard, economy).simulate(
            make_persona(), ModelTier.STANDARD, "CLOSER PROMPT", CostMeter(),
        )

        assert result.turns == 4
        assert result.lines == [
            "CLOSER: Hi, it's Sam.",
            "PERSONA: Who is this?",
            "CLOSER: Repairs run $30k.",
            "PERSONA: Fine, yes.",
        ]
        assert result.transcript.split("\n\n")[0] == "CLOSER: Hi, it's Sam."
        assert len(standard.calls) == 2
        assert len(economy.calls) == 2

    @pytest.mark.asyncio
    async def test_each_side_sees_its_own_lines_as_assistant(self):
        standard = ScriptedLLM("gpt-4o", ["c1", "c2"])
        economy = ScriptedLLM("gpt-4o-mini", ["p1", "p2"])
        await make_simulator(standard, economy).simulate(
            make_persona(), ModelTier.STANDARD, "CLOSER PROMPT", CostMeter(),
        )

        first_closer, second_closer = standard.calls
        assert first_closer["messages"][0][0] == "user"
        assert first_closer["system_prompt"] == "CLOSER PROMPT"
        # Opening cue, then the closer's own line, then the persona's reply
        assert [role for role, _ in second_closer["messages"]] == ["user", "assistant", "user"]
        assert second_closer["messages"][1:] == [("assistant", "c1"), ("user", "p1")]

        first_persona = economy.calls[0]
        assert first_persona["messages"] == [("user", "c1")]
        assert first_persona["system_prompt"] == "You are The Skeptic."

    @pytest.mark.asyncio
    async def test_economy_tier_moves_closer_to_economy_model(self):
        standard = ScriptedLLM("gpt-4o")
        economy = ScriptedLLM("gpt-4o-mini")
        simulator = make_simulator(standard, economy)
        await simulator.simulate(make_persona(), ModelTier.ECONOMY, "P", CostMeter())

        assert standard.calls == []
        assert len(economy.calls) == 4
        assert simulator.closer_model(ModelTier.ECONOMY) == "gpt-4o-mini"
        assert simulator.closer_model(ModelTier.STANDARD) == "gpt-4o"

    @pytest.mark.asyncio
    async def test_cost_is_metered_per_completion(self):
        meter = CostMeter()
        await make_simulator(max_turns=2).simulate(make_persona(), ModelTier.STANDARD, "P", meter)
        # gpt-4o: 100 * 2.50 + 100 * 10.00; gpt-4o-mini: 100 * 0.15 + 100 * 0.60 (per 1M)
        assert meter.total == Decimal("0.000075") + Decimal("0.00125")

    @pytest.mark.asyncio
    async def test_objection_is_pinned_into_persona_prompt(self):
        economy = ScriptedLLM("gpt-4o-mini")
        await make_simulator(economy=economy).simulate(
            make_persona(),
            ModelTier.STANDARD,
            "P",
            CostMeter(),
            objection="Your offer is insulting",
            temperature=0.8,
        )
        prompt = economy.calls[0]["system_prompt"]
        assert prompt.startswith("You are The Skeptic.")
        assert '"Your offer is insulting"' in prompt
        assert economy.calls[0]["temperature"] == 0.8

    @pytest.mark.asyncio
    async def test_scenario_brief_replaces_plain_objection(self):
        economy = ScriptedLLM("gpt-4o-mini")
        await make_simulator(economy=economy).simulate(
            make_persona(),
            ModelTier.STANDARD,
            "P",
            CostMeter(),
            objection="Your offer is insulting",
            brief="SCENARIO OBJECTION: \"Your offer is insulting\"\nEMOTIONAL STATE: angry",
        )
        prompt = economy.calls[0]["system_prompt"]
        assert prompt.startswith("You are The Skeptic.")
        assert prompt.endswith("EMOTIONAL STATE: angry")
        assert "SPECIFIC OBJECTION" not in prompt

    @pytest.mark.asyncio
    async def test_empty_reply_fails_the_battle(self):
        economy = ScriptedLLM("gpt-4o-mini", ["   "])
        with pytest.raises(SimulationError):
            await make_simulator(economy=economy).simulate(
                make_persona(), ModelTier.STANDARD, "P", CostMeter(),
            )

    @pytest.mark.asyncio
    async def test_session_cost_cap_aborts(self):
        meter = CostMeter()
        standard = ScriptedLLM("gpt-4o", tokens=200_000)
        simulator = make_simulator(standard, session_cost_cap_usd=Decimal("1.00"), max_turns=10)

        with pytest.raises(SessionCostExceeded) as exc_info:
            await simulator.simulate(make_persona(), ModelTier.STANDARD, "P", meter)

        assert exc_info.value.cap == Decimal("1.00")
        # Spend up to the abort is still known to the caller
        assert meter.total > Decimal("1.00")
        assert len(standard.calls) == 1


class TestCloserPrompt:
    def test_without_tactics_is_unchanged(self):
        assert build_closer_prompt("BASE", []) == "BASE"

    def test_tactics_are_numbered_in_order(self):
        prompt = build_closer_prompt(
            "BASE",
            [Tactic(rebuttal_text="First one. ", priority=8), Tactic(rebuttal_text="Second.")],
        )
        assert prompt.startswith("BASE\n\nPROVEN TACTICS")
        assert prompt.endswith("1. First one.\n2. Second.")


class TestSelectPersonas:
    def test_fixed_seed_is_deterministic(self):
        personas = [make_persona(f"P{i}") for i in range(6)]
        first = select_personas(personas, 4, seed=7)
        second = select_personas(list(reversed(personas)), 4, seed=7)
        assert [p.id for p in first] == [p.id for p in second]

    def test_round_robin_covers_every_persona_before_repeating(self):
        personas = [make_persona(f"P{i}") for i in range(3)]
        chosen = select_personas(personas, 7, seed=1)
        assert len(chosen) == 7
        assert {p.id for p in chosen[:3]} == {p.id for p in personas}
        assert [p.id for p in chosen[3:6]] == [p.id for p in chosen[:3]]

    def test_inactive_personas_are_skipped(self):
        active = make_persona("Active")
        chosen = select_personas([active, make_persona("Retired", is_active=False)], 3, seed=0)
        assert {p.id for p in chosen} == {active.id}

    def test_no_active_personas(self):
        with pytest.raises(NoActivePersonas):
            select_personas([make_persona(is_active=False)], 2)

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            select_personas([make_persona()], 0)
