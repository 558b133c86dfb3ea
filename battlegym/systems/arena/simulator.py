"""
BattleGym — Battle Simulator

Plays one negotiation between the closer and a persona, both driven by the
LLM. The closer speaks first and the two sides alternate until max_turns.
Each side sees the conversation from its own point of view: its own lines
as `assistant`, the other side's lines as `user`.

Every completion is priced into a CostMeter owned by the caller, so spend
incurred before a failure is still known to the orchestrator. A session
that spends more than `session_cost_cap_usd` aborts with
SessionCostExceeded.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

from battlegym.clients.llm import Message
from battlegym.clients.pricing import token_cost
from battlegym.errors import SessionCostExceeded, SimulationError
from battlegym.primitives.common import ModelTier
from battlegym.systems.arena.types import SimulationResult

if TYPE_CHECKING:
    from battlegym.clients.llm import LLMProvider
    from battlegym.config import ArenaConfig
    from battlegym.primitives.entities import Persona, Tactic

logger = structlog.get_logger()

CLOSER = "CLOSER"
PERSONA = "PERSONA"

_OPENING_CUE = "Start the conversation. Introduce yourself and begin the five-step process."

_OBJECTION_BLOCK = """

You have a SPECIFIC OBJECTION that must be addressed:
"{objection}"

- Do NOT agree to the offer or the contract UNLESS the closer addresses this objection
- Push back if the closer ignores or dismisses it
- Become more open only if the closer shows genuine understanding
- Say "Yes" only if your concern has been resolved"""


class CostMeter:
    """Running spend for one battle."""

    def __init__(self) -> None:
        self.total = Decimal("0")

    def add(self, amount: Decimal) -> Decimal:
        self.total += amount
        return self.total


def build_closer_prompt(base_prompt: str, tactics: list[Tactic]) -> str:
    """Append the active production tactics, highest priority first."""
    if not tactics:
        return base_prompt
    lines = [f"{i}. {t.rebuttal_text.strip()}" for i, t in enumerate(tactics, start=1)]
    return f"{base_prompt}\n\nPROVEN TACTICS (use when the situation fits):\n" + "\n".join(lines)


def pin_objection(persona_prompt: str, objection: str | None, brief: str | None = None) -> str:
    if brief:
        return f"{persona_prompt}\n\n{brief.strip()}"
    if not objection:
        return persona_prompt
    return persona_prompt + _OBJECTION_BLOCK.format(objection=objection.strip())


class BattleSimulator:
    """
    Runs the turn loop. The closer uses the tier's model; the persona
    always uses the economy model.
    """

    def __init__(
        self,
        standard: LLMProvider,
        economy: LLMProvider,
        config: ArenaConfig,
    ) -> None:
        self._standard = standard
        self._economy = economy
        self._config = config
        self._logger = logger.bind(system="arena.simulator")

    def closer_model(self, tier: ModelTier) -> str:
        return self._closer_provider(tier).model

    def _closer_provider(self, tier: ModelTier) -> LLMProvider:
        return self._economy if tier == ModelTier.ECONOMY else self._standard

    async def simulate(
        self,
        persona: Persona,
        tier: ModelTier,
        closer_prompt: str,
        meter: CostMeter,
        objection: str | None = None,
        temperature: float | None = None,
        brief: str | None = None,
    ) -> SimulationResult:
        temp = self._config.temperature if temperature is None else temperature
        persona_prompt = pin_objection(persona.system_prompt, objection, brief)
        closer = self._closer_provider(tier)
        cap = self._config.session_cost_cap_usd

        result = SimulationResult()
        # (speaker, text) in spoken order
        history: list[tuple[str, str]] = []

        for turn in range(1, self._config.max_turns + 1):
            speaker = CLOSER if turn % 2 == 1 else PERSONA
            if speaker == CLOSER:
                provider, system_prompt = closer, closer_prompt
            else:
                provider, system_prompt = self._economy, persona_prompt

            response = await provider.generate(
                system_prompt=system_prompt,
                messages=_view_for(speaker, history),
                max_tokens=self._config.max_tokens_per_turn,
                temperature=temp,
            )
            spent = meter.add(
                token_cost(response.model or provider.model,
                           response.input_tokens, response.output_tokens)
            )
            result.input_tokens += response.input_tokens
            result.output_tokens += response.output_tokens
            result.turns = turn

            text = response.text.strip()
            if not text:
                raise SimulationError(f"Empty {speaker.lower()} reply on turn {turn}")
            history.append((speaker, text))
            result.lines.append(f"{speaker}: {text}")

            if spent > cap:
                self._logger.error(
                    "session_cost_cap_exceeded",
                    persona_id=persona.id,
                    cost_usd=str(spent),
                    cap_usd=str(cap),
                    turn=turn,
                )
                raise SessionCostExceeded(spent, cap)

        self._logger.debug(
            "battle_simulated",
            persona_id=persona.id,
            turns=result.turns,
            cost_usd=str(meter.total),
        )
        return result


def _view_for(speaker: str, history: list[tuple[str, str]]) -> list[Message]:
    if not history:
        return [Message("user", _OPENING_CUE)]
    messages = [
        Message("assistant" if who == speaker else "user", text)
        for who, text in history
    ]
    # Chat APIs expect the conversation to open with a user turn
    if messages[0].role == "assistant":
        messages.insert(0, Message("user", _OPENING_CUE))
    return messages
