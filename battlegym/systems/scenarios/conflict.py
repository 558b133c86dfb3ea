"""
BattleGym — Scenario Conflict Architect

Before a scenario fans out, its raw objection is broken down by an LLM
into a ConflictState: the core objection, the seller's emotional state,
the concern underneath, what blocks a yes, and what would earn one.
build_scenario_brief() renders that state into the block every child
persona carries in its system prompt.

The step is optional. With no LLM configured, or when the reply is
unusable, the architect returns the raw objection unstructured and the
children fall back to the plain objection block.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import orjson
import structlog
from pydantic import ValidationError

from battlegym.clients.pricing import token_cost
from battlegym.errors import MalformedConflictState
from battlegym.primitives.entities import ConflictState
from battlegym.systems.scenarios.types import ConflictAnalysis

if TYPE_CHECKING:
    from battlegym.clients.llm import LLMProvider

logger = structlog.get_logger()

ARCHITECT_SYSTEM_PROMPT = "You are a Sales Training Scenario Architect. Return valid JSON only."

ARCHITECT_PROMPT = """Break the seller objection below into a structured conflict for closer training.

RAW OBJECTION:
"{objection}"
{persona_block}
Identify:
1. The core objection, in one sentence
2. The seller's emotional state (angry, skeptical, fearful, ...)
3. The underlying concern behind the objection
4. The blockers that stop the seller saying yes
5. The resolution criteria that would get a yes

Return a JSON object:
{{
  "objection": "<core objection>",
  "emotionalState": "<emotional state>",
  "underlyingConcern": "<underlying concern>",
  "blockers": ["<blocker>", ...],
  "resolutionCriteria": ["<criterion>", ...]
}}"""


def parse_conflict_state(raw: str) -> ConflictState:
    """Parse the architect's JSON reply. Raises MalformedConflictState."""
    try:
        data = orjson.loads(raw or "")
    except orjson.JSONDecodeError as exc:
        raise MalformedConflictState(f"Architect response is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedConflictState("Architect response is not a JSON object")
    try:
        state = ConflictState.model_validate(data)
    except ValidationError as exc:
        raise MalformedConflictState(f"Architect response has the wrong shape: {exc}") from exc
    if not state.objection.strip():
        raise MalformedConflictState("Architect returned an empty objection")
    return state


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{i}. {item.strip()}" for i, item in enumerate(items, start=1))


def build_scenario_brief(state: ConflictState, seller_persona: str | None = None) -> str:
    sections = [
        f'SCENARIO OBJECTION: "{state.objection.strip()}"',
        f"EMOTIONAL STATE: You are {state.emotional_state.strip() or 'unconvinced'}. "
        "This objection matters deeply to you.",
    ]
    if state.underlying_concern.strip():
        sections.append(f"UNDERLYING CONCERN: {state.underlying_concern.strip()}")
    if state.blockers:
        sections.append(f"BLOCKERS (what stops you saying yes):\n{_numbered(state.blockers)}")
    if state.resolution_criteria:
        sections.append(
            "RESOLUTION CRITERIA (what would get a yes):\n"
            + _numbered(state.resolution_criteria)
        )
    if seller_persona and seller_persona.strip():
        sections.append(f"ADDITIONAL PERSONA CONTEXT: {seller_persona.strip()}")
    sections.append(
        "SCENARIO RULES:\n"
        "- Do NOT accept the $82,700 offer or the contract UNLESS the closer addresses this objection\n"
        "- Test whether the closer understands your concern\n"
        "- Push back if the closer ignores or dismisses it\n"
        "- Open up only as your blockers are addressed\n"
        '- Say "Yes" only once your resolution criteria are met'
    )
    return "\n\n".join(sections)


class ConflictArchitect:
    """Turns a raw objection into a ConflictState. `llm=None` disables the step."""

    def __init__(self, llm: LLMProvider | None = None, temperature: float = 0.3) -> None:
        self._llm = llm
        self._temperature = temperature
        self._logger = logger.bind(system="scenarios.architect")

    async def analyse(
        self,
        raw_objection: str,
        seller_persona: str | None = None,
    ) -> ConflictAnalysis:
        fallback = ConflictState(objection=raw_objection)
        if self._llm is None:
            return ConflictAnalysis(state=fallback)

        persona_block = (
            f"\nSELLER PERSONA CONTEXT: {seller_persona.strip()}\n"
            if seller_persona and seller_persona.strip() else ""
        )
        try:
            response = await self._llm.evaluate(
                ARCHITECT_PROMPT.format(objection=raw_objection, persona_block=persona_block),
                max_tokens=800,
                temperature=self._temperature,
                system_prompt=ARCHITECT_SYSTEM_PROMPT,
            )
        except Exception as exc:
            self._logger.warning("conflict_analysis_unavailable", error=str(exc))
            return ConflictAnalysis(state=fallback)

        model = response.model or self._llm.model
        cost = token_cost(model, response.input_tokens, response.output_tokens)
        try:
            state = parse_conflict_state(response.text)
        except MalformedConflictState as exc:
            self._logger.warning("conflict_analysis_malformed", error=str(exc), model=model)
            return ConflictAnalysis(state=fallback, cost_usd=cost, model=model)

        self._logger.info(
            "conflict_analysed",
            emotional_state=state.emotional_state,
            blockers=len(state.blockers),
            cost_usd=str(cost),
        )
        return ConflictAnalysis(state=state, cost_usd=cost, model=model, structured=True)

