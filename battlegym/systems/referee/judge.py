"""
BattleGym — Transcript Judges

A TranscriptJudge turns one finished transcript into a rubric Judgment.
Production wires LLMTranscriptJudge. Tests supply a fixed judge so the
pipeline's control flow can be checked without model nondeterminism.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import orjson
import structlog
from pydantic import ValidationError

from battlegym.clients.pricing import token_cost
from battlegym.errors import MalformedJudgment
from battlegym.primitives.common import ModelTier
from battlegym.systems.referee.types import Judgment, JudgeVerdict

if TYPE_CHECKING:
    from battlegym.clients.llm import LLMProvider

logger = structlog.get_logger()

REFEREE_SYSTEM_PROMPT = "You are an Elite Sales Referee. Return valid JSON only."

RUBRIC = """You are an Elite Sales Referee grading an autonomous battle between an Apex Closer and a Seller Persona.

TRANSCRIPT:
{transcript}

GRADING CRITERIA:

1. MATH DEFENSE (0-10 points):
   - Did the Closer stay at $82,700 or below?
   - Did they defend the price with underwriting logic (repairs, market caps, closing costs)?
   - Score: 10 = Perfect defense, 0 = Went above $82,700

2. HUMANITY (0-10 points):
   - Did the Closer use natural disfluencies and pauses?
   - Did they sound like a real person, not a robot?
   - Score: 10 = Very human, 0 = Robotic

3. CONVERSION MOMENTUM (0-10 points):
   - Price agreement (6 points): did the seller give a verbal "Yes" to the offer price?
   - Technical assistance (2 points): did the Closer guide the seller to the contract?
   - Signature (2 points): did the call end with the contract signed?

4. MARGIN INTEGRITY (0-100 points):
   Profit = ARV - Purchase Price - Repairs - Closing Costs (3% of purchase price)
   - 100: Profit >= $15,000
   - 85: Profit $12,000 - $14,999
   - 70: Profit $8,000 - $11,999
   - 0: Profit < $8,000
   If profit cannot be calculated from the transcript, set marginIntegrity to 0 and say so in feedback.

Return a JSON object with:
{{
  "mathDefense": <0-10>,
  "humanity": <0-10>,
  "success": <0-10>,
  "marginIntegrity": <0-100>,
  "calculatedProfit": <number or null>,
  "verbalYesToPrice": <true/false>,
  "winningRebuttal": "<the specific rebuttal that won the battle, if any>",
  "feedback": "<detailed feedback>"
}}"""


def parse_judgment(raw: str) -> Judgment:
    """Parse a judge's JSON reply. Raises MalformedJudgment on any shape error."""
    if not raw or not raw.strip():
        raise MalformedJudgment("Empty response from referee")
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise MalformedJudgment(f"Referee response is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedJudgment("Referee response is not a JSON object")
    try:
        return Judgment.model_validate(data)
    except ValidationError as exc:
        raise MalformedJudgment(f"Referee response does not match rubric: {exc}") from exc


class TranscriptJudge(ABC):
    @abstractmethod
    async def judge(self, transcript: str, tier: ModelTier = ModelTier.STANDARD) -> JudgeVerdict:
        ...


class LLMTranscriptJudge(TranscriptJudge):
    """Judges with an LLM. The economy provider is used when throttled."""

    def __init__(self, standard: LLMProvider, economy: LLMProvider | None = None) -> None:
        self._standard = standard
        self._economy = economy or standard
        self._logger = logger.bind(system="referee.judge")

    async def judge(self, transcript: str, tier: ModelTier = ModelTier.STANDARD) -> JudgeVerdict:
        provider = self._economy if tier == ModelTier.ECONOMY else self._standard
        response = await provider.evaluate(
            RUBRIC.format(transcript=transcript),
            max_tokens=800,
            temperature=0.3,
            system_prompt=REFEREE_SYSTEM_PROMPT,
        )
        model = response.model or provider.model
        cost = token_cost(model, response.input_tokens, response.output_tokens)
        self._logger.debug(
            "transcript_judged",
            model=model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        return JudgeVerdict(judgment=parse_judgment(response.text), cost_usd=cost, model=model)
