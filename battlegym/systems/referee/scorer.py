"""
BattleGym — Referee Scorer

Turns a judge's rubric output into bounded battle metrics. No side
effects: nothing here touches the store or the ledger.

  referee_score = round(2.5·math + 2.5·humanity + 2.5·success + margin/4)

Each component is clamped to its range first, so the composite is always
in [0, 100].
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

import structlog

from battlegym.primitives.common import ModelTier
from battlegym.systems.referee.judge import TranscriptJudge
from battlegym.systems.referee.types import Judgment, JudgeVerdict, RefereeScore

logger = structlog.get_logger()


def _round(value: float | Decimal) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _clamp(value: float | Decimal, low: int, high: int) -> int:
    return max(low, min(high, _round(value)))


def compute_score(judgment: Judgment) -> RefereeScore:
    math_defense = _clamp(judgment.math_defense, 0, 10)
    humanity = _clamp(judgment.humanity, 0, 10)
    success = _clamp(judgment.success, 0, 10)
    margin = _clamp(judgment.margin_integrity, 0, 100)

    composite = (
        Decimal("2.5") * (math_defense + humanity + success) + Decimal(margin) / 4
    )
    rebuttal = (judgment.winning_rebuttal or "").strip() or None

    return RefereeScore(
        referee_score=_clamp(composite, 0, 100),
        success_score=success,
        math_defense_score=math_defense,
        humanity_score=humanity,
        margin_integrity=margin,
        calculated_profit=judgment.calculated_profit,
        verbal_yes=judgment.verbal_yes,
        winning_rebuttal=rebuttal,
        feedback=judgment.feedback,
    )


class Referee:
    """Scores a transcript through an injected TranscriptJudge."""

    def __init__(self, judge: TranscriptJudge) -> None:
        self._judge = judge
        self._logger = logger.bind(system="referee")

    async def score(self, transcript: str, tier: ModelTier = ModelTier.STANDARD) -> RefereeScore:
        verdict: JudgeVerdict = await self._judge.judge(transcript, tier)
        score = compute_score(verdict.judgment)
        score.cost_usd = verdict.cost_usd
        score.model = verdict.model
        self._logger.info(
            "transcript_scored",
            referee_score=score.referee_score,
            verbal_yes=score.verbal_yes,
            tier=tier,
        )
        return score
