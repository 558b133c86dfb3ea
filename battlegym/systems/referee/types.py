"""
BattleGym — Referee Types

Judgment is the raw rubric output of a TranscriptJudge, validated for
shape only. RefereeScore is what the scorer derives from it: clamped,
rounded, with the composite referee_score computed locally.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import AliasChoices, Field, field_validator

from battlegym.primitives.common import BGBaseModel


class Judgment(BGBaseModel):
    """Rubric output. Field names accept the judge's camelCase JSON keys."""

    model_config = {"populate_by_name": True, "extra": "ignore", "allow_inf_nan": False}

    math_defense: float = Field(alias="mathDefense")
    humanity: float
    success: float
    margin_integrity: float = Field(default=0.0, alias="marginIntegrity")
    calculated_profit: Decimal | None = Field(default=None, alias="calculatedProfit")
    verbal_yes: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "verbal_yes", "verbalYesToPrice", "verbalYesToMemorandum",
        ),
    )
    winning_rebuttal: str | None = Field(default=None, alias="winningRebuttal")
    feedback: str = ""

    @field_validator("margin_integrity", mode="before")
    @classmethod
    def _null_margin(cls, v: object) -> object:
        return 0.0 if v is None else v

    @field_validator("feedback", mode="before")
    @classmethod
    def _null_feedback(cls, v: object) -> object:
        return "" if v is None else v


class JudgeVerdict(BGBaseModel):
    """A judgment plus what it cost to obtain."""

    judgment: Judgment
    cost_usd: Decimal = Decimal("0")
    model: str = ""


class RefereeScore(BGBaseModel):
    referee_score: int = Field(ge=0, le=100)
    success_score: int = Field(ge=0, le=10)
    math_defense_score: int = Field(ge=0, le=10)
    humanity_score: int = Field(ge=0, le=10)
    margin_integrity: int = Field(ge=0, le=100)
    calculated_profit: Decimal | None = None
    verbal_yes: bool
    winning_rebuttal: str | None = None
    feedback: str = ""
    cost_usd: Decimal = Decimal("0")
    model: str = ""
