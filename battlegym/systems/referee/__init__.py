"""
BattleGym — Referee

Scores one finished transcript into bounded metrics.

Public interface:
  Referee               — score(transcript, tier) → RefereeScore
  TranscriptJudge       — ABC for the rubric judgment capability
  LLMTranscriptJudge    — production judge backed by an LLMProvider
  compute_score         — pure Judgment → RefereeScore
"""

from battlegym.systems.referee.judge import LLMTranscriptJudge, TranscriptJudge, parse_judgment
from battlegym.systems.referee.scorer import Referee, compute_score
from battlegym.systems.referee.types import Judgment, JudgeVerdict, RefereeScore

__all__ = [
    "JudgeVerdict",
    "Judgment",
    "LLMTranscriptJudge",
    "Referee",
    "RefereeScore",
    "TranscriptJudge",
    "compute_score",
    "parse_judgment",
]
