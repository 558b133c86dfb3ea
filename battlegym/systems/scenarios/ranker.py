"""
BattleGym — Breakthrough Ranker

Pure ranking of a scenario's child battles:

  1. keep only battles where the conflict was resolved (verbal yes)
  2. sort by (price maintained desc, referee score desc, created_at asc)
  3. take the top three, ranked 1..3 with no gaps

Fewer than three qualifiers yields fewer breakthroughs. Nothing is padded.
"""

from __future__ import annotations

from battlegym.primitives.entities import Battle, ScenarioBreakthrough

MAX_BREAKTHROUGHS = 3
REBUTTAL_FALLBACK_CHARS = 500


def conflict_resolved(battle: Battle) -> bool:
    return battle.verbal_yes


def price_maintained(battle: Battle, threshold: int) -> bool:
    return battle.math_defense_score >= threshold


def describe_insight(battle: Battle, held_price: bool) -> str:
    price = "held the offer price" if held_price else "closed but gave ground on price"
    return (
        f"Resolved the objection with a verbal yes and {price} "
        f"(referee {battle.referee_score}/100, math defense {battle.math_defense_score}/10, "
        f"humanity {battle.humanity_score}/10, margin integrity {battle.margin_integrity}/100)."
    )


def rank_battles(
    scenario_id: str,
    battles: list[Battle],
    price_threshold: int,
) -> list[ScenarioBreakthrough]:
    candidates = [b for b in battles if conflict_resolved(b)]
    candidates.sort(
        key=lambda b: (
            not price_maintained(b, price_threshold),
            -b.referee_score,
            b.created_at,
        )
    )

    breakthroughs: list[ScenarioBreakthrough] = []
    for rank, battle in enumerate(candidates[:MAX_BREAKTHROUGHS], start=1):
        held = price_maintained(battle, price_threshold)
        rebuttal = (battle.winning_rebuttal or "").strip() or battle.transcript[:REBUTTAL_FALLBACK_CHARS]
        breakthroughs.append(
            ScenarioBreakthrough(
                scenario_id=scenario_id,
                battle_id=battle.id,
                rank=rank,
                referee_score=battle.referee_score,
                conflict_resolved=True,
                price_maintained=held,
                winning_rebuttal=rebuttal,
                insight=describe_insight(battle, held),
            )
        )
    return breakthroughs
