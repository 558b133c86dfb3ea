"""
BattleGym — Persona Selection

Round-robin over a seeded shuffle of the active personas. With a fixed
seed the selection is deterministic. When more battles are requested than
there are personas, the shuffled order repeats.
"""

from __future__ import annotations

import random
from itertools import cycle, islice

from battlegym.errors import NoActivePersonas
from battlegym.primitives.entities import Persona


def select_personas(
    personas: list[Persona],
    size: int,
    seed: int | None = None,
) -> list[Persona]:
    if size < 1:
        raise ValueError(f"size must be >= 1, got {size}")
    active = sorted((p for p in personas if p.is_active), key=lambda p: p.id)
    if not active:
        raise NoActivePersonas("No active personas found")
    random.Random(seed).shuffle(active)
    return list(islice(cycle(active), size))
