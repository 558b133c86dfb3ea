"""
BattleGym — Persona Seeding

Personas are read-only to the pipeline. They are synced from a YAML master
list on startup; upsert keys on the persona id, so re-seeding is idempotent.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog
import yaml

from battlegym.primitives.entities import Persona

if TYPE_CHECKING:
    from battlegym.database.store import SandboxStore

logger = structlog.get_logger()


def load_persona_file(path: str | Path) -> list[Persona]:
    """Parse a `personas:` YAML list. A missing file yields no personas."""
    path = Path(path)
    if not path.exists():
        logger.warning("persona_file_missing", path=str(path))
        return []
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return [Persona.model_validate(item) for item in raw.get("personas", [])]


async def seed_personas(store: SandboxStore, personas: list[Persona]) -> int:
    for persona in personas:
        await store.upsert_persona(persona)
    logger.info(
        "personas_seeded",
        total=len(personas),
        active=sum(1 for p in personas if p.is_active),
    )
    return len(personas)
