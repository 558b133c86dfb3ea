"""
BattleGym — Persistence

`create_store()` picks the backend from config: Postgres when a host is
configured, otherwise the in-memory store.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from battlegym.database.memory import InMemorySandboxStore
from battlegym.database.postgres import PostgresSandboxStore
from battlegym.database.seed import load_persona_file, seed_personas
from battlegym.database.store import SandboxStore

if TYPE_CHECKING:
    from battlegym.config import PostgresConfig


def create_store(config: PostgresConfig) -> SandboxStore:
    if config.enabled:
        return PostgresSandboxStore(config)
    return InMemorySandboxStore()


__all__ = [
    "InMemorySandboxStore",
    "PostgresSandboxStore",
    "SandboxStore",
    "create_store",
    "load_persona_file",
    "seed_personas",
]
