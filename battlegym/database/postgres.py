"""
BattleGym — Postgres Sandbox Store

Async connection pooling via asyncpg. The schema is created on connect.
Cross-row atomicity comes from the database itself:
- scenario completion runs in one transaction, guarded by
  `status <> 'completed'` in the UPDATE that claims it.
- UNIQUE(battle_id) on tactics makes concurrent promotion of the same
  battle produce exactly one row.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import asyncpg
import structlog

from battlegym.database.store import SandboxStore
from battlegym.errors import DuplicateTacticError, RecordNotFound
from battlegym.primitives.entities import (
    Battle,
    BillingLedgerEntry,
    ConflictState,
    Persona,
    ScenarioBreakthrough,
    ScenarioInjection,
    ScenarioStatus,
    Tactic,
)

if TYPE_CHECKING:
    from battlegym.config import PostgresConfig

logger = structlog.get_logger()

TABLE_SQL = """
CREATE TABLE IF NOT EXISTS personas (
    id              UUID PRIMARY KEY,
    name            TEXT NOT NULL,
    category        TEXT NOT NULL DEFAULT 'general',
    system_prompt   TEXT NOT NULL,
    traits          TEXT[] NOT NULL DEFAULT '{}',
    attack_patterns TEXT[] NOT NULL DEFAULT '{}',
    is_active       BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS scenario_injections (
    id                  UUID PRIMARY KEY,
    raw_objection       TEXT NOT NULL,
    seller_persona      TEXT,
    conflict_state      JSONB,
    system_prompt       TEXT,
    status              TEXT NOT NULL DEFAULT 'pending',
    total_sessions      INTEGER NOT NULL CHECK (total_sessions >= 1),
    completed_sessions  INTEGER NOT NULL DEFAULT 0 CHECK (completed_sessions >= 0),
    refused_sessions    INTEGER NOT NULL DEFAULT 0 CHECK (refused_sessions >= 0),
    top_3_identified    BOOLEAN NOT NULL DEFAULT FALSE,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at        TIMESTAMPTZ
);

ALTER TABLE scenario_injections ADD COLUMN IF NOT EXISTS seller_persona TEXT;
ALTER TABLE scenario_injections ADD COLUMN IF NOT EXISTS conflict_state JSONB;
ALTER TABLE scenario_injections ADD COLUMN IF NOT EXISTS system_prompt TEXT;
ALTER TABLE scenario_injections
    ADD COLUMN IF NOT EXISTS refused_sessions INTEGER NOT NULL DEFAULT 0;

CREATE TABLE IF NOT EXISTS battles (
    id                  UUID PRIMARY KEY,
    persona_id          UUID NOT NULL,
    batch_id            UUID,
    scenario_id         UUID REFERENCES scenario_injections (id),
    referee_score       INTEGER NOT NULL CHECK (referee_score BETWEEN 0 AND 100),
    success_score       INTEGER NOT NULL CHECK (success_score BETWEEN 0 AND 10),
    math_defense_score  INTEGER NOT NULL DEFAULT 0 CHECK (math_defense_score BETWEEN 0 AND 10),
    humanity_score      INTEGER NOT NULL DEFAULT 0 CHECK (humanity_score BETWEEN 0 AND 10),
    verbal_yes          BOOLEAN NOT NULL DEFAULT FALSE,
    margin_integrity    INTEGER NOT NULL DEFAULT 0 CHECK (margin_integrity BETWEEN 0 AND 100),
    calculated_profit   NUMERIC(12, 2),
    cost_usd            NUMERIC(10, 6) NOT NULL DEFAULT 0,
    transcript          TEXT NOT NULL DEFAULT '',
    winning_rebuttal    TEXT,
    referee_feedback    TEXT NOT NULL DEFAULT '',
    turns               INTEGER NOT NULL DEFAULT 0,
    model_tier          TEXT NOT NULL DEFAULT 'standard',
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_battles_scenario ON battles (scenario_id, referee_score DESC);
CREATE INDEX IF NOT EXISTS idx_battles_score ON battles (referee_score DESC);
CREATE INDEX IF NOT EXISTS idx_battles_created ON battles (created_at DESC);

CREATE TABLE IF NOT EXISTS billing_ledger (
    id           UUID PRIMARY KEY,
    environment  TEXT NOT NULL,
    provider     TEXT NOT NULL,
    model        TEXT,
    cost_usd     NUMERIC(10, 6) NOT NULL CHECK (cost_usd >= 0),
    battle_id    UUID,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_ledger_env_time ON billing_ledger (environment, created_at DESC);

CREATE TABLE IF NOT EXISTS scenario_breakthroughs (
    id                     UUID PRIMARY KEY,
    scenario_injection_id  UUID NOT NULL REFERENCES scenario_injections (id) ON DELETE CASCADE,
    battle_id              UUID NOT NULL,
    rank                   INTEGER NOT NULL CHECK (rank BETWEEN 1 AND 3),
    referee_score          INTEGER NOT NULL,
    conflict_resolved      BOOLEAN NOT NULL,
    price_maintained       BOOLEAN NOT NULL,
    winning_rebuttal       TEXT NOT NULL,
    insight                TEXT NOT NULL DEFAULT '',
    created_at             TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (scenario_injection_id, rank)
);

CREATE TABLE IF NOT EXISTS tactics (
    id                UUID PRIMARY KEY,
    battle_id         UUID UNIQUE,
    rebuttal_text     TEXT NOT NULL,
    is_synthetic      BOOLEAN NOT NULL DEFAULT FALSE,
    priority          INTEGER NOT NULL DEFAULT 5,
    is_active         BOOLEAN NOT NULL DEFAULT FALSE,
    is_golden_sample  BOOLEAN NOT NULL DEFAULT FALSE,
    promoted_at       TIMESTAMPTZ,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_tactics_active ON tactics (is_active, priority DESC);
"""


def _record(row: asyncpg.Record) -> dict[str, Any]:
    """asyncpg row → plain dict with UUIDs as strings."""
    return {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in dict(row).items()}


def _scenario(row: asyncpg.Record) -> ScenarioInjection:
    data = _record(row)
    # jsonb comes back as text without a registered codec
    if isinstance(data.get("conflict_state"), str):
        data["conflict_state"] = ConflictState.model_validate_json(data["conflict_state"])
    return ScenarioInjection.model_validate(data)


def _breakthrough(row: asyncpg.Record) -> ScenarioBreakthrough:
    data = _record(row)
    data["scenario_id"] = data.pop("scenario_injection_id")
    return ScenarioBreakthrough.model_validate(data)


class PostgresSandboxStore(SandboxStore):
    """
    asyncpg-backed store. One pool per process.
    """

    def __init__(self, config: PostgresConfig) -> None:
        self._config = config
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create connection pool and initialise schema."""
        self._pool = await asyncpg.create_pool(
            dsn=self._config.dsn,
            min_size=1,
            max_size=self._config.pool_size,
            ssl="require" if self._config.ssl else None,
        )
        logger.info(
            "postgres_connected",
            host=self._config.host,
            database=self._config.database,
        )
        await self._init_schema()

    async def _init_schema(self) -> None:
        async with self.pool.acquire() as conn:
            for statement in TABLE_SQL.split(";"):
                stmt = statement.strip()
                if stmt:
                    await conn.execute(stmt)
        logger.info("postgres_schema_initialised")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("postgres_disconnected")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Postgres store not connected. Call connect() first.")
        return self._pool

    async def health_check(self) -> dict[str, Any]:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {"status": "connected", "backend": "postgres"}
        except Exception as e:
            logger.error("postgres_health_check_failed", error=str(e))
            return {"status": "disconnected", "error": str(e)}

    # ─── Personas ─────────────────────────────────────────────────

    async def list_active_personas(self) -> list[Persona]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM personas WHERE is_active ORDER BY id"
            )
        return [Persona.model_validate(_record(r)) for r in rows]

    async def get_persona(self, persona_id: str) -> Persona | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM personas WHERE id = $1", persona_id)
        return Persona.model_validate(_record(row)) if row else None

    async def upsert_persona(self, persona: Persona) -> Persona:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO personas
                    (id, name, category, system_prompt, traits, attack_patterns, is_active)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    category = EXCLUDED.category,
                    system_prompt = EXCLUDED.system_prompt,
                    traits = EXCLUDED.traits,
                    attack_patterns = EXCLUDED.attack_patterns,
                    is_active = EXCLUDED.is_active
                """,
                persona.id, persona.name, persona.category, persona.system_prompt,
                persona.traits, persona.attack_patterns, persona.is_active,
            )
        return persona

    # ─── Battles ──────────────────────────────────────────────────

    async def insert_battle(self, battle: Battle) -> Battle:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO battles
                    (id, persona_id, batch_id, scenario_id, referee_score, success_score,
                     math_defense_score, humanity_score, verbal_yes, margin_integrity,
                     calculated_profit, cost_usd, transcript, winning_rebuttal,
                     referee_feedback, turns, model_tier, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                        $11, $12, $13, $14, $15, $16, $17, $18)
                """,
                battle.id, battle.persona_id, battle.batch_id, battle.scenario_id,
                battle.referee_score, battle.success_score, battle.math_defense_score,
                battle.humanity_score, battle.verbal_yes, battle.margin_integrity,
                battle.calculated_profit, battle.cost_usd, battle.transcript,
                battle.winning_rebuttal, battle.referee_feedback, battle.turns,
                battle.model_tier, battle.created_at,
            )
        return battle

    async def get_battle(self, battle_id: str) -> Battle | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM battles WHERE id = $1", battle_id)
        return Battle.model_validate(_record(row)) if row else None

    async def list_battles(
        self,
        scenario_id: str | None = None,
        score_above: int | None = None,
    ) -> list[Battle]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM battles
                WHERE ($1::uuid IS NULL OR scenario_id = $1::uuid)
                  AND ($2::int IS NULL OR referee_score > $2::int)
                ORDER BY referee_score DESC, created_at
                """,
                scenario_id, score_above,
            )
        return [Battle.model_validate(_record(r)) for r in rows]

    async def list_recent_battles(self, limit: int, offset: int = 0) -> tuple[list[Battle], int]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM battles ORDER BY created_at DESC, id DESC LIMIT $1 OFFSET $2",
                limit, offset,
            )
            total = await conn.fetchval("SELECT COUNT(*) FROM battles")
        return [Battle.model_validate(_record(r)) for r in rows], total

    # ─── Billing ledger ───────────────────────────────────────────

    async def append_ledger_entry(self, entry: BillingLedgerEntry) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO billing_ledger
                    (id, environment, provider, model, cost_usd, battle_id, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                entry.id, entry.environment, entry.provider, entry.model,
                entry.cost_usd, entry.battle_id, entry.created_at,
            )

    async def sum_ledger(self, environment: str, since: datetime) -> Decimal:
        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                """
                SELECT COALESCE(SUM(cost_usd), 0) FROM billing_ledger
                WHERE environment = $1 AND created_at >= $2
                """,
                environment, since,
            )
        return Decimal(total)

    async def ledger_breakdown(self, environment: str, since: datetime) -> dict[str, Decimal]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT provider, SUM(cost_usd) AS total FROM billing_ledger
                WHERE environment = $1 AND created_at >= $2
                GROUP BY provider
                """,
                environment, since,
            )
        return {r["provider"]: Decimal(r["total"]) for r in rows}

    # ─── Scenarios ────────────────────────────────────────────────

    async def insert_scenario(self, scenario: ScenarioInjection) -> ScenarioInjection:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO scenario_injections
                    (id, raw_objection, seller_persona, conflict_state, system_prompt,
                     status, total_sessions, completed_sessions, refused_sessions,
                     top_3_identified, created_at, completed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                scenario.id, scenario.raw_objection, scenario.seller_persona,
                scenario.conflict_state.model_dump_json() if scenario.conflict_state else None,
                scenario.system_prompt, scenario.status.value, scenario.total_sessions,
                scenario.completed_sessions, scenario.refused_sessions,
                scenario.top_3_identified, scenario.created_at, scenario.completed_at,
            )
        return scenario

    async def get_scenario(self, scenario_id: str) -> ScenarioInjection | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM scenario_injections WHERE id = $1", scenario_id,
            )
        return _scenario(row) if row else None

    async def _update_scenario(self, sql: str, *args: Any) -> ScenarioInjection:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, *args)
        if row is None:
            raise RecordNotFound(f"Scenario not found: {args[0]}")
        return _scenario(row)

    async def mark_scenario_running(self, scenario_id: str) -> ScenarioInjection:
        return await self._update_scenario(
            """
            UPDATE scenario_injections
            SET status = CASE WHEN status = 'pending' THEN 'running' ELSE status END
            WHERE id = $1
            RETURNING *
            """,
            scenario_id,
        )

    async def increment_completed_sessions(self, scenario_id: str) -> ScenarioInjection:
        return await self._update_scenario(
            """
            UPDATE scenario_injections
            SET completed_sessions = completed_sessions + CASE
                WHEN completed_sessions + refused_sessions < total_sessions THEN 1 ELSE 0 END
            WHERE id = $1
            RETURNING *
            """,
            scenario_id,
        )

    async def increment_refused_sessions(self, scenario_id: str) -> ScenarioInjection:
        return await self._update_scenario(
            """
            UPDATE scenario_injections
            SET refused_sessions = refused_sessions + CASE
                WHEN completed_sessions + refused_sessions < total_sessions THEN 1 ELSE 0 END
            WHERE id = $1
            RETURNING *
            """,
            scenario_id,
        )

    async def complete_scenario_with_breakthroughs(
        self,
        scenario_id: str,
        breakthroughs: list[ScenarioBreakthrough],
        completed_at: datetime,
    ) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                claimed = await conn.fetchval(
                    """
                    UPDATE scenario_injections
                    SET status = 'completed', top_3_identified = TRUE, completed_at = $2
                    WHERE id = $1 AND status <> 'completed'
                    RETURNING id
                    """,
                    scenario_id, completed_at,
                )
                if claimed is None:
                    exists = await conn.fetchval(
                        "SELECT 1 FROM scenario_injections WHERE id = $1", scenario_id,
                    )
                    if exists is None:
                        raise RecordNotFound(f"Scenario not found: {scenario_id}")
                    return False
                await conn.executemany(
                    """
                    INSERT INTO scenario_breakthroughs
                        (id, scenario_injection_id, battle_id, rank, referee_score,
                         conflict_resolved, price_maintained, winning_rebuttal,
                         insight, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    [
                        (b.id, scenario_id, b.battle_id, b.rank, b.referee_score,
                         b.conflict_resolved, b.price_maintained, b.winning_rebuttal,
                         b.insight, b.created_at)
                        for b in breakthroughs
                    ],
                )
        logger.info(
            "scenario_breakthroughs_written",
            scenario_id=scenario_id,
            count=len(breakthroughs),
        )
        return True

    async def reset_scenario(self, scenario_id: str) -> ScenarioInjection:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM scenario_breakthroughs WHERE scenario_injection_id = $1",
                    scenario_id,
                )
                row = await conn.fetchrow(
                    """
                    UPDATE scenario_injections
                    SET status = $2, top_3_identified = FALSE, completed_at = NULL
                    WHERE id = $1
                    RETURNING *
                    """,
                    scenario_id, ScenarioStatus.RUNNING.value,
                )
        if row is None:
            raise RecordNotFound(f"Scenario not found: {scenario_id}")
        return _scenario(row)

    async def mark_scenario_failed(self, scenario_id: str) -> None:
        await self._update_scenario(
            "UPDATE scenario_injections SET status = 'failed' WHERE id = $1 RETURNING *",
            scenario_id,
        )

    async def mark_scenario_halted(self, scenario_id: str, halted_at: datetime) -> bool:
        async with self.pool.acquire() as conn:
            claimed = await conn.fetchval(
                """
                UPDATE scenario_injections
                SET status = 'halted', completed_at = $2
                WHERE id = $1 AND status = 'running'
                RETURNING id
                """,
                scenario_id, halted_at,
            )
        return claimed is not None

    async def list_breakthroughs(self, scenario_id: str) -> list[ScenarioBreakthrough]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM scenario_breakthroughs
                WHERE scenario_injection_id = $1
                ORDER BY rank
                """,
                scenario_id,
            )
        return [_breakthrough(r) for r in rows]

    # ─── Tactics ──────────────────────────────────────────────────

    async def get_tactic(self, tactic_id: str) -> Tactic | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM tactics WHERE id = $1", tactic_id)
        return Tactic.model_validate(_record(row)) if row else None

    async def find_tactic_by_battle(self, battle_id: str) -> Tactic | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM tactics WHERE battle_id = $1", battle_id)
        return Tactic.model_validate(_record(row)) if row else None

    async def insert_tactic(self, tactic: Tactic) -> Tactic:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO tactics
                        (id, battle_id, rebuttal_text, is_synthetic, priority,
                         is_active, is_golden_sample, promoted_at, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    tactic.id, tactic.battle_id, tactic.rebuttal_text, tactic.is_synthetic,
                    tactic.priority, tactic.is_active, tactic.is_golden_sample,
                    tactic.promoted_at, tactic.created_at,
                )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateTacticError(tactic.battle_id or "") from exc
        return tactic

    async def activate_tactic(self, tactic_id: str, promoted_at: datetime) -> Tactic | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE tactics
                SET is_active = TRUE, promoted_at = COALESCE(promoted_at, $2)
                WHERE id = $1
                RETURNING *
                """,
                tactic_id, promoted_at,
            )
        return Tactic.model_validate(_record(row)) if row else None

    async def delete_tactic(self, tactic_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("DELETE FROM tactics WHERE id = $1", tactic_id)

    async def list_active_tactics(self) -> list[Tactic]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM tactics WHERE is_active ORDER BY priority DESC, created_at"
            )
        return [Tactic.model_validate(_record(r)) for r in rows]
