"""
BattleGym — Tactic Promotion

Lifts a winning rebuttal from the sandbox into the production tactic set.

promote(tactic_id | battle_id):
  - by tactic: activate it
  - by battle: find the battle's tactic, or synthesise one from the
    battle's winning rebuttal (is_synthetic, priority 5, inactive), then
    activate it

Idempotency: at most one tactic per battle. Requests for the same battle
are serialised by a per-battle lock in this process, and the store's
uniqueness on battle_id covers other processes. A DuplicateTacticError on
insert means someone else created it first; we promote theirs.

Rollback: if activation fails after this call created the tactic, the
tactic is deleted again and PromotionError is raised. Nothing half-applied
is left behind.

harvest() bulk-creates inactive synthetic tactics from high-score battles
for operator review. Golden samples (score > 95) get a higher priority.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from battlegym.errors import (
    BattleNotFound,
    DuplicateTacticError,
    NoWinningRebuttal,
    PromotionConflict,
    PromotionError,
    TacticNotFound,
)
from battlegym.primitives.common import utc_now
from battlegym.primitives.entities import Battle, Tactic
from battlegym.systems.promotion.types import HarvestReport, PromotionResult

if TYPE_CHECKING:
    from battlegym.config import PromotionConfig
    from battlegym.database.store import SandboxStore

logger = structlog.get_logger()

_FALLBACK_CLOSER_LINES = 3
_FALLBACK_MAX_CHARS = 500


def extract_winning_rebuttal(battle: Battle) -> str | None:
    """
    The referee's winning rebuttal, or the closer's last three lines when
    the referee did not name one.
    """
    if battle.winning_rebuttal and battle.winning_rebuttal.strip():
        return battle.winning_rebuttal.strip()

    closer_lines = [
        chunk[len("CLOSER:"):].strip()
        for chunk in battle.transcript.split("\n\n")
        if chunk.startswith("CLOSER:")
    ]
    if not closer_lines:
        return None
    text = " ".join(closer_lines[-_FALLBACK_CLOSER_LINES:])
    if len(text) > _FALLBACK_MAX_CHARS:
        return text[:_FALLBACK_MAX_CHARS] + "..."
    return text


class PromotionService:
    def __init__(self, store: SandboxStore, config: PromotionConfig) -> None:
        self._store = store
        self._config = config
        # battle_id → (lock, callers holding or waiting on it)
        self._battle_locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._logger = logger.bind(system="promotion")

    async def promote(
        self,
        tactic_id: str | None = None,
        battle_id: str | None = None,
    ) -> PromotionResult:
        if not tactic_id and not battle_id:
            raise ValueError("tacticId or battleId is required")

        if tactic_id:
            tactic = await self._store.get_tactic(tactic_id)
            if tactic is None:
                raise TacticNotFound(f"Tactic not found: {tactic_id}")
            if battle_id and tactic.battle_id != battle_id:
                raise PromotionConflict(
                    f"Tactic {tactic_id} belongs to battle {tactic.battle_id}, not {battle_id}"
                )
            return await self._activate(tactic, created=False)

        return await self._promote_battle(battle_id)

    async def _promote_battle(self, battle_id: str) -> PromotionResult:
        lock, users = self._battle_locks.get(battle_id, (asyncio.Lock(), 0))
        self._battle_locks[battle_id] = (lock, users + 1)
        try:
            async with lock:
                tactic, created = await self._find_or_create(battle_id)
                return await self._activate(tactic, created=created)
        finally:
            lock, users = self._battle_locks[battle_id]
            if users == 1:
                del self._battle_locks[battle_id]
            else:
                self._battle_locks[battle_id] = (lock, users - 1)

    async def _find_or_create(self, battle_id: str) -> tuple[Tactic, bool]:
        existing = await self._store.find_tactic_by_battle(battle_id)
        if existing is not None:
            return existing, False

        battle = await self._store.get_battle(battle_id)
        if battle is None:
            raise BattleNotFound(f"Battle not found: {battle_id}")
        rebuttal = (battle.winning_rebuttal or "").strip()
        if not rebuttal:
            raise NoWinningRebuttal("No winning rebuttal found for this battle")

        tactic = Tactic(
            battle_id=battle_id,
            rebuttal_text=rebuttal,
            is_synthetic=True,
            priority=self._config.default_priority,
            is_active=False,
        )
        try:
            await self._store.insert_tactic(tactic)
        except DuplicateTacticError:
            winner = await self._store.find_tactic_by_battle(battle_id)
            if winner is None:
                raise PromotionConflict(
                    f"Tactic for battle {battle_id} was created and removed concurrently"
                ) from None
            self._logger.info("tactic_created_concurrently", battle_id=battle_id)
            return winner, False

        self._logger.info("tactic_synthesised", battle_id=battle_id, tactic_id=tactic.id)
        return tactic, True

    async def _activate(self, tactic: Tactic, created: bool) -> PromotionResult:
        if tactic.is_active:
            self._logger.info("tactic_already_active", tactic_id=tactic.id)
            return PromotionResult(tactic=tactic, created=False, already_active=True)

        try:
            activated = await self._store.activate_tactic(tactic.id, utc_now())
            if activated is None:
                raise TacticNotFound(f"Tactic disappeared before activation: {tactic.id}")
        except Exception as exc:
            if created:
                await self._store.delete_tactic(tactic.id)
                self._logger.warning("tactic_promotion_rolled_back", tactic_id=tactic.id)
            self._logger.error("tactic_promotion_failed", tactic_id=tactic.id, error=str(exc))
            if isinstance(exc, PromotionError):
                raise
            raise PromotionError(f"Failed to promote tactic {tactic.id}: {exc}") from exc

        self._logger.info(
            "tactic_promoted",
            tactic_id=activated.id,
            battle_id=activated.battle_id,
            priority=activated.priority,
        )
        return PromotionResult(tactic=activated, created=created)

    # ─── Harvest ──────────────────────────────────────────────────

    async def harvest(self) -> HarvestReport:
        report = HarvestReport()
        battles = await self._store.list_battles(score_above=self._config.high_score_threshold)

        for battle in battles:
            if await self._store.find_tactic_by_battle(battle.id) is not None:
                report.skipped_existing += 1
                continue
            rebuttal = extract_winning_rebuttal(battle)
            if rebuttal is None:
                report.skipped_no_rebuttal += 1
                continue

            golden = battle.referee_score > self._config.golden_sample_threshold
            tactic = Tactic(
                battle_id=battle.id,
                rebuttal_text=rebuttal,
                is_synthetic=True,
                priority=(
                    self._config.golden_sample_priority if golden
                    else self._config.default_priority
                ),
                is_active=False,
                is_golden_sample=golden,
            )
            try:
                await self._store.insert_tactic(tactic)
            except DuplicateTacticError:
                report.skipped_existing += 1
                continue
            report.created.append(tactic)

        self._logger.info(
            "tactics_harvested",
            candidates=len(battles),
            created=len(report.created),
            golden_samples=report.golden_samples,
            skipped_existing=report.skipped_existing,
        )
        return report
