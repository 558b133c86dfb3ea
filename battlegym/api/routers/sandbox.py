"""
BattleGym — Sandbox Admin Router

All endpoints require an admin key.

Endpoints:
  GET  /sandbox/kill-switch       — current halt state
  POST /sandbox/kill-switch       — {action: "activate" | "deactivate"}
  GET  /sandbox/scenario-status   — ?scenarioId=… scenario plus ranked breakthroughs
  POST /sandbox/inject-scenario   — {rawObjection, totalSessions?, sellerPersona?}
  POST /sandbox/reset-scenario    — {scenarioId} drop breakthroughs and re-rank
  POST /sandbox/promote-tactic    — {tacticId?, battleId?}
  POST /sandbox/harvest-tactics   — synthesise inactive tactics from high scorers
  GET  /sandbox/budget-status     — today's spend, cap and per-provider breakdown
  GET  /sandbox/battles           — ?limit=50&offset=0 battles, newest first
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from battlegym.api.auth import require_admin
from battlegym.errors import (
    BattleNotFound,
    NoActivePersonas,
    NoWinningRebuttal,
    PromotionConflict,
    PromotionError,
    ScenarioNotFound,
    TacticNotFound,
)
from battlegym.primitives.entities import (
    Battle,
    KillSwitchState,
    ScenarioBreakthrough,
    ScenarioInjection,
    Tactic,
)

logger = structlog.get_logger("battlegym.api.sandbox")

router = APIRouter(prefix="/sandbox")


# ─── Request Bodies ───────────────────────────────────────────────


class KillSwitchRequest(BaseModel):
    action: str


class InjectScenarioRequest(BaseModel):
    model_config = {"populate_by_name": True}

    raw_objection: str = Field(alias="rawObjection", min_length=1)
    total_sessions: int | None = Field(default=None, alias="totalSessions", ge=1)
    seller_persona: str | None = Field(default=None, alias="sellerPersona")


class ScenarioRef(BaseModel):
    model_config = {"populate_by_name": True}

    scenario_id: str = Field(alias="scenarioId", min_length=1)


class PromoteTacticRequest(BaseModel):
    model_config = {"populate_by_name": True}

    tactic_id: str | None = Field(default=None, alias="tacticId")
    battle_id: str | None = Field(default=None, alias="battleId")


# ─── Serialisers ──────────────────────────────────────────────────


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _killswitch_json(state: KillSwitchState) -> dict[str, Any]:
    return {"active": state.active, "activatedAt": _iso(state.activated_at)}


def _scenario_json(scenario: ScenarioInjection) -> dict[str, Any]:
    return {
        "id": scenario.id,
        "rawObjection": scenario.raw_objection,
        "status": scenario.status.value,
        "totalSessions": scenario.total_sessions,
        "completedSessions": scenario.completed_sessions,
        "refusedSessions": scenario.refused_sessions,
        "top3Identified": scenario.top_3_identified,
        "createdAt": _iso(scenario.created_at),
        "completedAt": _iso(scenario.completed_at),
        "progress": scenario.progress,
        "sellerPersona": scenario.seller_persona,
        "conflictState": (
            scenario.conflict_state.model_dump(by_alias=True) if scenario.conflict_state else None
        ),
        "systemPrompt": scenario.system_prompt,
    }


def _breakthrough_json(b: ScenarioBreakthrough) -> dict[str, Any]:
    return {
        "id": b.id,
        "battleId": b.battle_id,
        "rank": b.rank,
        "refereeScore": b.referee_score,
        "conflictResolved": b.conflict_resolved,
        "priceMaintained": b.price_maintained,
        "winningRebuttal": b.winning_rebuttal,
        "insight": b.insight,
    }


def _tactic_json(t: Tactic) -> dict[str, Any]:
    return {
        "id": t.id,
        "battleId": t.battle_id,
        "rebuttalText": t.rebuttal_text,
        "isSynthetic": t.is_synthetic,
        "priority": t.priority,
        "isActive": t.is_active,
        "isGoldenSample": t.is_golden_sample,
        "promotedAt": _iso(t.promoted_at),
    }


# ─── Kill-Switch ──────────────────────────────────────────────────


@router.get("/kill-switch")
async def get_kill_switch(request: Request, actor: str = Depends(require_admin)) -> dict[str, Any]:
    state = await request.app.state.killswitch.status()
    return _killswitch_json(state)


@router.post("/kill-switch")
async def post_kill_switch(
    request: Request,
    body: KillSwitchRequest,
    actor: str = Depends(require_admin),
) -> dict[str, Any]:
    killswitch = request.app.state.killswitch
    if body.action == "activate":
        state = await killswitch.activate(actor)
        message = "Kill-switch activated. All autonomous loops will stop."
    elif body.action == "deactivate":
        state = await killswitch.deactivate(actor)
        message = "Kill-switch deactivated. Autonomous loops can resume."
    else:
        raise HTTPException(
            status_code=400, detail='Invalid action. Use "activate" or "deactivate"',
        )
    return {"success": True, **_killswitch_json(state), "message": message}


# ─── Scenarios ────────────────────────────────────────────────────


@router.get("/scenario-status")
async def scenario_status(
    request: Request,
    scenarioId: str | None = None,  # noqa: N803
    actor: str = Depends(require_admin),
) -> dict[str, Any]:
    if not scenarioId:
        raise HTTPException(status_code=400, detail="scenarioId is required")
    try:
        scenario, breakthroughs = await request.app.state.scenarios.status(scenarioId)
    except ScenarioNotFound as exc:
        raise HTTPException(status_code=404, detail="Scenario not found") from exc
    return {
        "scenario": _scenario_json(scenario),
        "breakthroughs": [_breakthrough_json(b) for b in breakthroughs],
    }


@router.post("/inject-scenario")
async def inject_scenario(
    request: Request,
    body: InjectScenarioRequest,
    actor: str = Depends(require_admin),
) -> dict[str, Any]:
    try:
        scenario = await request.app.state.scenarios.inject_scenario(
            body.raw_objection, body.total_sessions, seller_persona=body.seller_persona,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NoActivePersonas as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info("scenario_injection_requested", scenario_id=scenario.id, actor=actor)
    return {"success": True, "scenario": _scenario_json(scenario)}


@router.post("/reset-scenario")
async def reset_scenario(
    request: Request,
    body: ScenarioRef,
    actor: str = Depends(require_admin),
) -> dict[str, Any]:
    try:
        scenario, breakthroughs = await request.app.state.scenarios.reset(body.scenario_id)
    except ScenarioNotFound as exc:
        raise HTTPException(status_code=404, detail="Scenario not found") from exc
    logger.info("scenario_reset_requested", scenario_id=scenario.id, actor=actor)
    return {
        "success": True,
        "scenario": _scenario_json(scenario),
        "breakthroughs": [_breakthrough_json(b) for b in breakthroughs],
    }


# ─── Promotion ────────────────────────────────────────────────────


@router.post("/promote-tactic")
async def promote_tactic(
    request: Request,
    body: PromoteTacticRequest,
    actor: str = Depends(require_admin),
) -> dict[str, Any]:
    if not body.tactic_id and not body.battle_id:
        raise HTTPException(status_code=400, detail="tacticId or battleId is required")
    try:
        result = await request.app.state.promotion.promote(
            tactic_id=body.tactic_id, battle_id=body.battle_id,
        )
    except (TacticNotFound, BattleNotFound, NoWinningRebuttal) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PromotionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PromotionError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    logger.info("tactic_promotion_requested", tactic_id=result.tactic.id, actor=actor)
    return {
        "success": True,
        "message": result.message,
        "tactic": _tactic_json(result.tactic),
    }


@router.post("/harvest-tactics")
async def harvest_tactics(request: Request, actor: str = Depends(require_admin)) -> dict[str, Any]:
    report = await request.app.state.promotion.harvest()
    return {
        "success": True,
        "created": [_tactic_json(t) for t in report.created],
        "goldenSamples": report.golden_samples,
        "skippedExisting": report.skipped_existing,
        "skippedNoRebuttal": report.skipped_no_rebuttal,
    }


# ─── Budget ───────────────────────────────────────────────────────


@router.get("/budget-status")
async def budget_status(request: Request, actor: str = Depends(require_admin)) -> dict[str, Any]:
    summary = await request.app.state.governor.summary()
    return {
        "environment": summary.environment,
        "dailySpend": float(summary.spend_today),
        "dailyCap": float(summary.daily_cap),
        "remaining": float(summary.remaining),
        "reserved": float(summary.reserved),
        "percentageUsed": summary.percent_used,
        "isThrottled": summary.throttled,
        "isExceeded": summary.exceeded,
        "breakdown": {provider: float(cost) for provider, cost in summary.breakdown.items()},
    }


# ─── Battles ──────────────────────────────────────────────────────


def _battle_json(battle: Battle, persona_name: str | None) -> dict[str, Any]:
    return {
        "id": battle.id,
        "personaId": battle.persona_id,
        "personaName": persona_name,
        "scenarioId": battle.scenario_id,
        "refereeScore": battle.referee_score,
        "refereeFeedback": battle.referee_feedback,
        "mathDefenseScore": battle.math_defense_score,
        "humanityScore": battle.humanity_score,
        "successScore": battle.success_score,
        "verbalYes": battle.verbal_yes,
        "winningRebuttal": battle.winning_rebuttal,
        "turns": battle.turns,
        "costUsd": float(battle.cost_usd),
        "createdAt": _iso(battle.created_at),
        "transcript": battle.transcript,
    }


@router.get("/battles")
async def list_battles(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: str = Depends(require_admin),
) -> dict[str, Any]:
    store = request.app.state.store
    battles, total = await store.list_recent_battles(limit, offset)
    names: dict[str, str | None] = {}
    for persona_id in {b.persona_id for b in battles}:
        persona = await store.get_persona(persona_id)
        names[persona_id] = persona.name if persona else None
    return {
        "battles": [_battle_json(b, names[b.persona_id]) for b in battles],
        "total": total,
    }
