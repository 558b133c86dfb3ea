"""
BattleGym — Training Trigger Router

Endpoints:
  POST /cron/train   — run one training batch (bearer cron secret)
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from battlegym.api.auth import require_cron
from battlegym.errors import NoActivePersonas

logger = structlog.get_logger("battlegym.api.cron")

router = APIRouter(dependencies=[Depends(require_cron)])


class TrainRequest(BaseModel):
    model_config = {"populate_by_name": True}

    batch_size: int | None = Field(default=None, alias="batchSize", ge=1)


@router.post("/cron/train", response_model=None)
async def train(request: Request, body: TrainRequest | None = None) -> dict[str, Any] | JSONResponse:
    """Run one batch. Oversized batches are clamped to the configured maximum."""
    orchestrator = request.app.state.orchestrator
    batch_size = body.batch_size if body is not None else None

    try:
        result = await orchestrator.run_batch(batch_size)
    except NoActivePersonas as exc:
        logger.error("training_batch_rejected", reason=str(exc))
        return JSONResponse(status_code=409, content={"success": False, "error": str(exc)})

    return {"success": True, "batch": result.to_dict()}
