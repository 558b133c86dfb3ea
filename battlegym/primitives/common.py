"""
BattleGym — Common Primitives

Shared enums, base classes, and utilities used across all systems.
"""

from __future__ import annotations

import enum
from datetime import datetime, time, timezone
from decimal import Decimal

from pydantic import BaseModel, Field
from ulid import ULID


def new_id() -> str:
    """Generate a new UUID string from a ULID. Time-sortable, globally unique."""
    return str(ULID().to_uuid())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def utc_day_start(moment: datetime | None = None) -> datetime:
    """Midnight (UTC) of the calendar day containing `moment`."""
    moment = moment or utc_now()
    return datetime.combine(moment.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)


def usd(value: Decimal | float | int | str) -> Decimal:
    """Normalise a money amount to a Decimal."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# ─── Enums ────────────────────────────────────────────────────────


class ModelTier(str, enum.Enum):
    STANDARD = "standard"
    ECONOMY = "economy"


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ─── Base Models ──────────────────────────────────────────────────


class BGBaseModel(BaseModel):
    """Base model for all BattleGym primitives."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class Timestamped(BGBaseModel):
    """Mixin for models with creation timestamps."""

    created_at: datetime = Field(default_factory=utc_now)


class Identified(BGBaseModel):
    """Mixin for models with UUID primary keys."""

    id: str = Field(default_factory=new_id)
