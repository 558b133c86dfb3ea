"""
BattleGym — Configuration System

All configuration is Pydantic-validated and loaded from:
1. config YAML (defaults)
2. Environment variables (overrides)

Every tunable parameter of the training pipeline lives here.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class ServerConfig(BaseModel):
    admin_key_header: str = "X-Admin-Key"
    # Admin API key → actor identity (shown in kill-switch notifications).
    # When empty, admin endpoints refuse every request.
    admin_keys: dict[str, str] = Field(default_factory=dict)
    # Bearer token for the training trigger. When empty, the trigger is refused.
    cron_secret: str = ""

    @model_validator(mode="after")
    def _strip_secrets(self) -> ServerConfig:
        # Secret managers can inject trailing \r\n into env vars
        if self.cron_secret:
            object.__setattr__(self, "cron_secret", self.cron_secret.strip())
        return self


class PostgresConfig(BaseModel):
    host: str = ""  # Empty → in-memory store (development only)
    port: int = 5432
    database: str = "battlegym"
    username: str = "battlegym"
    password: str = "battlegym_dev"
    pool_size: int = 10
    ssl: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    @property
    def dsn(self) -> str:
        return (
            f"postgresql://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class RedisConfig(BaseModel):
    url: str = "redis://redis:6379/0"
    prefix: str = "battlegym"
    password: str = ""

    @property
    def full_url(self) -> str:
        """Build URL with password injected."""
        clean_pw = self.password.strip() if self.password else ""
        if clean_pw and "://" in self.url:
            scheme, rest = self.url.split("://", 1)
            return f"{scheme}://:{clean_pw}@{rest}"
        return self.url


class LLMConfig(BaseModel):
    provider: str = "openai"
    api_key: str = ""
    # Closer + persona turns
    standard_model: str = "gpt-4o"
    economy_model: str = "gpt-4o-mini"
    # Referee judgment
    referee_model: str = "gpt-4o"
    referee_economy_model: str = "gpt-4o-mini"
    timeout_s: float = 60.0

    @model_validator(mode="after")
    def _strip_api_key(self) -> LLMConfig:
        if self.api_key:
            object.__setattr__(self, "api_key", self.api_key.strip())
        return self


class BudgetConfig(BaseModel):
    environment: str = "sandbox"
    daily_cap_usd: Decimal = Decimal("15.00")
    throttle_threshold_usd: Decimal = Decimal("3.00")
    # Provisionally debited at admission, released once the real cost is on the ledger
    estimated_battle_cost_usd: Decimal = Decimal("0.25")


class ArenaConfig(BaseModel):
    max_concurrent_battles: int = Field(default=3, ge=1)
    max_turns: int = Field(default=15, ge=2)
    max_tokens_per_turn: int = 400
    default_batch_size: int = Field(default=5, ge=1)
    max_batch_size: int = Field(default=10, ge=1)
    session_cost_cap_usd: Decimal = Decimal("5.00")
    temperature: float = 0.7
    # Fixed seed → deterministic persona selection
    selection_seed: int | None = None
    # Persona master list, upserted on startup. Empty → no seeding
    personas_path: str = "config/personas.yaml"
    closer_prompt: str = (
        "You are the Apex Acquisitions Closer. Your goal is to convert distressed "
        "property leads into signed contracts at $82,700.00.\n\n"
        "CORE MISSION:\n"
        "- Maximum allowable offer (MAO): $82,700.00\n"
        "- Defend this price with underwriting logic: repairs, market caps, closing costs\n"
        "- Follow the five steps: Intro, Discovery, Underwriting, Offer, Close\n"
        "- Get a verbal \"Yes\" to the Memorandum of Contract\n\n"
        "HUMANITY:\n"
        "- Use natural disfluencies and pauses\n"
        "- Sound like a real person, not a script"
    )


class ScenarioConfig(BaseModel):
    default_total_sessions: int = Field(default=50, ge=1)
    max_total_sessions: int = Field(default=200, ge=1)
    temperature: float = 0.8
    # math_defense >= this → price maintained
    price_maintained_threshold: int = 8
    # Break raw objections into a ConflictState before fan-out
    conflict_analysis: bool = True
    architect_temperature: float = 0.3


class PromotionConfig(BaseModel):
    default_priority: int = 5
    high_score_threshold: int = 90
    golden_sample_threshold: int = 95
    golden_sample_priority: int = 8


class KillSwitchConfig(BaseModel):
    backend: str = "local"  # "local" | "redis"


class NotificationConfig(BaseModel):
    slack_webhook_url: str = ""
    timeout_s: float = 5.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class BattleGymConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="BATTLEGYM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    arena: ArenaConfig = Field(default_factory=ArenaConfig)
    scenarios: ScenarioConfig = Field(default_factory=ScenarioConfig)
    promotion: PromotionConfig = Field(default_factory=PromotionConfig)
    killswitch: KillSwitchConfig = Field(default_factory=KillSwitchConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path | None = None) -> BattleGymConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # Inject secrets from environment
    if llm_key := os.environ.get("BATTLEGYM_LLM_API_KEY") or os.environ.get("OPENAI_API_KEY"):
        raw.setdefault("llm", {})["api_key"] = llm_key
    if cron_secret := os.environ.get("CRON_SECRET"):
        raw.setdefault("server", {})["cron_secret"] = cron_secret
    if slack_url := os.environ.get("SLACK_WEBHOOK_URL"):
        raw.setdefault("notifications", {})["slack_webhook_url"] = slack_url
    if pg_host := os.environ.get("BATTLEGYM_POSTGRES__HOST"):
        raw.setdefault("postgres", {})["host"] = pg_host
    if pg_pw := os.environ.get("BATTLEGYM_POSTGRES_PASSWORD"):
        raw.setdefault("postgres", {})["password"] = pg_pw
    if redis_url := os.environ.get("BATTLEGYM_REDIS__URL"):
        raw.setdefault("redis", {})["url"] = redis_url
    if redis_pw := os.environ.get("BATTLEGYM_REDIS_PASSWORD"):
        raw.setdefault("redis", {})["password"] = redis_pw
    if max_concurrent := os.environ.get("MAX_CONCURRENT_BATTLES"):
        raw.setdefault("arena", {})["max_concurrent_battles"] = int(max_concurrent)

    return BattleGymConfig(**raw)
