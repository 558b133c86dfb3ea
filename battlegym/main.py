"""
BattleGym — Application Entry Point

FastAPI application for the autonomous adversarial training pipeline.

`uvicorn battlegym.main:app`
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

# Load .env file before any configuration is loaded
load_dotenv()

from battlegym.api.routers.cron import router as cron_router
from battlegym.api.routers.sandbox import router as sandbox_router
from battlegym.clients.llm import LLMProvider, create_llm_provider
from battlegym.clients.notifier import Notifier, create_notifier
from battlegym.clients.redis import RedisClient
from battlegym.config import BattleGymConfig, load_config
from battlegym.database import SandboxStore, create_store, load_persona_file, seed_personas
from battlegym.primitives.common import HealthStatus
from battlegym.systems.arena import BattleOrchestrator, BattleSimulator
from battlegym.systems.governor import BudgetGovernor
from battlegym.systems.killswitch import (
    KillSwitchBackend,
    KillSwitchController,
    LocalKillSwitchBackend,
    RedisKillSwitchBackend,
)
from battlegym.systems.promotion import PromotionService
from battlegym.systems.referee import LLMTranscriptJudge, Referee, TranscriptJudge
from battlegym.systems.scenarios import ConflictArchitect, ScenarioService
from battlegym.telemetry.logging import setup_logging

logger = structlog.get_logger()


# ─── Service Graph ───────────────────────────────────────────────


@dataclass
class Services:
    """Everything the API and the batch script need, wired together."""

    config: BattleGymConfig
    store: SandboxStore
    notifier: Notifier
    governor: BudgetGovernor
    killswitch: KillSwitchController
    orchestrator: BattleOrchestrator
    scenarios: ScenarioService
    promotion: PromotionService
    llm_clients: list[LLMProvider]
    redis: RedisClient | None = None

    async def close(self) -> None:
        await self.scenarios.close()
        await self.notifier.close()
        for client in self.llm_clients:
            await client.close()
        if self.redis is not None:
            await self.redis.close()
        await self.store.close()


async def build_services(
    config: BattleGymConfig,
    store: SandboxStore | None = None,
    judge: TranscriptJudge | None = None,
    standard_llm: LLMProvider | None = None,
    economy_llm: LLMProvider | None = None,
) -> Services:
    """
    Connect data stores and construct every system. Injected collaborators
    replace the configured ones.
    """
    if store is None:
        store = create_store(config.postgres)
    await store.connect()
    if config.arena.personas_path:
        await seed_personas(store, load_persona_file(config.arena.personas_path))

    redis_client: RedisClient | None = None
    backend: KillSwitchBackend
    if config.killswitch.backend == "redis":
        redis_client = RedisClient(config.redis)
        await redis_client.connect()
        backend = RedisKillSwitchBackend(redis_client)
    else:
        backend = LocalKillSwitchBackend()

    notifier = create_notifier(
        config.notifications.slack_webhook_url, timeout_s=config.notifications.timeout_s,
    )

    llm_clients: list[LLMProvider] = []
    if standard_llm is None:
        standard_llm = create_llm_provider(config.llm, config.llm.standard_model)
        llm_clients.append(standard_llm)
    if economy_llm is None:
        economy_llm = create_llm_provider(config.llm, config.llm.economy_model)
        llm_clients.append(economy_llm)
    if judge is None:
        referee_standard = create_llm_provider(config.llm, config.llm.referee_model)
        referee_economy = create_llm_provider(config.llm, config.llm.referee_economy_model)
        llm_clients.extend([referee_standard, referee_economy])
        judge = LLMTranscriptJudge(referee_standard, referee_economy)

    governor = BudgetGovernor(store, config.budget, notifier=notifier)
    killswitch = KillSwitchController(backend, notifier=notifier)
    orchestrator = BattleOrchestrator(
        store=store,
        governor=governor,
        killswitch=killswitch,
        simulator=BattleSimulator(standard_llm, economy_llm, config.arena),
        referee=Referee(judge),
        config=config.arena,
        notifier=notifier,
        provider_name=config.llm.provider,
    )
    architect = ConflictArchitect(
        standard_llm if config.scenarios.conflict_analysis else None,
        temperature=config.scenarios.architect_temperature,
    )
    scenarios = ScenarioService(
        store,
        orchestrator,
        config.scenarios,
        selection_seed=config.arena.selection_seed,
        architect=architect,
        governor=governor,
        provider_name=config.llm.provider,
    )
    promotion = PromotionService(store, config.promotion)

    return Services(
        config=config,
        store=store,
        notifier=notifier,
        governor=governor,
        killswitch=killswitch,
        orchestrator=orchestrator,
        scenarios=scenarios,
        promotion=promotion,
        llm_clients=llm_clients,
        redis=redis_client,
    )


def attach_services(app: FastAPI, services: Services) -> None:
    app.state.config = services.config
    app.state.services = services
    app.state.store = services.store
    app.state.governor = services.governor
    app.state.killswitch = services.killswitch
    app.state.orchestrator = services.orchestrator
    app.state.scenarios = services.scenarios
    app.state.promotion = services.promotion


# ─── Lifespan ────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    config_path = os.environ.get("BATTLEGYM_CONFIG_PATH", "config/default.yaml")
    config = load_config(config_path)

    setup_logging(config.logging)
    logger.info(
        "battlegym_starting",
        config_path=config_path,
        environment=config.budget.environment,
        store="postgres" if config.postgres.enabled else "memory",
        killswitch_backend=config.killswitch.backend,
    )

    services = await build_services(config)
    attach_services(app, services)
    logger.info("battlegym_ready")

    yield

    logger.info("battlegym_shutting_down")
    await services.close()
    logger.info("battlegym_shutdown_complete")


# ─── FastAPI Application ─────────────────────────────────────────


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="BattleGym",
        description="Autonomous adversarial sales-training sandbox",
        version="0.1.0",
        lifespan=lifespan if use_lifespan else None,
    )

    cors_origins = ["http://localhost:3000"]
    # Allow additional origins via env var (comma-separated)
    extra_origins = os.environ.get("CORS_ALLOWED_ORIGINS", "")
    if extra_origins:
        cors_origins.extend(o.strip() for o in extra_origins.split(",") if o.strip())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    app.include_router(cron_router)
    app.include_router(sandbox_router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Public health check."""
        services: Services | None = getattr(request.app.state, "services", None)
        if services is None:
            return {"status": "starting"}

        store_health = await services.store.health_check()
        redis_health = (
            await services.redis.health_check() if services.redis else {"status": "not_configured"}
        )
        killswitch_active = await services.killswitch.is_active()

        overall = HealthStatus.HEALTHY
        if store_health.get("status") != "connected":
            overall = HealthStatus.DEGRADED
        if services.redis and redis_health.get("status") != "connected":
            overall = HealthStatus.DEGRADED

        return {
            "status": overall,
            "killswitch_active": killswitch_active,
            "store": store_health,
            "redis": redis_health,
            "budget": await services.governor.health(),
        }

    return app


app = create_app()
