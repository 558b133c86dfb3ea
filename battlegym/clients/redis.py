"""
BattleGym — Redis State Client

Holds small JSON state documents that must survive a restart and be seen
by every BattleGym process sharing the same Redis prefix. The kill-switch
flag is the only document today (`killswitch.backend = "redis"`).

Documents are stored as orjson bytes under `<prefix>:<name>`.
"""

from __future__ import annotations

from typing import Any

import orjson
import structlog
from redis.asyncio import Redis

from battlegym.config import RedisConfig

logger = structlog.get_logger()


class RedisClient:
    def __init__(self, config: RedisConfig) -> None:
        self._config = config
        self._redis: Redis | None = None
        self._logger = logger.bind(system="redis", prefix=config.prefix)

    async def connect(self) -> None:
        redis = Redis.from_url(self._config.full_url)
        await redis.ping()
        self._redis = redis
        self._logger.info("redis_connected")

    async def close(self) -> None:
        if self._redis is None:
            return
        redis, self._redis = self._redis, None
        await redis.aclose()
        self._logger.info("redis_closed")

    @property
    def connection(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("RedisClient.connect() has not been awaited")
        return self._redis

    def namespaced(self, name: str) -> str:
        return f"{self._config.prefix}:{name}"

    async def load(self, name: str) -> Any | None:
        """The stored document, or None when nothing was saved under `name`."""
        raw = await self.connection.get(self.namespaced(name))
        return None if raw is None else orjson.loads(raw)

    async def save(self, name: str, document: Any, ttl_s: int | None = None) -> None:
        await self.connection.set(self.namespaced(name), orjson.dumps(document), ex=ttl_s)

    async def health_check(self) -> dict[str, Any]:
        try:
            await self.connection.ping()
        except Exception as exc:
            self._logger.error("redis_unreachable", error=str(exc))
            return {"status": "disconnected", "error": str(exc)}
        return {"status": "connected", "prefix": self._config.prefix}
