"""
BattleGym — Kill-Switch State Backends

The halt flag lives behind a small interface so the controller does not
care where it is stored.

- LocalKillSwitchBackend: process memory. A restart clears the flag. This
  is the default and a known limitation: an operator who halts training
  must re-halt after a deploy.
- RedisKillSwitchBackend: one JSON key in Redis. Survives restarts and is
  shared by every process pointed at the same Redis prefix.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from battlegym.primitives.entities import KillSwitchState

if TYPE_CHECKING:
    from battlegym.clients.redis import RedisClient

_STATE_DOCUMENT = "killswitch:state"


class KillSwitchBackend(ABC):
    @abstractmethod
    async def read(self) -> KillSwitchState: ...

    @abstractmethod
    async def write(self, state: KillSwitchState) -> None: ...


class LocalKillSwitchBackend(KillSwitchBackend):
    def __init__(self) -> None:
        self._state = KillSwitchState()

    async def read(self) -> KillSwitchState:
        return self._state.model_copy()

    async def write(self, state: KillSwitchState) -> None:
        self._state = state.model_copy()


class RedisKillSwitchBackend(KillSwitchBackend):
    def __init__(self, redis: RedisClient) -> None:
        self._redis = redis

    async def read(self) -> KillSwitchState:
        raw = await self._redis.load(_STATE_DOCUMENT)
        if raw is None:
            return KillSwitchState()
        return KillSwitchState.model_validate(raw)

    async def write(self, state: KillSwitchState) -> None:
        await self._redis.save(_STATE_DOCUMENT, state.model_dump(mode="json"))
