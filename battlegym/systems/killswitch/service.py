"""
BattleGym — Kill-Switch Controller

Emergency halt on new training admissions. One writer (an admin action),
many readers (every admission check).

- Activation does not preempt battles already in flight. It only stops
  new admissions.
- is_active() fails safe: if the state cannot be read, it reports active.
- The activation alert is fire-and-forget. A failed webhook never rolls
  back the activation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from battlegym.primitives.common import utc_now
from battlegym.primitives.entities import KillSwitchState
from battlegym.systems.killswitch.backends import KillSwitchBackend, LocalKillSwitchBackend

if TYPE_CHECKING:
    from battlegym.clients.notifier import Notifier

logger = structlog.get_logger()


class KillSwitchController:
    def __init__(
        self,
        backend: KillSwitchBackend | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend or LocalKillSwitchBackend()
        self._notifier = notifier
        self._clock = clock
        self._write_lock = asyncio.Lock()
        self._logger = logger.bind(system="killswitch")

    async def activate(self, actor: str) -> KillSwitchState:
        async with self._write_lock:
            state = KillSwitchState(active=True, activated_at=self._clock(), activated_by=actor)
            await self._backend.write(state)

        self._logger.warning("killswitch_activated", actor=actor)
        if self._notifier is not None:
            activated_at = state.activated_at.isoformat() if state.activated_at else ""
            self._notifier.notify_in_background(
                ":rotating_light: KILL-SWITCH ACTIVATED\n\n"
                f"Activated by: {actor}\n"
                f"Time: {activated_at}\n"
                "All autonomous battle loops will be stopped."
            )
        return state

    async def deactivate(self, actor: str) -> KillSwitchState:
        async with self._write_lock:
            state = KillSwitchState(active=False)
            await self._backend.write(state)
        self._logger.info("killswitch_deactivated", actor=actor)
        return state

    async def status(self) -> KillSwitchState:
        """Current state. Raises if the backend cannot be read."""
        return await self._backend.read()

    async def is_active(self) -> bool:
        """Fresh read for an admission check. Unreadable state counts as active."""
        try:
            state = await self._backend.read()
        except Exception as exc:
            self._logger.error("killswitch_read_failed", error=str(exc), assumed_active=True)
            return True
        return state.active
