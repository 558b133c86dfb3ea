"""
BattleGym — Notification Sink

Operator alerts (kill-switch activation, budget cap reached, halted batch
summaries) go to a chat webhook. Sending is fire-and-forget from the
caller's point of view: use `notify_in_background()` so a slow or broken
webhook never blocks or rolls back the action that triggered it.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

logger = structlog.get_logger("battlegym.notifier")


class Notifier(ABC):
    """Abstract notification sink."""

    def __init__(self) -> None:
        self._pending: set[asyncio.Task[None]] = set()

    @abstractmethod
    async def send(self, text: str, blocks: list[dict[str, Any]] | None = None) -> None:
        """Deliver one message. May raise."""
        ...

    def notify_in_background(
        self, text: str, blocks: list[dict[str, Any]] | None = None,
    ) -> None:
        """Schedule delivery without awaiting it. Failures are logged."""
        task = asyncio.get_running_loop().create_task(self._deliver(text, blocks))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, text: str, blocks: list[dict[str, Any]] | None) -> None:
        try:
            await self.send(text, blocks)
        except Exception as exc:
            logger.error("notification_failed", error=str(exc), text=text[:120])

    async def flush(self) -> None:
        """Wait for all in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def close(self) -> None:
        await self.flush()


class SlackNotifier(Notifier):
    """Posts messages to a Slack incoming webhook."""

    def __init__(self, webhook_url: str, timeout_s: float = 5.0) -> None:
        super().__init__()
        self._url = webhook_url
        self._client = httpx.AsyncClient(timeout=timeout_s)

    async def send(self, text: str, blocks: list[dict[str, Any]] | None = None) -> None:
        payload: dict[str, Any] = {"text": text}
        if blocks:
            payload["blocks"] = blocks
        response = await self._client.post(self._url, json=payload)
        response.raise_for_status()

    async def close(self) -> None:
        await super().close()
        await self._client.aclose()


class NullNotifier(Notifier):
    """Used when no webhook is configured. Messages go to the log only."""

    async def send(self, text: str, blocks: list[dict[str, Any]] | None = None) -> None:
        logger.info("notification_skipped", reason="no_webhook", text=text[:120])


def create_notifier(webhook_url: str, timeout_s: float = 5.0) -> Notifier:
    if webhook_url:
        return SlackNotifier(webhook_url, timeout_s=timeout_s)
    return NullNotifier()
