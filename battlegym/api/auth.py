"""
BattleGym — Request Authentication

Two credentials, both checked before any handler side effects:

- Admin key: `X-Admin-Key` header (configurable) or `Authorization: Bearer`.
  Each configured key maps to an actor identity, which is what appears in
  kill-switch notifications.
- Cron secret: `Authorization: Bearer <CRON_SECRET>` on the training trigger.

Both fail closed. When the credential is not configured the endpoint
answers 503, never open access.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request

logger = structlog.get_logger("battlegym.api.auth")


def _bearer(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    return ""


def _matches(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode(), expected.encode())


async def require_admin(request: Request) -> str:
    """Returns the actor bound to the presented admin key."""
    config = request.app.state.config
    admin_keys: dict[str, str] = config.server.admin_keys
    if not admin_keys:
        logger.error("admin_auth_not_configured", path=request.url.path)
        raise HTTPException(status_code=503, detail="Admin authentication is not configured")

    presented = request.headers.get(config.server.admin_key_header, "") or _bearer(request)
    if presented:
        for key, actor in admin_keys.items():
            if _matches(presented, key):
                return actor

    logger.warning("admin_auth_rejected", path=request.url.path)
    raise HTTPException(status_code=401, detail="Unauthorized")


async def require_cron(request: Request) -> None:
    secret: str = request.app.state.config.server.cron_secret
    if not secret:
        logger.error("cron_secret_not_configured")
        raise HTTPException(status_code=503, detail="Cron secret is not configured")

    presented = _bearer(request)
    if not presented or not _matches(presented, secret):
        logger.warning("cron_auth_rejected")
        raise HTTPException(status_code=401, detail="Unauthorized")
