"""
BattleGym — Structured Logging

Every system logs through structlog with a bound `system` field
(`logger.bind(system="arena")`). Batch and scenario runners add
`batch_id` / `scenario_id` through structlog contextvars, so each battle
line carries the run it belongs to.

Records from stdlib loggers (uvicorn, httpx, asyncpg) pass through the
same processor chain and come out in the same format.

  format = "console" → coloured key=value lines for local runs
  format = "json"    → one JSON object per line for log shipping
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from battlegym.config import LoggingConfig

# Third-party loggers that are only interesting when something is wrong
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg", "asyncio")


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _render_chain(fmt: str) -> list[Any]:
    if fmt == "json":
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def setup_logging(config: LoggingConfig) -> None:
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[*_pre_chain(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *_render_chain(config.format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
