#!/usr/bin/env python3
"""
BattleGym — Run One Training Batch

Builds the full service stack from config (same wiring as the API) and
runs a single batch, printing the batch result as JSON.

Usage:
    python scripts/run_batch.py
    python scripts/run_batch.py --config config/default.yaml --size 3
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import orjson
from dotenv import load_dotenv

from battlegym.config import load_config
from battlegym.errors import NoActivePersonas
from battlegym.main import build_services
from battlegym.telemetry.logging import setup_logging


async def run(config_path: str, size: int | None) -> int:
    config = load_config(config_path)
    setup_logging(config.logging)

    services = await build_services(config)
    try:
        result = await services.orchestrator.run_batch(size)
    except NoActivePersonas as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await services.close()

    print(orjson.dumps(result.to_dict(), option=orjson.OPT_INDENT_2).decode())
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one BattleGym training batch")
    parser.add_argument(
        "--config",
        default="config/default.yaml",
        help="Path to the YAML config (default: config/default.yaml)",
    )
    parser.add_argument(
        "--size",
        type=int,
        default=None,
        help="Number of battles (default from config, clamped to the maximum)",
    )
    args = parser.parse_args()

    if args.size is not None and args.size < 1:
        parser.error("--size must be at least 1")

    load_dotenv()
    sys.exit(asyncio.run(run(args.config, args.size)))


if __name__ == "__main__":
    main()
