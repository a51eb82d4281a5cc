"""Command-line entry point for the periodic scheduler run.

Intended for cron or a Kubernetes CronJob:

    escrow-sweep                 # funding reconciliation + release sweep
    escrow-sweep --only release  # release sweep only
"""

from __future__ import annotations

import argparse
import asyncio
import json

from marketplace_escrow.config import get_settings
from marketplace_escrow.infrastructure.database.engine import close_db, get_session_factory
from marketplace_escrow.infrastructure.redis_client import close_redis, init_redis
from marketplace_escrow.logging_config import get_logger, setup_logging
from marketplace_escrow.services.providers import get_notification_service, get_payment_service
from marketplace_escrow.services.release_scheduler import ReleaseScheduler

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="escrow-sweep",
        description="Release escrow holds whose contest window has passed.",
    )
    parser.add_argument(
        "--only",
        choices=("funding", "release"),
        default=None,
        help="Run a single sweep instead of both",
    )
    return parser


async def run(only: str | None = None) -> dict:
    settings = get_settings()
    try:
        await init_redis()
    except Exception as exc:
        logger.warning("sweep.redis_unavailable", error=str(exc))

    scheduler = ReleaseScheduler(
        get_session_factory(), get_payment_service(), get_notification_service(), settings
    )
    try:
        if only == "funding":
            return {"funding": (await scheduler.run_funding_reconciliation()).to_dict()}
        if only == "release":
            return {"release": (await scheduler.run_release_sweep()).to_dict()}
        return await scheduler.run_all()
    finally:
        await close_db()
        await close_redis()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)

    result = asyncio.run(run(args.only))
    print(json.dumps(result, indent=2))
    failed = sum(section.get("failed", 0) for section in result.values())
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
