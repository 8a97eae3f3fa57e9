"""
Command line entry point.

Modes:
    web      serve the FastAPI application with uvicorn
    refresh  run one unconditional fetch cycle (the scheduled trigger)
    sync     run a fetch cycle only if the stored schedule is stale
    cleanup  drop fetch log rows older than the retention window
"""

import argparse
import asyncio
from typing import List
from typing import Optional

import structlog

from cfa_calendar.api_client import ApiClient
from cfa_calendar.database import Database
from cfa_calendar.kv_store import KeyValueStore
from cfa_calendar.models import SyncResult
from cfa_calendar.settings import Settings
from cfa_calendar.settings import get_settings
from cfa_calendar.sync import SyncPolicy


async def run_refresh(settings: Settings, force: bool = True) -> SyncResult:
    """Run one synchronization cycle against a fresh database connection."""
    async with Database(settings.db_path) as db:
        async with ApiClient(settings) as client:
            policy = SyncPolicy(db, KeyValueStore(db), client, settings=settings)
            return await (policy.refresh() if force else policy.sync_if_stale())


async def run_cleanup(settings: Settings) -> int:
    async with Database(settings.db_path) as db:
        return await db.cleanup_fetch_logs(settings.fetch_log_retention_days)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cfa_calendar", description="CFA screening calendar service")
    parser.add_argument(
        "--mode",
        choices=["web", "refresh", "sync", "cleanup"],
        default="web",
        help="What to run (default: web)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    settings.setup_logging()
    log = structlog.get_logger("cfa_calendar.main")

    if args.mode == "web":
        import uvicorn

        from cfa_calendar.web import create_app

        uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)
        return 0

    if args.mode == "cleanup":
        removed = asyncio.run(run_cleanup(settings))
        log.info("cleanup finished", removed=removed)
        return 0

    result = asyncio.run(run_refresh(settings, force=args.mode == "refresh"))
    log.info(
        "sync finished",
        mode=args.mode,
        state=result.state.value,
        success=result.success,
        events=result.events_count,
        message=result.message,
    )
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
