"""
PokeLedger — Run One Sync Job

Runs a single pass of a sync job against DATABASE_URL and prints the run
report as JSON. Useful for backfills and for debugging one set.

Usage:
    python scripts/run_sync.py justtcg_price_sync
    python scripts/run_sync.py justtcg_price_sync --set base1 --card-limit 20 --dry-run
    python scripts/run_sync.py tcg_price_sync --force
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.config import SyncJob, settings
from src.main import _configure_logging, check_database, create_db_engine
from src.pipeline.orchestrator import ConfigurationError, RunOptions
from src.pipeline.store import SqlStore
from src.pipeline.trigger import JOB_RUNNERS


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one PokeLedger sync job once.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_sync.py justtcg_price_sync
  python scripts/run_sync.py justtcg_price_sync --set base1 --dry-run
  python scripts/run_sync.py tcg_price_sync --force
""",
    )
    parser.add_argument(
        "job",
        choices=[job.value for job in SyncJob],
        help="Job to run.",
    )
    parser.add_argument(
        "--set",
        dest="only_set",
        default=None,
        help="Process only this set code. The resume cursor is not moved.",
    )
    parser.add_argument(
        "--card-limit",
        type=int,
        default=None,
        help="Stop after this many cards per set.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run even if a full pass already completed today.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and match without writing anything.",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    _configure_logging(log_level=settings.LOG_LEVEL)

    options = RunOptions(
        force=args.force,
        dry_run=args.dry_run,
        only_unit=args.only_set,
        card_limit=args.card_limit if args.card_limit and args.card_limit > 0 else None,
    )

    engine, session_factory = await create_db_engine()
    await check_database(engine, session_factory)
    try:
        report = await JOB_RUNNERS[args.job](SqlStore(session_factory), options)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    finally:
        await engine.dispose()

    print(json.dumps(report, indent=2, default=str))
    if not report.get("ok"):
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
