#!/usr/bin/env python3
"""
Rank Sheet Refresh Runner

Runs refresh jobs from the command line against the configured database,
redis and upstream providers, then prints the final job state.

Usage:
    # Refresh every active keyword, 5 at a time:
    python scripts/run_refresh.py all --concurrency 5

    # Refresh one keyword:
    python scripts/run_refresh.py one wireless-earbuds

    # Build one keyword's sheet without persisting it:
    python scripts/run_refresh.py one wireless-earbuds --dry-run --report-date 2024-06-02

    # Retry keywords left in ERROR:
    python scripts/run_refresh.py retry --limit 20 --max-retries 3

    # Delete expired ASIN cache entries:
    python scripts/run_refresh.py cleanup-cache
"""

import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ranksheet.context import AppContext
from ranksheet.utils.config import get_settings
from ranksheet.utils.logging import configure_logging

logger = logging.getLogger(__name__)


async def run(args) -> int:
    """Run the requested job and print its result. Returns an exit code."""
    settings = get_settings()
    ctx = AppContext.from_settings(settings)
    await ctx.startup()

    try:
        if args.command == "cleanup-cache":
            count = await ctx.product_cache.purge_expired(dry_run=args.dry_run)
            print(json.dumps({"expired": count, "dryRun": args.dry_run}))
            return 0

        if args.command == "one" and args.dry_run:
            outcome = await ctx.refresher.refresh(
                args.slug, report_date=args.report_date, dry_run=True
            )
            print(json.dumps(outcome.to_dict(), indent=2, default=str))
            return 0 if outcome.ok else 1

        if args.command == "all":
            submitted = await ctx.orchestrator.enqueue_refresh_all(
                concurrency=args.concurrency, limit=args.limit
            )
        elif args.command == "one":
            submitted = await ctx.orchestrator.enqueue_refresh_one(
                args.slug, report_date=args.report_date
            )
        else:
            submitted = await ctx.orchestrator.enqueue_retry_failed(
                limit=args.limit, max_retries=args.max_retries
            )

        job = await ctx.orchestrator.wait(submitted["jobId"])
        print(json.dumps(job.to_dict(), indent=2))
        return 0 if job.status.value == "SUCCEEDED" else 1
    finally:
        await ctx.shutdown()


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Refresh rank sheets"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: LOG_LEVEL setting)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    all_parser = sub.add_parser("all", help="Refresh every active keyword")
    all_parser.add_argument("--concurrency", type=int, default=None)
    all_parser.add_argument("--limit", type=int, default=None)

    one_parser = sub.add_parser("one", help="Refresh a single keyword")
    one_parser.add_argument("slug")
    one_parser.add_argument("--report-date", default=None, help="ISO date of the weekly report")
    one_parser.add_argument("--dry-run", action="store_true", help="Do not persist")

    retry_parser = sub.add_parser("retry", help="Retry keywords in ERROR")
    retry_parser.add_argument("--limit", type=int, default=10)
    retry_parser.add_argument("--max-retries", type=int, default=3)

    cleanup_parser = sub.add_parser("cleanup-cache", help="Delete expired ASIN cache entries")
    cleanup_parser.add_argument("--dry-run", action="store_true", help="Only count expired entries")

    args = parser.parse_args()
    configure_logging(args.log_level)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
