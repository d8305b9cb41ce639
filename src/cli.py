#!/usr/bin/env python
"""
supportsync CLI - one run per invocation, exit status 0 on success, 1 on failure.

Usage:
    python -m src.cli sync [--lookback-hours N]     # Incremental sync of recent activity
    python -m src.cli reconcile                     # Refresh stored open conversations
    python -m src.cli backfill [--batch-size N]     # Full message history for stored conversations
    python -m src.cli analyze [--max-conversations N]  # Classify unanalyzed messages
    python -m src.cli init-db                       # Create tables and views
    python -m src.cli purge-short-failures          # Drop ledger rows for short messages

Scheduling is external (cron, CI schedule, etc.); every command is safe to
re-run after a crash.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from src.analysis_engine import ClassificationEngine
from src.backfill import HistoricalBackfill
from src.classifier import MessageClassifier
from src.config import (
    ANALYZE_FIELDS,
    DB_FIELDS,
    SYNC_FIELDS,
    ConfigError,
    Settings,
    load_environment,
)
from src.db.analysis_storage import AnalysisStore
from src.db.chat_storage import ChatStore
from src.db.connection import get_connection, init_db
from src.freshchat_client import FreshchatClient
from src.logging_utils import configure_safe_logging
from src.rate_limiter import RateLimiter
from src.reconciliation import UnresolvedReconciler
from src.sync_engine import IncrementalSync

logger = logging.getLogger("supportsync")


async def _run_sync(args, settings: Settings):
    lookback = args.lookback_hours or settings.lookback_hours
    async with FreshchatClient.from_settings(settings) as client:
        with get_connection(settings.database_url) as conn:
            engine = IncrementalSync(client, ChatStore(conn), lookback_hours=lookback)
            return await engine.run()


async def _run_reconcile(args, settings: Settings):
    async with FreshchatClient.from_settings(settings) as client:
        with get_connection(settings.database_url) as conn:
            return await UnresolvedReconciler(client, ChatStore(conn)).run()


async def _run_backfill(args, settings: Settings):
    async with FreshchatClient.from_settings(settings) as client:
        with get_connection(settings.database_url) as conn:
            engine = HistoricalBackfill(
                client,
                ChatStore(conn),
                batch_size=args.batch_size or settings.batch_size,
                rate_limit_delay_ms=settings.rate_limit_delay_ms,
                batch_delay_ms=settings.batch_delay_ms,
            )
            return await engine.run()


async def _run_analyze(args, settings: Settings):
    classifier = MessageClassifier(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        rate_limiter=RateLimiter(settings.openai_rpm),
    )
    with get_connection(settings.database_url) as conn:
        engine = ClassificationEngine(
            classifier,
            AnalysisStore(conn),
            max_conversations=args.max_conversations or settings.max_conversations,
        )
        return await engine.run()


def cmd_sync(args, settings):
    """Incremental sync of the lookback window."""
    return asyncio.run(_run_sync(args, settings))


def cmd_reconcile(args, settings):
    """Refresh unresolved conversations."""
    return asyncio.run(_run_reconcile(args, settings))


def cmd_backfill(args, settings):
    """Backfill message history."""
    return asyncio.run(_run_backfill(args, settings))


def cmd_analyze(args, settings):
    """Classify messages and retry failures."""
    return asyncio.run(_run_analyze(args, settings))


def cmd_init_db(args, settings):
    init_db(settings.database_url)
    logger.info("Schema applied")


def cmd_purge_short_failures(args, settings):
    with get_connection(settings.database_url) as conn:
        return AnalysisStore(conn).purge_short_failures()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="supportsync",
        description="Freshchat sync and message classification runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Per-item debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    p_sync = subparsers.add_parser("sync", help="Incremental sync of recent activity")
    p_sync.add_argument("--lookback-hours", type=int, help="Window size (default: LOOKBACK_HOURS)")
    p_sync.set_defaults(func=cmd_sync, required=SYNC_FIELDS)

    p_reconcile = subparsers.add_parser("reconcile", help="Refresh stored open conversations")
    p_reconcile.set_defaults(func=cmd_reconcile, required=SYNC_FIELDS)

    p_backfill = subparsers.add_parser("backfill", help="Fetch full history for stored conversations")
    p_backfill.add_argument("--batch-size", type=int, help="Conversations per batch (default: BATCH_SIZE)")
    p_backfill.set_defaults(func=cmd_backfill, required=SYNC_FIELDS)

    p_analyze = subparsers.add_parser("analyze", help="Classify unanalyzed messages")
    p_analyze.add_argument(
        "--max-conversations", type=int, help="Conversations per run (default: MAX_CONVERSATIONS)"
    )
    p_analyze.set_defaults(func=cmd_analyze, required=ANALYZE_FIELDS)

    p_init = subparsers.add_parser("init-db", help="Create tables and views")
    p_init.set_defaults(func=cmd_init_db, required=DB_FIELDS)

    p_purge = subparsers.add_parser(
        "purge-short-failures", help="Delete retry-ledger rows for short messages"
    )
    p_purge.set_defaults(func=cmd_purge_short_failures, required=DB_FIELDS)

    return parser


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run one command, and return its exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    load_environment()
    settings = Settings.from_env()
    configure_safe_logging(verbose=args.verbose or settings.verbose_log)

    try:
        settings.require(*args.required)
        logger.info("=== %s start ===", args.command)
        args.func(args, settings)
    except ConfigError as e:
        logger.error("%s", e)
        return 1
    except Exception:
        logger.exception("%s failed", args.command)
        return 1

    logger.info("=== %s complete ===", args.command)
    return 0


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
