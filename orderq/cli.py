"""
orderq-sync: run one user's order sync from a JSON-lines email export.

Usage:
    orderq-sync emails.jsonl --user user-1
    orderq-sync emails.jsonl --user user-1 --db data/orderq.db --days 30
    orderq-sync emails.jsonl --user user-1 --memory --all
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import UTC, datetime
from pathlib import Path

from dotenv import load_dotenv

from orderq.config import DEFAULT_DAYS_TO_FETCH, MAX_EMAILS_PER_SYNC
from orderq.infrastructure.database import init_database
from orderq.observability.logging import get_logger
from orderq.orders.errors import OrderqError
from orderq.orders.mail_source import JsonlMailSource
from orderq.orders.repository import InMemoryOrderStore, SqliteOrderStore
from orderq.orders.sync import SyncOrchestrator

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orderq-sync",
        description="Extract and reconcile orders from a JSON-lines email file",
    )
    parser.add_argument("emails", type=Path, help="JSON-lines file, one email per line")
    parser.add_argument("--user", required=True, help="User the emails belong to")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite database path (default: ORDERQ_DB_PATH or data/orderq.db)",
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use an in-memory store instead of SQLite",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=DEFAULT_DAYS_TO_FETCH,
        help=f"Only emails from the last N days (default: {DEFAULT_DAYS_TO_FETCH})",
    )
    parser.add_argument(
        "--max-emails",
        type=int,
        default=MAX_EMAILS_PER_SYNC,
        help=f"Maximum emails per sync (default: {MAX_EMAILS_PER_SYNC})",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Ignore the date window and count limit",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    if args.memory:
        store = InMemoryOrderStore()
    else:
        store = SqliteOrderStore(init_database(args.db))

    source = JsonlMailSource(args.emails)

    try:
        orchestrator = SyncOrchestrator(store)
        if args.all:
            emails = source.fetch(args.user, since=_EPOCH, max_count=0)
            summary = orchestrator.sync(args.user, emails)
        else:
            summary = orchestrator.sync_from_source(
                args.user, source, days=args.days, max_count=args.max_emails
            )
    except (OSError, ValueError, OrderqError) as e:
        logger.error("Sync failed for user %s: %s", args.user, e)
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(summary.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
