import argparse
import asyncio
import json
import sys
from typing import List, Optional

from groupbuy.db import db
from groupbuy.db.session import engine
from groupbuy.services.automation.orchestrator import AutomationOrchestrator
from groupbuy.utils.datetime_utils import parse_iso_datetime
from groupbuy.utils.logging import get_logger

logger = get_logger()


async def _tick(now: Optional[str], batch_size: Optional[int]) -> int:
    try:
        orchestrator = AutomationOrchestrator(batch_size=batch_size)
        summary = await orchestrator.run_once(
            now=parse_iso_datetime(now) if now else None
        )
    finally:
        await engine.dispose()

    print(json.dumps(summary.model_dump(mode="json"), indent=2))
    return 0 if summary.success else 1


def tick(argv: Optional[List[str]] = None) -> int:
    """``groupbuy-tick``: run one automation tick and print its summary as JSON."""
    parser = argparse.ArgumentParser(
        prog="groupbuy-tick",
        description="Open/close due general orders and drain the notification queue once.",
    )
    parser.add_argument(
        "--now",
        help="ISO-8601 timestamp to use as the current time (default: wall clock)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum queue entries to dispatch (default: QUEUE_BATCH_SIZE)",
    )
    args = parser.parse_args(argv)

    if args.batch_size is not None and args.batch_size < 1:
        parser.error("--batch-size must be at least 1")
    if args.now:
        try:
            parse_iso_datetime(args.now)
        except ValueError:
            parser.error(f"--now is not an ISO-8601 timestamp: {args.now}")

    return asyncio.run(_tick(args.now, args.batch_size))


async def _manage_db(command: str, include_dev_users: bool):
    try:
        if command == "create":
            await db.create_tables()
        elif command == "drop":
            await db.drop_tables()
        elif command == "seed":
            await db.seed_db(include_dev_users=include_dev_users)
        elif command == "reset":
            await db.reset_db()
    finally:
        await engine.dispose()


def manage_db(argv: Optional[List[str]] = None) -> int:
    """``groupbuy-db``: create, drop, seed or reset the schema."""
    parser = argparse.ArgumentParser(
        prog="groupbuy-db", description="Manage the group order database schema."
    )
    parser.add_argument("command", choices=["create", "drop", "seed", "reset"])
    parser.add_argument(
        "--no-dev-users",
        action="store_true",
        help="Seed only templates and the shop status row",
    )
    args = parser.parse_args(argv)

    try:
        asyncio.run(_manage_db(args.command, not args.no_dev_users))
    except Exception as e:
        logger.error(f"Database command {args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(tick())
