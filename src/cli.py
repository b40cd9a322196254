"""Command-line interface for the automation layer.

This module provides CLI commands for cron-driven task generation,
issuing automation API keys, and dispatching a webhook event by hand.

Usage:
    python -m src.cli generate-tasks --date 2024-03-01
    python -m src.cli issue-key --user-id u1 --name "Zapier" --expires-in-days 90
    python -m src.cli dispatch --event-type chapter.created --user-id u1 --data '{"id": "c1"}'
"""

import argparse
import asyncio
import json
import sys
from datetime import date, timedelta
from typing import Any

import structlog

from src.config import Settings
from src.errors import StudyPlannerError
from src.gateway.keys import issue_api_key
from src.observability.logging import setup_logging
from src.scheduler.generator import DailyTaskGenerator
from src.storage.store import PlannerStore
from src.webhooks.dispatcher import DispatchSummary, WebhookDispatcher
from src.webhooks.events import WebhookEventType

logger = structlog.get_logger(__name__)


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run_generate_command(args: argparse.Namespace, settings: Settings) -> int:
    """Run the daily task generator once.

    Args:
        args: Parsed CLI arguments.
        settings: Application settings.

    Returns:
        Exit code (1 if any user failed).
    """
    try:
        task_date = date.fromisoformat(args.date) if args.date else None
    except ValueError:
        logger.error("invalid_date", date=args.date)
        return 1

    store = PlannerStore(settings.DATABASE_PATH)
    await store.initialize()
    try:
        dispatcher = WebhookDispatcher(store, settings)
        generator = DailyTaskGenerator(store, settings, emit=dispatcher.dispatch_event)
        report = await generator.generate(task_date)
    finally:
        await store.close()

    _print_json(
        {
            **report.to_response(),
            "failed_users": [
                {"user_id": u.user_id, "error": u.error} for u in report.failed_users
            ],
        }
    )
    return 1 if report.failed_users else 0


async def run_issue_key_command(args: argparse.Namespace, settings: Settings) -> int:
    """Issue and store a read-only API key, printing the raw key once."""
    if args.expires_in_days is not None and args.expires_in_days <= 0:
        logger.error("invalid_expiry", expires_in_days=args.expires_in_days)
        return 1

    issued = issue_api_key(
        args.user_id,
        name=args.name,
        expires_in=timedelta(days=args.expires_in_days) if args.expires_in_days else None,
        settings=settings,
    )

    store = PlannerStore(settings.DATABASE_PATH)
    await store.initialize()
    try:
        await store.add_api_key(issued.record)
    finally:
        await store.close()

    logger.info("api_key_issued", key_id=issued.record.id, key_prefix=issued.record.key_prefix)

    _print_json(
        {
            "id": issued.record.id,
            "user_id": issued.record.user_id,
            "name": issued.record.name,
            "key": issued.raw_key,
            "key_prefix": issued.record.key_prefix,
            "expires_at": issued.record.expires_at,
        }
    )
    return 0


async def run_dispatch_command(args: argparse.Namespace, settings: Settings) -> int:
    """Dispatch one event to a user's subscriptions."""
    try:
        event_type = WebhookEventType(args.event_type)
    except ValueError:
        logger.error(
            "unknown_event_type",
            event_type=args.event_type,
            allowed=[t.value for t in WebhookEventType],
        )
        return 1

    try:
        data = json.loads(args.data) if args.data else {}
    except json.JSONDecodeError as e:
        logger.error("invalid_event_data", error=str(e))
        return 1
    if not isinstance(data, dict):
        logger.error("invalid_event_data", error="data must be a JSON object")
        return 1

    store = PlannerStore(settings.DATABASE_PATH)
    await store.initialize()
    try:
        dispatcher = WebhookDispatcher(store, settings)
        reports = await dispatcher.dispatch(event_type, args.user_id, data)
    finally:
        await store.close()

    summary = DispatchSummary.from_reports(reports)
    _print_json(summary.model_dump())
    return 0 if summary.delivered == summary.total else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Study planner automation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Generate command
    gen_parser = subparsers.add_parser("generate-tasks", help="Generate daily schedule tasks")
    gen_parser.add_argument(
        "--date",
        help="Day to generate for, YYYY-MM-DD (defaults to today in UTC)",
    )

    # Issue key command
    key_parser = subparsers.add_parser("issue-key", help="Issue a read-only automation API key")
    key_parser.add_argument(
        "--user-id",
        required=True,
        help="Owner of the key",
    )
    key_parser.add_argument(
        "--name",
        default="",
        help="Label for the key",
    )
    key_parser.add_argument(
        "--expires-in-days",
        type=int,
        help="Key lifetime in days (no expiry if omitted)",
    )

    # Dispatch command
    dispatch_parser = subparsers.add_parser("dispatch", help="Send a webhook event")
    dispatch_parser.add_argument(
        "--event-type",
        required=True,
        help="Webhook event type, e.g. chapter.created",
    )
    dispatch_parser.add_argument(
        "--user-id",
        required=True,
        help="User whose subscriptions receive the event",
    )
    dispatch_parser.add_argument(
        "--data",
        default="{}",
        help="Event data as a JSON object",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI.

    Returns:
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = Settings.from_env()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    commands = {
        "generate-tasks": run_generate_command,
        "issue-key": run_issue_key_command,
        "dispatch": run_dispatch_command,
    }

    try:
        return asyncio.run(commands[args.command](args, settings))
    except StudyPlannerError as e:
        logger.error("command_failed", command=args.command, **e.to_dict())
        return 1


if __name__ == "__main__":
    sys.exit(main())
