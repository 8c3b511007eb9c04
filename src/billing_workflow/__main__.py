"""Command-line runner for the billing sweeps.

Usage:
    # One automation sweep against a JSON state file
    python -m billing_workflow automation --state state.json

    # One reminder sweep, as if it were a given day
    python -m billing_workflow reminders --state state.json --date 2026-06-01

    # Nightly totals reconciliation
    python -m billing_workflow reconcile --state state.json

    # Periodic loop running every sweep at its configured cadence
    python -m billing_workflow serve --state state.json --max-ticks 10
"""

import argparse
import asyncio
import json
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any

import structlog

from billing_workflow.automation import AutomationScheduler
from billing_workflow.config import configure_logging, get_settings
from billing_workflow.errors import BillingError
from billing_workflow.invoicing import BillingService
from billing_workflow.notifier import HttpNotifier, LoggingNotifier, Notifier
from billing_workflow.reminders import ReminderDispatcher
from billing_workflow.repository import InMemoryRepository
from billing_workflow.scheduler import SweepScheduler, register_default_sweeps

logger = structlog.get_logger(__name__)

COMMANDS = ("automation", "reminders", "reconcile", "serve")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billing-workflow",
        description="Run billing workflow sweeps against a JSON state file",
    )
    parser.add_argument("command", choices=COMMANDS, help="Sweep to run")
    parser.add_argument(
        "--state",
        type=Path,
        required=True,
        help="JSON snapshot of quotes, invoices and logs (created if missing)",
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Run as if today were this date (YYYY-MM-DD, business timezone)",
    )
    parser.add_argument(
        "--max-ticks",
        type=int,
        default=None,
        help="Stop 'serve' after this many ticks",
    )
    parser.add_argument(
        "--tick-seconds",
        type=float,
        default=30.0,
        help="Seconds between 'serve' ticks (default: 30)",
    )
    return parser


def load_repository(path: Path) -> InMemoryRepository:
    if not path.exists():
        logger.info("state_file_missing", path=str(path))
        return InMemoryRepository()
    return InMemoryRepository.from_snapshot(json.loads(path.read_text(encoding="utf-8")))


def save_repository(repo: InMemoryRepository, path: Path) -> None:
    path.write_text(json.dumps(repo.snapshot(), indent=2), encoding="utf-8")


def build_notifier() -> Notifier:
    if get_settings().notifier_url:
        return HttpNotifier()
    return LoggingNotifier()


def _clock_for(override: date | None, scheduler: SweepScheduler) -> datetime:
    now = scheduler.now()
    if override is None:
        return now
    return datetime.combine(override, now.timetz())


async def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run the requested sweep and print its JSON summary."""
    configure_logging()
    args = build_parser().parse_args(argv)

    repo = load_repository(args.state)
    notifier = build_notifier()
    automation = AutomationScheduler(repo)
    reminders = ReminderDispatcher(repo, notifier)
    billing = BillingService(repo)
    scheduler = SweepScheduler(tick_seconds=args.tick_seconds)
    reference_time = _clock_for(args.date, scheduler)

    logger.info("billing_workflow_starting", command=args.command, reference_time=reference_time.isoformat())
    summary: dict[str, Any]
    try:
        if args.command == "automation":
            result = await automation.run_automation_sweep(
                reference_time.date(), reference_time=reference_time
            )
            summary = result.to_dict()
        elif args.command == "reminders":
            summary = (await reminders.run_reminder_sweep(reference_time)).to_dict()
        elif args.command == "reconcile":
            summary = (await billing.reconcile_totals(reference_time)).to_dict()
        else:
            register_default_sweeps(scheduler, automation, reminders, billing)
            await scheduler.run_continuous(max_ticks=args.max_ticks)
            summary = scheduler.get_status()
    except KeyboardInterrupt:
        logger.info("billing_workflow_interrupted")
        summary = {"interrupted": True}
    except BillingError as e:
        logger.error("billing_workflow_failed", code=e.code, error=e.message)
        return 1
    finally:
        save_repository(repo, args.state)
        if isinstance(notifier, HttpNotifier):
            await notifier.close()

    print(json.dumps(summary, indent=2, default=str))
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
