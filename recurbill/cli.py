#!/usr/bin/env python3
"""
Recurring billing CLI

Command-line interface for operating scheduled billings: manual billing
passes, run-now, approval workflow transitions and reports.
"""

import argparse
import sys
from datetime import date
from typing import List, Optional

from recurbill.billing.runner import Generated, ScheduleRunner
from recurbill.billing.schedules import ScheduleService
from recurbill.billing.workflow import ApprovalWorkflow
from recurbill.db.models import Base
from recurbill.db.session import engine, session_local
from recurbill.errors import BillingError
from recurbill.logging_config import get_logger
from recurbill.notify.sinks import DatabaseAuditSink, DatabaseNotificationSink
from recurbill.scheduler.scheduler import billing_today, build_batch_scheduler, build_dispatcher

logger = get_logger(__name__)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recurring billing CLI")
    parser.add_argument("--user", default="cli", help="Actor id recorded in the audit trail")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_due = subparsers.add_parser("run-due", help="Generate invoices for all due schedules")
    run_due.add_argument("--as-of", type=_parse_date, help="Billing date (default: today)")

    run_now = subparsers.add_parser("run-now", help="Run one schedule immediately")
    run_now.add_argument("schedule_id", type=int)
    run_now.add_argument("--as-of", type=_parse_date, help="Billing date (default: today)")

    for name, help_text in (
        ("approve", "Approve a pending schedule"),
        ("pause", "Pause an active schedule"),
        ("end", "End an active or paused schedule"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("schedule_id", type=int)

    reject = subparsers.add_parser("reject", help="Reject a pending schedule")
    reject.add_argument("schedule_id", type=int)
    reject.add_argument("--reason", help="Rejection reason sent to the creator")

    resume = subparsers.add_parser("resume", help="Resume a paused schedule")
    resume.add_argument("schedule_id", type=int)
    resume.add_argument("--as-of", type=_parse_date, help="Resume date (default: today)")

    history = subparsers.add_parser("history", help="Show recent runs")
    history.add_argument("--schedule-id", type=int)
    history.add_argument("--days-back", type=int, default=30)
    history.add_argument("--limit", type=int, default=100)
    history.add_argument("--csv", help="Write the history to this CSV file instead")

    stats = subparsers.add_parser("stats", help="Show schedule counts")
    stats.add_argument("--as-of", type=_parse_date, help="Reference date (default: today)")

    subparsers.add_parser("init-db", help="Create database tables")
    return parser


def _workflow() -> ApprovalWorkflow:
    return ApprovalWorkflow(
        ScheduleRunner(session_local, clock=billing_today),
        build_dispatcher(session_local),
        DatabaseNotificationSink(session_local),
        DatabaseAuditSink(session_local),
        session_local,
        clock=billing_today,
    )


def _service() -> ScheduleService:
    return ScheduleService(DatabaseAuditSink(session_local), session_local, clock=billing_today)


def run_due(args) -> int:
    summary = build_batch_scheduler().run_due_schedules(args.as_of or billing_today())
    print(f"Billing pass for {summary.as_of}:")
    print(f"  Processed: {summary.processed}")
    print(f"  Succeeded: {summary.succeeded}")
    print(f"  Skipped: {summary.skipped}")
    print(f"  Failed: {summary.failed}")
    for error in summary.errors:
        print(f"  Error: {error}")
    return 1 if summary.failed else 0


def run_now(args) -> int:
    result = _workflow().run_now(args.schedule_id, actor_id=args.user, as_of=args.as_of)
    if isinstance(result, Generated):
        status = "approved" if result.auto_approved else "pending approval"
        print(f"Generated invoice {result.billing_no} for {result.period} ({status})")
    else:
        print(f"Skipped: {result.reason}")
    return 0


def history(args) -> int:
    df = _service().run_history_frame(args.schedule_id, days_back=args.days_back, limit=args.limit)
    if args.csv:
        df.to_csv(args.csv, index=False)
        print(f"Wrote {len(df)} runs to {args.csv}")
    elif df.empty:
        print("No runs found")
    else:
        print(df.to_string(index=False))
    return 0


def stats(args) -> int:
    print("Schedule Stats:")
    for name, count in _service().get_schedule_stats(args.as_of).items():
        print(f"  {name}: {count}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI function"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        if args.command == "run-due":
            return run_due(args)
        if args.command == "run-now":
            return run_now(args)
        if args.command == "history":
            return history(args)
        if args.command == "stats":
            return stats(args)
        if args.command == "init-db":
            Base.metadata.create_all(bind=engine)
            print("Database tables created")
            return 0

        workflow = _workflow()
        if args.command == "approve":
            workflow.approve(args.schedule_id, args.user)
        elif args.command == "reject":
            workflow.reject(args.schedule_id, args.user, reason=args.reason)
        elif args.command == "pause":
            workflow.pause(args.schedule_id, actor_id=args.user)
        elif args.command == "resume":
            next_date = workflow.resume(args.schedule_id, actor_id=args.user, as_of=args.as_of)
            print(f"Next billing date: {next_date}")
        elif args.command == "end":
            workflow.end(args.schedule_id, actor_id=args.user)
        print(f"Schedule {args.schedule_id}: {args.command} done")
        return 0
    except BillingError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
