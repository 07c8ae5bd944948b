"""Scheduler using APScheduler to trigger the daily billing pass."""

import os
import time
from datetime import date, datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from prometheus_client import start_http_server

from recurbill.billing.runner import ScheduleRunner
from recurbill.db.session import session_local
from recurbill.logging_config import configure_logging, get_logger
from recurbill.notify.events import EventDispatcher
from recurbill.notify.sinks import DatabaseAuditSink, DatabaseNotificationSink, UnconfiguredSender
from recurbill.scheduler.batch import JOB_NAME, BatchScheduler

logger = get_logger(__name__)

BILLING_CRON = os.getenv("BILLING_CRON", "0 8 * * *")
BILLING_TIMEZONE = os.getenv("BILLING_TIMEZONE", "Asia/Manila")


def billing_today() -> date:
    """Today's date in the billing timezone."""
    return datetime.now(ZoneInfo(BILLING_TIMEZONE)).date()


def build_dispatcher(session_factory=None, sender=None) -> EventDispatcher:
    session_factory = session_factory or session_local
    return EventDispatcher(
        sender or UnconfiguredSender(),
        DatabaseNotificationSink(session_factory),
        DatabaseAuditSink(session_factory),
    )


def build_batch_scheduler(session_factory=None, sender=None) -> BatchScheduler:
    """Wire a BatchScheduler with the database-backed sinks.

    Args:
        session_factory (sessionmaker, optional): Factory for database sessions.
        sender (InvoiceSender, optional): Delivery channel for auto-send.
            Defaults to ``UnconfiguredSender``.

    Returns:
        BatchScheduler: Ready to run a billing pass.
    """
    session_factory = session_factory or session_local
    runner = ScheduleRunner(session_factory, clock=billing_today)
    return BatchScheduler(runner, build_dispatcher(session_factory, sender), session_factory)


def billing_job():
    """Job that generates invoices for every schedule due today.

    Errors are logged and left for the next pass; the job never raises into
    the scheduler thread.

    Returns:
        None
    """
    as_of = billing_today()
    try:
        build_batch_scheduler().run_due_schedules(as_of)
    except Exception as e:
        logger.exception(f"Billing job failed for {as_of}: {e}")


def start_scheduler():
    """Start the APScheduler to run billing_job on BILLING_CRON.

    The cron expression is evaluated in BILLING_TIMEZONE. At most one
    instance of the job runs at a time and missed runs are coalesced.

    Returns:
        None
    """
    tz = ZoneInfo(BILLING_TIMEZONE)
    scheduler = BackgroundScheduler(timezone=tz)
    scheduler.add_job(
        billing_job,
        CronTrigger.from_crontab(BILLING_CRON, timezone=tz),
        id=JOB_NAME,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Next runs: {scheduler.get_jobs()}")
    try:
        # Keep the scheduler alive
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
        logger.info("Scheduler stopped.")


if __name__ == "__main__":
    configure_logging()
    start_http_server(int(os.getenv("METRICS_PORT", "8000")))
    start_scheduler()
