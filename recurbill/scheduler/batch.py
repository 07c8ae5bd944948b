"""Batch pass over every schedule that is due.

One pass selects ACTIVE schedules whose next billing date has arrived,
runs each through the ``ScheduleRunner`` with bounded parallelism and
writes a single ``JobRun`` summary. A failure or timeout in one schedule
is recorded and the pass moves on. Running the pass twice for the same
date is safe because the runner refuses to bill a period twice.
"""

import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from recurbill.billing.runner import Failed, Generated, ScheduleRunner, Skipped
from recurbill.db.enums import JobStatus, RunStatus
from recurbill.db.repository import ScheduleRepository
from recurbill.db.session import get_db_session, session_local
from recurbill.errors import RunTimeoutError
from recurbill.logging_config import get_logger
from recurbill.metrics import billing_batch_duration_seconds, measure_duration
from recurbill.notify.events import EventDispatcher

logger = get_logger(__name__)

JOB_NAME = "daily-billing-check"


@dataclass
class JobSummary:
    as_of: date
    job_run_id: Optional[int] = None
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)


@dataclass
class _Item:
    schedule_id: int
    future: Optional[Future] = None
    started: threading.Event = field(default_factory=threading.Event)
    started_at: float = 0.0


class BatchScheduler:
    """Runs all due schedules and records a job summary.

    Args:
        runner (ScheduleRunner): Generates invoices for single schedules.
        dispatcher (EventDispatcher): Delivers post-commit events.
        session_factory (sessionmaker, optional): Factory for database sessions.
        max_workers (int, optional): Parallel schedule runs. Defaults to the
            BILLING_MAX_WORKERS env var (4).
        item_timeout (float, optional): Seconds a schedule may run before it is
            counted as timed out. Schedules still queued behind a stuck run are
            not charged for the wait.
            Defaults to the BILLING_ITEM_TIMEOUT_SECONDS env var (120).
    """

    def __init__(
        self,
        runner: ScheduleRunner,
        dispatcher: EventDispatcher,
        session_factory=None,
        max_workers: Optional[int] = None,
        item_timeout: Optional[float] = None,
    ):
        self.runner = runner
        self.dispatcher = dispatcher
        self.session_factory = session_factory or session_local
        self.max_workers = max_workers or int(os.getenv("BILLING_MAX_WORKERS", "4"))
        if item_timeout is None:
            item_timeout = float(os.getenv("BILLING_ITEM_TIMEOUT_SECONDS", "120"))
        self.item_timeout = item_timeout

    @measure_duration(billing_batch_duration_seconds)
    def run_due_schedules(self, as_of: date) -> JobSummary:
        """Run every ACTIVE schedule with ``next_billing_date <= as_of``.

        Args:
            as_of (date): Billing date of this pass.

        Returns:
            JobSummary: Counts and per-schedule error messages.
        """
        with get_db_session(self.session_factory) as db:
            repo = ScheduleRepository(db)
            job_run_id = repo.create_job_run(JOB_NAME, as_of).id
            periods = {s.id: s.next_billing_date for s in repo.list_active_due(as_of)}

        summary = JobSummary(as_of=as_of, job_run_id=job_run_id)
        logger.info(
            f"Starting billing pass for {as_of}: {len(periods)} schedules due",
            extra={"job_run_id": job_run_id},
        )

        try:
            self._process(periods, as_of, summary)
        except Exception as e:
            logger.exception(f"Billing pass failed: {e}", extra={"job_run_id": job_run_id})
            summary.errors.append({"error": str(e)})
            self._finish(summary, JobStatus.FAILED)
            raise

        self._finish(summary, JobStatus.COMPLETED)
        logger.info(
            f"Billing pass completed. Processed: {summary.processed}, Succeeded: {summary.succeeded}, "
            f"Skipped: {summary.skipped}, Failed: {summary.failed}, Errors: {len(summary.errors)}",
            extra={"job_run_id": job_run_id},
        )
        return summary

    def _process(self, periods: dict, as_of: date, summary: JobSummary) -> None:
        pending = list(periods)
        while pending:
            pending = self._process_round(pending, periods, as_of, summary)

    def _process_round(
        self, schedule_ids: List[int], periods: dict, as_of: date, summary: JobSummary
    ) -> List[int]:
        """Run schedules on a fresh pool.

        Returns:
            List[int]: Schedules that never started because a timed-out run
            kept its worker. They go to the next round's pool.
        """
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="billing")
        items = [_Item(schedule_id) for schedule_id in schedule_ids]
        requeued = []
        try:
            for item in items:
                item.future = executor.submit(self._run_item, item, as_of)

            for index, item in enumerate(items):
                if item.future.cancelled():
                    continue
                summary.processed += 1
                try:
                    result = self._wait(item)
                except FutureTimeout:
                    self._on_timeout(item, periods[item.schedule_id], summary)
                    requeued.extend(
                        later.schedule_id for later in items[index + 1:] if later.future.cancel()
                    )
                    continue
                except Exception as e:
                    logger.exception(
                        f"Error processing schedule {item.schedule_id}: {e}",
                        extra={"schedule_id": item.schedule_id},
                    )
                    summary.failed += 1
                    summary.errors.append({"scheduleId": item.schedule_id, "error": str(e)})
                    continue

                self._tally(item.schedule_id, result, summary)
                self._dispatch(item.schedule_id, result, summary)
        finally:
            # A stuck run keeps its worker thread; do not wait for it.
            executor.shutdown(wait=False, cancel_futures=True)
        return requeued

    def _run_item(self, item: _Item, as_of: date):
        item.started_at = time.monotonic()
        item.started.set()
        return self.runner.run(item.schedule_id, as_of)

    def _wait(self, item: _Item):
        # A timeout cancels every later item that has not started, so a live
        # item here is running or about to be picked up by a free worker.
        while not item.started.wait(0.05):
            if item.future.done():
                return item.future.result()
        remaining = self.item_timeout - (time.monotonic() - item.started_at)
        return item.future.result(timeout=max(remaining, 0))

    def _dispatch(self, schedule_id: int, result, summary: JobSummary) -> None:
        try:
            messages = self.dispatcher.dispatch(result.events)
        except Exception as e:
            logger.exception(
                f"Error dispatching events for schedule {schedule_id}", extra={"schedule_id": schedule_id}
            )
            messages = [str(e) or e.__class__.__name__]
        for message in messages:
            summary.errors.append({"scheduleId": schedule_id, "error": message})

    def _tally(self, schedule_id: int, result, summary: JobSummary) -> None:
        if isinstance(result, Generated):
            summary.succeeded += 1
        elif isinstance(result, Skipped):
            summary.skipped += 1
            logger.info(
                f"Skipped schedule {schedule_id}: {result.reason}", extra={"schedule_id": schedule_id}
            )
        elif isinstance(result, Failed):
            summary.failed += 1
            summary.errors.append(
                {"scheduleId": schedule_id, "runId": result.run_id, "error": result.error}
            )

    def _on_timeout(self, item: _Item, period: date, summary: JobSummary) -> None:
        error = RunTimeoutError(
            f"Schedule {item.schedule_id} run timed out after {self.item_timeout:g}s, outcome unknown"
        )
        logger.error(error.message, extra={"schedule_id": item.schedule_id})
        summary.failed += 1
        summary.errors.append({"scheduleId": item.schedule_id, "error": error.message})
        item.future.add_done_callback(lambda future: self._log_late_finish(item.schedule_id, future))
        try:
            with get_db_session(self.session_factory) as db:
                ScheduleRepository(db).record_run(item.schedule_id, period, RunStatus.FAILED, error.message)
        except Exception:
            logger.exception(
                f"Could not record timeout for schedule {item.schedule_id}",
                extra={"schedule_id": item.schedule_id},
            )

    def _log_late_finish(self, schedule_id: int, future) -> None:
        if future.cancelled():
            return
        if future.exception() is not None:
            logger.warning(
                f"Timed-out run of schedule {schedule_id} later failed: {future.exception()}",
                extra={"schedule_id": schedule_id},
            )
        elif isinstance(future.result(), Generated):
            logger.warning(
                f"Timed-out run of schedule {schedule_id} later generated {future.result().billing_no}",
                extra={"schedule_id": schedule_id, "invoice_id": future.result().invoice_id},
            )

    def _finish(self, summary: JobSummary, status: JobStatus) -> None:
        with get_db_session(self.session_factory) as db:
            ScheduleRepository(db).finish_job_run(
                summary.job_run_id,
                status,
                processed=summary.processed,
                succeeded=summary.succeeded,
                skipped=summary.skipped,
                failed=summary.failed,
                errors=summary.errors,
            )
