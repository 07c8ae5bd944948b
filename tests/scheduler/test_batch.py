"""Unit tests for the batch billing pass."""

import time
import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

from conftest import BaseTestCase, TestSessionLocal
from recurbill.billing.runner import Generated, ScheduleRunner, Skipped
from recurbill.db.enums import JobStatus, RunStatus, ScheduleStatus
from recurbill.db.models import Invoice, JobRun, ScheduledBilling, ScheduledBillingRun
from recurbill.notify.events import EventDispatcher
from recurbill.scheduler.batch import JOB_NAME, BatchScheduler


class SlowRunner:
    """Runner stand-in that blocks on one schedule."""

    def __init__(self, slow_id, delay):
        self.slow_id = slow_id
        self.delay = delay
        self.calls = []

    def run(self, schedule_id, as_of=None):
        self.calls.append(schedule_id)
        if schedule_id == self.slow_id:
            time.sleep(self.delay)
        return Skipped("not yet due")


class TestBatchScheduler(BaseTestCase):
    """Test cases for BatchScheduler.run_due_schedules."""

    def setUp(self):
        super().setUp()
        self.entity = self.make_entity()
        self.contract = self.make_contract()
        self.dispatcher = MagicMock()
        self.dispatcher.dispatch.return_value = []
        self.runner = ScheduleRunner(TestSessionLocal, settings=self.settings)

    def make_batch(self, runner=None, **kwargs):
        kwargs.setdefault("max_workers", 1)
        kwargs.setdefault("item_timeout", 30)
        return BatchScheduler(runner or self.runner, self.dispatcher, TestSessionLocal, **kwargs)

    def test_one_failure_does_not_stop_the_batch(self):
        first = self.make_schedule(self.entity, self.contract)
        broken = self.make_schedule(
            self.entity, self.contract, has_withholding=True, withholding_rate=Decimal("1.5")
        )
        third = self.make_schedule(self.entity, self.contract)

        summary = self.make_batch().run_due_schedules(date(2026, 1, 1))

        self.assertEqual(summary.processed, 3)
        self.assertEqual(summary.succeeded, 2)
        self.assertEqual(summary.skipped, 0)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(len(summary.errors), 1)
        self.assertEqual(summary.errors[0]["scheduleId"], broken.id)

        self.assertEqual(self.reload(ScheduledBilling, first.id).next_billing_date, date(2026, 2, 1))
        self.assertEqual(self.reload(ScheduledBilling, broken.id).next_billing_date, date(2026, 1, 1))
        self.assertEqual(self.reload(ScheduledBilling, third.id).next_billing_date, date(2026, 2, 1))
        self.assertEqual(self.db.query(Invoice).count(), 2)

        job = self.reload(JobRun, summary.job_run_id)
        self.assertEqual(job.job_name, JOB_NAME)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual((job.processed, job.succeeded, job.failed), (3, 2, 1))
        self.assertIsNotNone(job.completed_at)

    def test_rerun_same_day_bills_nothing_new(self):
        self.make_schedule(self.entity, self.contract)
        self.make_schedule(self.entity, self.contract)
        batch = self.make_batch()

        batch.run_due_schedules(date(2026, 1, 1))
        summary = batch.run_due_schedules(date(2026, 1, 1))

        self.assertEqual(summary.processed, 0)
        self.assertEqual(self.db.query(Invoice).count(), 2)

    def test_only_active_due_schedules_are_selected(self):
        self.make_schedule(self.entity, self.contract)
        self.make_schedule(self.entity, self.contract, status=ScheduleStatus.PAUSED)
        self.make_schedule(self.entity, self.contract, status=ScheduleStatus.PENDING)
        self.make_schedule(self.entity, self.contract, next_billing_date=date(2026, 1, 2))

        summary = self.make_batch().run_due_schedules(date(2026, 1, 1))

        self.assertEqual((summary.processed, summary.succeeded), (1, 1))

    def test_events_are_dispatched_and_send_errors_reported(self):
        schedule = self.make_schedule(self.entity, self.contract, auto_approve=True, auto_send_enabled=True)
        self.dispatcher.dispatch.return_value = ["Auto-send failed for invoice YOWI-0000000001: smtp down"]

        summary = self.make_batch().run_due_schedules(date(2026, 1, 1))

        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(summary.failed, 0)
        self.assertEqual(
            summary.errors,
            [{"scheduleId": schedule.id, "error": "Auto-send failed for invoice YOWI-0000000001: smtp down"}],
        )
        events = self.dispatcher.dispatch.call_args[0][0]
        self.assertEqual(len(events), 2)

    def test_timeout_is_recorded_and_batch_continues(self):
        slow = self.make_schedule(self.entity, self.contract)
        other = self.make_schedule(self.entity, self.contract)
        runner = SlowRunner(slow.id, delay=1.0)

        summary = self.make_batch(runner, max_workers=2, item_timeout=0.1).run_due_schedules(date(2026, 1, 1))

        self.assertEqual(summary.processed, 2)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.skipped, 1)
        self.assertIn("timed out", summary.errors[0]["error"])
        self.db.expire_all()
        runs = self.db.query(ScheduledBillingRun).filter(ScheduledBillingRun.scheduled_billing_id == slow.id).all()
        self.assertEqual([r.status for r in runs], [RunStatus.FAILED])
        self.assertEqual(runs[0].run_date, date(2026, 1, 1))
        self.assertIn("outcome unknown", runs[0].error_message)
        self.assertEqual(
            self.db.query(ScheduledBillingRun).filter(ScheduledBillingRun.scheduled_billing_id == other.id).count(),
            0,
        )

    def test_queued_schedules_are_not_charged_for_a_stuck_run(self):
        slow = self.make_schedule(self.entity, self.contract)
        second = self.make_schedule(self.entity, self.contract)
        third = self.make_schedule(self.entity, self.contract)
        runner = SlowRunner(slow.id, delay=1.0)

        summary = self.make_batch(runner, max_workers=1, item_timeout=0.3).run_due_schedules(date(2026, 1, 1))

        self.assertEqual(sorted(runner.calls), sorted([slow.id, second.id, third.id]))
        self.assertEqual((summary.processed, summary.failed, summary.skipped), (3, 1, 2))
        self.assertEqual([e["scheduleId"] for e in summary.errors], [slow.id])
        self.db.expire_all()
        runs = self.db.query(ScheduledBillingRun).all()
        self.assertEqual([r.scheduled_billing_id for r in runs], [slow.id])

    def test_raising_notification_sink_does_not_stop_the_batch(self):
        schedules = [self.make_schedule(self.entity, self.contract) for _ in range(3)]
        notifications = MagicMock()
        notifications.notify.side_effect = ConnectionError("notification service down")
        self.dispatcher = EventDispatcher(MagicMock(), notifications, MagicMock())

        summary = self.make_batch().run_due_schedules(date(2026, 1, 1))

        self.assertEqual((summary.processed, summary.succeeded, summary.failed), (3, 3, 0))
        self.assertEqual(len(summary.errors), 3)
        for error in summary.errors:
            self.assertIn("notification service down", error["error"])
        for schedule in schedules:
            self.assertEqual(self.reload(ScheduledBilling, schedule.id).next_billing_date, date(2026, 2, 1))
        self.assertEqual(self.reload(JobRun, summary.job_run_id).status, JobStatus.COMPLETED)

    def test_raising_dispatcher_is_reported(self):
        schedule = self.make_schedule(self.entity, self.contract)
        self.dispatcher.dispatch.side_effect = RuntimeError("dispatcher broken")

        summary = self.make_batch().run_due_schedules(date(2026, 1, 1))

        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(summary.errors, [{"scheduleId": schedule.id, "error": "dispatcher broken"}])

    def test_runner_exception_is_counted_as_failure(self):
        schedule = self.make_schedule(self.entity, self.contract)
        runner = MagicMock()
        runner.run.side_effect = RuntimeError("database unavailable")

        summary = self.make_batch(runner).run_due_schedules(date(2026, 1, 1))

        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.errors, [{"scheduleId": schedule.id, "error": "database unavailable"}])

    def test_generated_results_are_counted(self):
        self.make_schedule(self.entity, self.contract)
        runner = MagicMock()
        runner.run.return_value = Generated(1, False, "YOWI-0000000001", 1, date(2026, 1, 1))

        summary = self.make_batch(runner).run_due_schedules(date(2026, 1, 1))

        self.assertEqual(summary.succeeded, 1)
        self.dispatcher.dispatch.assert_called_once_with(())


if __name__ == "__main__":
    unittest.main()
