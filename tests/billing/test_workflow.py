"""Unit tests for the schedule approval workflow."""

import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

from conftest import BaseTestCase, TestSessionLocal
from recurbill.billing.runner import ALREADY_GENERATED, NOT_DUE, Generated, ScheduleRunner, Skipped
from recurbill.billing.workflow import ApprovalWorkflow
from recurbill.db.enums import RunStatus, ScheduleStatus
from recurbill.db.models import Invoice, ScheduledBilling, ScheduledBillingRun
from recurbill.db.repository import ScheduleRepository
from recurbill.errors import InvalidStateError, ScheduleNotFoundError, ValidationError
from recurbill.notify.sinks import AuditAction, NotificationKind

PENDING = ScheduleStatus.PENDING
ACTIVE = ScheduleStatus.ACTIVE
PAUSED = ScheduleStatus.PAUSED
ENDED = ScheduleStatus.ENDED


class TestApprovalWorkflow(BaseTestCase):
    """Test cases for ApprovalWorkflow transitions."""

    def setUp(self):
        super().setUp()
        self.entity = self.make_entity()
        self.contract = self.make_contract()
        self.dispatcher = MagicMock()
        self.dispatcher.dispatch.return_value = []
        self.notifications = MagicMock()
        self.audit = MagicMock()
        self.workflow = ApprovalWorkflow(
            ScheduleRunner(TestSessionLocal, settings=self.settings),
            self.dispatcher,
            self.notifications,
            self.audit,
            TestSessionLocal,
            clock=lambda: date(2026, 1, 1),
        )

    def status_of(self, schedule_id):
        return self.reload(ScheduledBilling, schedule_id).status

    def test_approve_activates_and_notifies_creator(self):
        schedule = self.make_schedule(self.entity, self.contract, status=PENDING)

        self.workflow.approve(schedule.id, "approver-1")

        reloaded = self.reload(ScheduledBilling, schedule.id)
        self.assertEqual(reloaded.status, ACTIVE)
        self.assertEqual(reloaded.approved_by_id, "approver-1")
        self.assertIsNotNone(reloaded.approved_at)
        user_id, kind, payload = self.notifications.notify.call_args[0]
        self.assertEqual((user_id, kind), ("creator-1", NotificationKind.SCHEDULE_APPROVED))
        self.assertIn("Acme Trading Corp.", payload["message"])
        self.assertEqual(self.audit.record.call_args[0][0], AuditAction.SCHEDULE_APPROVED)

    def test_reject_ends_and_records_reason(self):
        schedule = self.make_schedule(self.entity, self.contract, status=PENDING)

        self.workflow.reject(schedule.id, "approver-1", reason="Wrong amount")

        reloaded = self.reload(ScheduledBilling, schedule.id)
        self.assertEqual(reloaded.status, ENDED)
        self.assertEqual(reloaded.rejection_reason, "Wrong amount")
        self.assertEqual(reloaded.rejected_by_id, "approver-1")
        _, kind, payload = self.notifications.notify.call_args[0]
        self.assertEqual(kind, NotificationKind.SCHEDULE_REJECTED)
        self.assertTrue(payload["message"].endswith(": Wrong amount"))

    def test_invalid_transitions_name_the_violation(self):
        cases = [
            ("approve", ACTIVE, "already approved"),
            ("approve", ENDED, "cannot approve an ended schedule"),
            ("reject", ACTIVE, "cannot reject an approved schedule"),
            ("pause", PAUSED, "already paused"),
            ("pause", ENDED, "cannot pause an ended schedule"),
            ("pause", PENDING, "cannot pause a pending schedule"),
            ("resume", ACTIVE, "already active"),
            ("resume", ENDED, "cannot resume an ended schedule"),
            ("resume", PENDING, "cannot resume a pending schedule"),
            ("end", ENDED, "already ended"),
        ]
        for action, status, message in cases:
            schedule = self.make_schedule(self.entity, self.contract, status=status)
            method = getattr(self.workflow, action)
            args = (schedule.id, "user-1")
            with self.assertRaises(InvalidStateError) as ctx:
                method(*args)
            self.assertEqual(ctx.exception.message, message, f"{action} from {status.value}")
            self.assertEqual(ctx.exception.http_status, 409)
            self.assertEqual(self.status_of(schedule.id), status)
        self.audit.record.assert_not_called()

    def test_pause_and_resume_roll_forward_missed_periods(self):
        schedule = self.make_schedule(self.entity, self.contract)

        self.workflow.pause(schedule.id, "user-1")
        self.assertEqual(self.status_of(schedule.id), PAUSED)

        next_date = self.workflow.resume(schedule.id, "user-1", as_of=date(2026, 4, 10))

        self.assertEqual(next_date, date(2026, 5, 1))
        reloaded = self.reload(ScheduledBilling, schedule.id)
        self.assertEqual(reloaded.status, ACTIVE)
        self.assertEqual(reloaded.next_billing_date, date(2026, 5, 1))
        actions = [c[0][0] for c in self.audit.record.call_args_list]
        self.assertEqual(actions, [AuditAction.SCHEDULE_PAUSED, AuditAction.SCHEDULE_RESUMED])

    def test_end_from_paused(self):
        schedule = self.make_schedule(self.entity, self.contract, status=PAUSED)
        self.workflow.end(schedule.id, "user-1")
        reloaded = self.reload(ScheduledBilling, schedule.id)
        self.assertEqual(reloaded.status, ENDED)
        self.assertEqual(reloaded.end_date, date(2026, 1, 1))

    def test_unknown_schedule(self):
        with self.assertRaises(ScheduleNotFoundError):
            self.workflow.approve(999, "approver-1")

    def test_run_now_generates_then_skips(self):
        schedule = self.make_schedule(self.entity, self.contract)

        result = self.workflow.run_now(schedule.id, "user-1")
        self.assertIsInstance(result, Generated)
        self.dispatcher.dispatch.assert_called_once_with(result.events)

        again = self.workflow.run_now(schedule.id, "user-1")
        self.assertEqual(again, Skipped(NOT_DUE))
        self.assertEqual(self.db.query(Invoice).count(), 1)
        details = self.audit.record.call_args[0][3]
        self.assertEqual(details["outcome"], "SKIPPED")

    def test_run_now_on_ended_schedule_is_refused(self):
        schedule = self.make_schedule(self.entity, self.contract, status=ENDED)
        with self.assertRaises(InvalidStateError) as ctx:
            self.workflow.run_now(schedule.id, "user-1")
        self.assertEqual(ctx.exception.message, "cannot run an ended schedule")

    def test_run_now_failure_is_raised_after_failed_run_is_written(self):
        schedule = self.make_schedule(
            self.entity, self.contract, has_withholding=True, withholding_rate=Decimal("1.5")
        )

        with self.assertRaises(ValidationError):
            self.workflow.run_now(schedule.id, "user-1")

        self.db.expire_all()
        runs = self.db.query(ScheduledBillingRun).filter_by(scheduled_billing_id=schedule.id).all()
        self.assertEqual([r.status for r in runs], [RunStatus.FAILED])
        self.assertEqual(self.status_of(schedule.id), ACTIVE)

    def test_correct_next_billing_date(self):
        schedule = self.make_schedule(self.entity, self.contract)
        self.workflow.run_now(schedule.id, "user-1")

        with self.assertRaises(InvalidStateError):
            self.workflow.correct_next_billing_date(schedule.id, date(2026, 1, 1), "admin-1")
        with self.assertRaises(ValidationError):
            self.workflow.correct_next_billing_date(schedule.id, date(2025, 12, 1), "admin-1")

        self.workflow.correct_next_billing_date(schedule.id, date(2026, 1, 15), "admin-1")
        self.assertEqual(self.reload(ScheduledBilling, schedule.id).next_billing_date, date(2026, 1, 15))
        self.assertEqual(self.audit.record.call_args[0][0], AuditAction.SCHEDULE_DATE_CORRECTED)

    def test_corrected_date_with_success_run_cannot_double_bill(self):
        schedule = self.make_schedule(self.entity, self.contract)
        repo = ScheduleRepository(self.db)
        run = repo.create_run(schedule.id, date(2026, 1, 1))
        repo.finalize_run(run.id, RunStatus.SUCCESS)
        self.db.commit()

        self.assertEqual(
            self.workflow.run_now(schedule.id, "user-1"), Skipped(ALREADY_GENERATED)
        )


if __name__ == "__main__":
    unittest.main()
