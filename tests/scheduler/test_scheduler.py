"""Unit tests for the APScheduler wiring."""

import unittest
from datetime import date
from unittest.mock import MagicMock, patch

from apscheduler.triggers.cron import CronTrigger

from recurbill.scheduler import scheduler
from recurbill.scheduler.batch import JOB_NAME, BatchScheduler


class TestScheduler(unittest.TestCase):
    """Test cases for the billing job and scheduler startup."""

    @patch("recurbill.scheduler.scheduler.billing_today", return_value=date(2026, 1, 1))
    @patch("recurbill.scheduler.scheduler.build_batch_scheduler")
    def test_billing_job_runs_due_schedules_for_today(self, mock_build, _mock_today):
        scheduler.billing_job()
        mock_build.return_value.run_due_schedules.assert_called_once_with(date(2026, 1, 1))

    @patch("recurbill.scheduler.scheduler.build_batch_scheduler")
    def test_billing_job_does_not_raise(self, mock_build):
        mock_build.return_value.run_due_schedules.side_effect = RuntimeError("db down")
        scheduler.billing_job()

    def test_build_batch_scheduler_wires_collaborators(self):
        session_factory = MagicMock()
        batch = scheduler.build_batch_scheduler(session_factory)
        self.assertIsInstance(batch, BatchScheduler)
        self.assertIs(batch.session_factory, session_factory)
        self.assertIs(batch.runner.session_factory, session_factory)

    @patch("recurbill.scheduler.scheduler.time.sleep", side_effect=KeyboardInterrupt)
    @patch("recurbill.scheduler.scheduler.BackgroundScheduler")
    def test_start_scheduler_registers_single_cron_job(self, mock_scheduler_cls, _mock_sleep):
        scheduler.start_scheduler()

        instance = mock_scheduler_cls.return_value
        args, kwargs = instance.add_job.call_args
        self.assertIs(args[0], scheduler.billing_job)
        self.assertIsInstance(args[1], CronTrigger)
        self.assertEqual(kwargs["id"], JOB_NAME)
        self.assertEqual(kwargs["max_instances"], 1)
        self.assertTrue(kwargs["coalesce"])
        instance.start.assert_called_once()
        instance.shutdown.assert_called_once()


if __name__ == "__main__":
    unittest.main()
