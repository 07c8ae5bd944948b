"""Single-schedule invoice generation.

``ScheduleRunner.run`` decides whether a schedule's current period is due,
guards against generating it twice, creates the invoice and advances the
schedule. Every attempt past the guards leaves exactly one run row:

1. A PENDING run is committed before any invoice work starts.
2. Invoice, SUCCESS finalization and the ``next_billing_date`` advance
   commit together, so a SUCCESS run never exists without the advance.
3. Any failure rolls that transaction back and finalizes the run FAILED,
   leaving the schedule untouched for the next pass to retry.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from recurbill.billing.assembler import InvoiceAssembler
from recurbill.billing.datemath import (
    anchor_day_of,
    describe_period,
    frequency_of,
    next_occurrence,
    period_bounds,
)
from recurbill.db.enums import InvoiceStatus, RunStatus, ScheduleStatus
from recurbill.db.repository import ScheduleRepository
from recurbill.db.session import session_local
from recurbill.errors import DuplicateRunError, NotFoundError, PersistenceError
from recurbill.logging_config import get_logger
from recurbill.metrics import (
    measure_duration,
    schedule_run_duration_seconds,
    schedule_run_outcomes_total,
)
from recurbill.notify.events import (
    ApprovalNeeded,
    AutoSendRequested,
    InvoiceGenerated,
    RunFailed,
    ScheduleEnded,
)
from recurbill.settings import SettingsProvider

logger = get_logger(__name__)

NOT_ACTIVE = "not active"
PAST_END_DATE = "past end date"
NOT_DUE = "not yet due"
ALREADY_GENERATED = "already generated for this period"


@dataclass(frozen=True)
class Generated:
    invoice_id: int
    auto_approved: bool
    billing_no: str
    run_id: int
    period: date
    events: Tuple = ()


@dataclass(frozen=True)
class Skipped:
    reason: str
    events: Tuple = ()


@dataclass(frozen=True)
class Failed:
    error: str
    run_id: Optional[int] = None
    exception: Optional[BaseException] = field(default=None, compare=False, repr=False)
    events: Tuple = ()


class _NoLongerActive(Exception):
    """The schedule left ACTIVE between the PENDING run commit and the write."""


class ScheduleRunner:
    """Generates the invoice for one schedule's current period.

    Args:
        session_factory (sessionmaker, optional): Factory for database sessions.
        assembler (InvoiceAssembler, optional): Builds invoice drafts.
        settings (SettingsProvider, optional): Business settings source.
        clock (Callable[[], date], optional): Source of today's date when
            ``run`` is called without ``as_of``.
    """

    def __init__(
        self,
        session_factory=None,
        assembler: Optional[InvoiceAssembler] = None,
        settings: Optional[SettingsProvider] = None,
        clock: Callable[[], date] = date.today,
    ):
        self.session_factory = session_factory or session_local
        self.settings = settings or SettingsProvider(self.session_factory)
        self.assembler = assembler or InvoiceAssembler(self.settings)
        self.clock = clock

    @measure_duration(schedule_run_duration_seconds)
    def run(self, schedule_id: int, as_of: Optional[date] = None):
        """Generate the invoice for the schedule's current period if it is due.

        Args:
            schedule_id (int): Schedule to run.
            as_of (date, optional): Date the period must have been reached by.
                Defaults to the runner's clock.

        Returns:
            Generated | Skipped | Failed: Outcome of the attempt, with the
            post-commit events for the dispatcher.

        Raises:
            ScheduleNotFoundError: If the schedule does not exist.
            PersistenceError: If the schedule cannot be read or the PENDING
                run cannot be written.
        """
        as_of = as_of or self.clock()
        db = self.session_factory()
        try:
            result = self._run(db, schedule_id, as_of)
        finally:
            db.close()
        schedule_run_outcomes_total.labels(type(result).__name__.lower()).inc()
        return result

    def _run(self, db, schedule_id: int, as_of: date):
        repo = ScheduleRepository(db)
        ctx = {"schedule_id": schedule_id}

        try:
            schedule = repo.get_schedule(schedule_id, for_update=True)
            if schedule.status != ScheduleStatus.ACTIVE:
                db.rollback()
                return Skipped(NOT_ACTIVE)

            period = schedule.next_billing_date
            if schedule.end_date is not None and period > schedule.end_date:
                schedule.status = ScheduleStatus.ENDED
                repo.save_schedule(schedule)
                db.commit()
                logger.info(f"Schedule {schedule_id} ended: next billing date {period} is past end date", extra=ctx)
                return Skipped(PAST_END_DATE, events=(ScheduleEnded(schedule_id, PAST_END_DATE),))

            if period > as_of:
                db.rollback()
                return Skipped(NOT_DUE)

            if repo.find_success_run(schedule_id, period) is not None:
                db.rollback()
                logger.info(f"Skipping schedule {schedule_id}: invoice already exists for {period}", extra=ctx)
                return Skipped(ALREADY_GENERATED)

            run_id = repo.create_run(schedule_id, period).id
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Could not start run for schedule {schedule_id}: {e}") from e

        ctx["run_id"] = run_id
        try:
            result = self._generate(db, repo, schedule_id, period, run_id)
            db.commit()
            return result
        except _NoLongerActive:
            db.rollback()
            self._finalize(db, repo, run_id, RunStatus.SKIPPED, error=NOT_ACTIVE)
            return Skipped(NOT_ACTIVE)
        except DuplicateRunError as e:
            db.rollback()
            logger.warning(f"Duplicate run for schedule {schedule_id}: {e}", extra=ctx)
            self._finalize(db, repo, run_id, RunStatus.SKIPPED, error=ALREADY_GENERATED)
            return Skipped(ALREADY_GENERATED)
        except (IntegrityError, StaleDataError) as e:
            db.rollback()
            if repo.find_success_run(schedule_id, period, exclude_run_id=run_id) is not None:
                logger.warning(f"Lost generation race for schedule {schedule_id} period {period}", extra=ctx)
                self._finalize(db, repo, run_id, RunStatus.SKIPPED, error=ALREADY_GENERATED)
                return Skipped(ALREADY_GENERATED)
            return self._fail(db, repo, schedule_id, run_id, PersistenceError(str(e)), ctx)
        except Exception as e:
            db.rollback()
            return self._fail(db, repo, schedule_id, run_id, e, ctx)

    def _generate(self, db, repo: ScheduleRepository, schedule_id: int, period: date, run_id: int):
        # Re-check under the row lock immediately before writing.
        schedule = repo.get_schedule(schedule_id, for_update=True)
        if schedule.status != ScheduleStatus.ACTIVE:
            raise _NoLongerActive()
        if schedule.next_billing_date != period:
            raise DuplicateRunError(
                f"Next billing date moved from {period} to {schedule.next_billing_date}"
            )
        if repo.find_success_run(schedule_id, period, exclude_run_id=run_id) is not None:
            raise DuplicateRunError(f"SUCCESS run already exists for {period}")

        frequency = frequency_of(schedule)
        period_start, period_end = period_bounds(frequency, period)
        label = describe_period(frequency, period_start, period_end)
        description = f"{schedule.description or self.settings.default_description()} - {label}"

        draft = self.assembler.assemble(
            schedule,
            description,
            period_start=period_start,
            period_end=period_end,
            statement_date=period,
        )
        status = InvoiceStatus.APPROVED if schedule.auto_approve else InvoiceStatus.PENDING
        invoice = repo.create_invoice(draft, status)
        repo.finalize_run(run_id, RunStatus.SUCCESS, invoice_id=invoice.id)

        schedule.next_billing_date = next_occurrence(frequency, anchor_day_of(schedule), period)
        repo.save_schedule(schedule)

        logger.info(
            f"Created invoice {invoice.billing_no} for period {period}, next billing date {schedule.next_billing_date}",
            extra={"schedule_id": schedule_id, "run_id": run_id, "invoice_id": invoice.id},
        )

        events = [
            InvoiceGenerated(
                schedule_id=schedule_id,
                invoice_id=invoice.id,
                billing_no=invoice.billing_no,
                customer_name=invoice.customer_name,
                net_amount=str(invoice.net_amount),
                auto_approved=bool(schedule.auto_approve),
            )
        ]
        if not schedule.auto_approve:
            events.append(
                ApprovalNeeded(schedule_id, invoice.id, invoice.billing_no, invoice.customer_name)
            )
        elif schedule.auto_send_enabled:
            events.append(AutoSendRequested(schedule_id, invoice.id, invoice.billing_no))

        return Generated(
            invoice_id=invoice.id,
            auto_approved=bool(schedule.auto_approve),
            billing_no=invoice.billing_no,
            run_id=run_id,
            period=period,
            events=tuple(events),
        )

    def _finalize(self, db, repo: ScheduleRepository, run_id: int, status: RunStatus, error=None) -> None:
        try:
            repo.finalize_run(run_id, status, error=error)
            db.commit()
        except (SQLAlchemyError, NotFoundError):
            db.rollback()
            logger.exception(f"Could not finalize run {run_id} as {status.value}", extra={"run_id": run_id})

    def _fail(self, db, repo: ScheduleRepository, schedule_id: int, run_id: int, error: BaseException, ctx):
        message = str(error) or error.__class__.__name__
        logger.error(f"Run failed for schedule {schedule_id}: {message}", extra=ctx, exc_info=error)
        self._finalize(db, repo, run_id, RunStatus.FAILED, error=message)
        return Failed(
            error=message,
            run_id=run_id,
            exception=error,
            events=(RunFailed(schedule_id, run_id, message),),
        )
