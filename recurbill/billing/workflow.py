"""Administrative state transitions of scheduled billings.

PENDING -> ACTIVE (approve) or ENDED (reject); ACTIVE <-> PAUSED;
ACTIVE/PAUSED -> ENDED. ENDED is terminal. A transition requested from
any other state is rejected with an ``InvalidStateError`` whose message
names the exact violation.
"""

from datetime import date, datetime, timezone
from typing import Callable, Dict, Optional

from recurbill.billing.datemath import anchor_day_of, frequency_of, roll_forward
from recurbill.billing.runner import Failed, ScheduleRunner
from recurbill.db.enums import ScheduleStatus
from recurbill.db.repository import ScheduleRepository
from recurbill.db.session import get_db_session, session_local
from recurbill.errors import BillingError, InvalidStateError, PersistenceError, ValidationError
from recurbill.logging_config import get_logger
from recurbill.notify.events import EventDispatcher
from recurbill.notify.sinks import AuditAction, AuditSink, NotificationKind, NotificationSink

logger = get_logger(__name__)

ACTIVE = ScheduleStatus.ACTIVE
PAUSED = ScheduleStatus.PAUSED
PENDING = ScheduleStatus.PENDING
ENDED = ScheduleStatus.ENDED

# Allowed source state per action, and the message for every other state.
TRANSITIONS: Dict[str, tuple] = {
    "approve": (
        {PENDING},
        {
            ACTIVE: "already approved",
            PAUSED: "cannot approve a paused schedule",
            ENDED: "cannot approve an ended schedule",
        },
    ),
    "reject": (
        {PENDING},
        {
            ACTIVE: "cannot reject an approved schedule",
            PAUSED: "cannot reject a paused schedule",
            ENDED: "cannot reject an ended schedule",
        },
    ),
    "pause": (
        {ACTIVE},
        {
            PAUSED: "already paused",
            ENDED: "cannot pause an ended schedule",
            PENDING: "cannot pause a pending schedule",
        },
    ),
    "resume": (
        {PAUSED},
        {
            ACTIVE: "already active",
            ENDED: "cannot resume an ended schedule",
            PENDING: "cannot resume a pending schedule",
        },
    ),
    "end": (
        {ACTIVE, PAUSED},
        {
            ENDED: "already ended",
            PENDING: "cannot end a pending schedule, reject it instead",
        },
    ),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def check_transition(action: str, status: ScheduleStatus) -> None:
    """Raise InvalidStateError unless ``action`` is allowed from ``status``."""
    allowed, messages = TRANSITIONS[action]
    status = ScheduleStatus(status)
    if status not in allowed:
        raise InvalidStateError(messages[status])


def _customer_name(schedule) -> str:
    if schedule.contract is not None:
        return schedule.contract.company_name
    return schedule.billing_entity.name


class ApprovalWorkflow:
    """Approve, reject, pause, resume, end and run schedules on demand.

    Args:
        runner (ScheduleRunner): Runner used by ``run_now``.
        dispatcher (EventDispatcher): Delivers the runner's post-commit events.
        notifications (NotificationSink): Receives approval/rejection notices.
        audit (AuditSink): Receives one record per transition.
        session_factory (sessionmaker, optional): Factory for database sessions.
        clock (Callable[[], date], optional): Source of today's date.
    """

    def __init__(
        self,
        runner: ScheduleRunner,
        dispatcher: EventDispatcher,
        notifications: NotificationSink,
        audit: AuditSink,
        session_factory=None,
        clock: Callable[[], date] = date.today,
    ):
        self.runner = runner
        self.dispatcher = dispatcher
        self.notifications = notifications
        self.audit = audit
        self.session_factory = session_factory or session_local
        self.clock = clock

    def approve(self, schedule_id: int, approver_id: str) -> None:
        with get_db_session(self.session_factory) as db:
            schedule = ScheduleRepository(db).get_schedule(schedule_id, for_update=True)
            check_transition("approve", schedule.status)
            schedule.status = ACTIVE
            schedule.approved_by_id = approver_id
            schedule.approved_at = _utcnow()
            creator_id = schedule.created_by_id
            customer = _customer_name(schedule)

        logger.info(f"Schedule {schedule_id} approved by {approver_id}", extra={"schedule_id": schedule_id})
        self.audit.record(
            AuditAction.SCHEDULE_APPROVED, "ScheduledBilling", schedule_id,
            {"companyName": customer}, user_id=approver_id,
        )
        if creator_id:
            self.notifications.notify(
                creator_id,
                NotificationKind.SCHEDULE_APPROVED,
                {
                    "title": "Schedule Approved",
                    "message": f"Your scheduled billing for {customer} has been approved",
                    "entity_type": "ScheduledBilling",
                    "entity_id": schedule_id,
                },
            )

    def reject(self, schedule_id: int, approver_id: str, reason: Optional[str] = None) -> None:
        with get_db_session(self.session_factory) as db:
            schedule = ScheduleRepository(db).get_schedule(schedule_id, for_update=True)
            check_transition("reject", schedule.status)
            schedule.status = ENDED
            schedule.rejected_by_id = approver_id
            schedule.rejected_at = _utcnow()
            schedule.rejection_reason = reason
            creator_id = schedule.created_by_id
            customer = _customer_name(schedule)

        logger.info(f"Schedule {schedule_id} rejected by {approver_id}", extra={"schedule_id": schedule_id})
        self.audit.record(
            AuditAction.SCHEDULE_REJECTED, "ScheduledBilling", schedule_id,
            {"companyName": customer, "reason": reason}, user_id=approver_id,
        )
        if creator_id:
            message = f"Your scheduled billing for {customer} has been rejected"
            if reason:
                message = f"{message}: {reason}"
            self.notifications.notify(
                creator_id,
                NotificationKind.SCHEDULE_REJECTED,
                {
                    "title": "Schedule Rejected",
                    "message": message,
                    "entity_type": "ScheduledBilling",
                    "entity_id": schedule_id,
                },
            )

    def pause(self, schedule_id: int, actor_id: Optional[str] = None) -> None:
        with get_db_session(self.session_factory) as db:
            schedule = ScheduleRepository(db).get_schedule(schedule_id, for_update=True)
            check_transition("pause", schedule.status)
            schedule.status = PAUSED
        self.audit.record(AuditAction.SCHEDULE_PAUSED, "ScheduledBilling", schedule_id, user_id=actor_id)

    def resume(self, schedule_id: int, actor_id: Optional[str] = None, as_of: Optional[date] = None) -> date:
        """Reactivate a paused schedule.

        Periods that fell due while the schedule was paused are not billed:
        the next billing date rolls forward to the first occurrence on or
        after ``as_of``.

        Returns:
            date: The schedule's next billing date after resuming.
        """
        as_of = as_of or self.clock()
        with get_db_session(self.session_factory) as db:
            schedule = ScheduleRepository(db).get_schedule(schedule_id, for_update=True)
            check_transition("resume", schedule.status)
            previous = schedule.next_billing_date
            schedule.next_billing_date = roll_forward(
                frequency_of(schedule), anchor_day_of(schedule), previous, as_of
            )
            schedule.status = ACTIVE
            next_date = schedule.next_billing_date

        self.audit.record(
            AuditAction.SCHEDULE_RESUMED, "ScheduledBilling", schedule_id,
            {"previousNextBillingDate": previous.isoformat(), "nextBillingDate": next_date.isoformat()},
            user_id=actor_id,
        )
        return next_date

    def end(self, schedule_id: int, actor_id: Optional[str] = None, as_of: Optional[date] = None) -> None:
        as_of = as_of or self.clock()
        with get_db_session(self.session_factory) as db:
            schedule = ScheduleRepository(db).get_schedule(schedule_id, for_update=True)
            check_transition("end", schedule.status)
            schedule.status = ENDED
            if schedule.end_date is None or schedule.end_date > as_of:
                schedule.end_date = as_of
        self.audit.record(AuditAction.SCHEDULE_ENDED, "ScheduledBilling", schedule_id, user_id=actor_id)

    def correct_next_billing_date(self, schedule_id: int, new_date: date, actor_id: Optional[str] = None) -> None:
        """Administrative correction of ``next_billing_date``, backwards included.

        Raises:
            ValidationError: If ``new_date`` is before the schedule's start date.
            InvalidStateError: If the schedule has ended or an invoice was
                already generated for ``new_date``.
        """
        with get_db_session(self.session_factory) as db:
            repo = ScheduleRepository(db)
            schedule = repo.get_schedule(schedule_id, for_update=True)
            if schedule.status == ENDED:
                raise InvalidStateError("cannot change the billing date of an ended schedule")
            if new_date < schedule.start_date:
                raise ValidationError(
                    f"Next billing date {new_date} is before the start date {schedule.start_date}"
                )
            if repo.find_success_run(schedule_id, new_date) is not None:
                raise InvalidStateError(f"an invoice was already generated for {new_date}")
            previous = schedule.next_billing_date
            schedule.next_billing_date = new_date

        logger.info(
            f"Schedule {schedule_id} next billing date corrected from {previous} to {new_date}",
            extra={"schedule_id": schedule_id},
        )
        self.audit.record(
            AuditAction.SCHEDULE_DATE_CORRECTED, "ScheduledBilling", schedule_id,
            {"from": previous.isoformat(), "to": new_date.isoformat()}, user_id=actor_id,
        )

    def run_now(self, schedule_id: int, actor_id: Optional[str] = None, as_of: Optional[date] = None):
        """Run a schedule immediately instead of waiting for the batch timer.

        The runner's guards still apply: an ended schedule is refused and a
        period that already has an invoice is skipped.

        Returns:
            Generated | Skipped: The runner's result.

        Raises:
            InvalidStateError: If the schedule is pending or ended.
            BillingError: The failure of the run (a FAILED run row is kept).
        """
        with get_db_session(self.session_factory) as db:
            schedule = ScheduleRepository(db).get_schedule(schedule_id)
            if schedule.status == ENDED:
                raise InvalidStateError("cannot run an ended schedule")
            if schedule.status == PENDING:
                raise InvalidStateError("cannot run a pending schedule before it is approved")

        result = self.runner.run(schedule_id, as_of or self.clock())
        send_errors = self.dispatcher.dispatch(result.events)

        details = {"outcome": type(result).__name__.upper()}
        if send_errors:
            details["sendErrors"] = send_errors
        if isinstance(result, Failed):
            details["error"] = result.error
        self.audit.record(AuditAction.SCHEDULE_MANUAL_RUN, "ScheduledBilling", schedule_id, details, user_id=actor_id)

        if isinstance(result, Failed):
            if isinstance(result.exception, BillingError):
                raise result.exception
            raise PersistenceError(result.error) from result.exception
        return result
