"""Schedule management: create, update, delete, list, run history and stats."""

from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from recurbill.billing.assembler import to_money
from recurbill.billing.datemath import anchor_day_of, first_occurrence, frequency_of
from recurbill.db.enums import BillingFrequency, IntervalUnit, ScheduleStatus, VatType
from recurbill.db.models import BillingEntity, Contract, ScheduledBilling
from recurbill.db.repository import ScheduleRepository, utcnow
from recurbill.db.session import get_db_session, session_local
from recurbill.errors import InvalidStateError, NotFoundError, ValidationError
from recurbill.logging_config import get_logger
from recurbill.notify.sinks import AuditAction, AuditSink

logger = get_logger(__name__)

EDITABLE_FIELDS = (
    "contract_id",
    "billing_entity_id",
    "billing_amount",
    "vat_type",
    "has_withholding",
    "withholding_rate",
    "withholding_code",
    "description",
    "remarks",
    "frequency",
    "billing_day_of_month",
    "due_day_of_month",
    "custom_interval_value",
    "custom_interval_unit",
    "start_date",
    "end_date",
    "auto_approve",
    "auto_send_enabled",
)

# Changing any of these moves the billing calendar.
CADENCE_FIELDS = (
    "frequency",
    "billing_day_of_month",
    "custom_interval_value",
    "custom_interval_unit",
    "start_date",
)

RUN_HISTORY_COLUMNS = [
    "id",
    "scheduledBillingId",
    "runDate",
    "status",
    "invoiceId",
    "errorMessage",
    "createdAt",
]


def _check_day(name: str, value: Optional[int]) -> None:
    if value is None:
        return
    try:
        day = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a whole number, got {value!r}")
    if not 1 <= day <= 31:
        raise ValidationError(f"{name} must be between 1 and 31, got {value}")


def validate_schedule_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and normalize schedule input.

    Args:
        values (dict): Column values of a new or updated schedule.

    Returns:
        dict: The values with amounts as Decimal and enums coerced.

    Raises:
        ValidationError: On a malformed amount, day of month, custom
            interval, withholding rate or date range.
    """
    values = dict(values)
    try:
        amount = Decimal(str(values.get("billing_amount")))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid billing amount: {values.get('billing_amount')}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Billing amount must be greater than zero")
    values["billing_amount"] = to_money(amount)

    try:
        values["vat_type"] = VatType(values.get("vat_type") or VatType.VAT)
        values["frequency"] = BillingFrequency(values.get("frequency") or BillingFrequency.MONTHLY)
        if values.get("custom_interval_unit") is not None:
            values["custom_interval_unit"] = IntervalUnit(values["custom_interval_unit"])
    except ValueError as e:
        raise ValidationError(str(e))

    _check_day("Billing day of month", values.get("billing_day_of_month"))
    _check_day("Due day of month", values.get("due_day_of_month"))

    if values["frequency"] is BillingFrequency.CUSTOM:
        # Raises ValidationError for a missing or non-positive interval.
        frequency_of(_Fields(values))
    else:
        values["custom_interval_value"] = None
        values["custom_interval_unit"] = None

    if values.get("has_withholding") and values.get("withholding_rate") is not None:
        rate = Decimal(str(values["withholding_rate"]))
        if not 0 <= rate < 1:
            raise ValidationError(f"Withholding rate must be between 0 and 1, got {rate}")
        values["withholding_rate"] = rate

    start_date = values.get("start_date")
    if start_date is None:
        raise ValidationError("Start date is required")
    end_date = values.get("end_date")
    if end_date is not None and end_date < start_date:
        raise ValidationError(f"End date {end_date} is before the start date {start_date}")

    if values.get("billing_entity_id") is None:
        raise ValidationError("Billing entity is required")
    return values


class _Fields:
    """Attribute view over a dict so the date helpers accept plain input."""

    def __init__(self, values: Dict[str, Any]):
        self.__dict__.update(values)

    def __getattr__(self, name):
        return None


def schedule_to_dict(schedule: ScheduledBilling) -> Dict[str, Any]:
    if schedule.contract is not None:
        customer = schedule.contract.company_name
    else:
        customer = schedule.billing_entity.name
    return {
        "id": schedule.id,
        "contractId": schedule.contract_id,
        "billingEntityId": schedule.billing_entity_id,
        "customerName": customer,
        "billingAmount": str(schedule.billing_amount),
        "vatType": schedule.vat_type.value,
        "hasWithholding": bool(schedule.has_withholding),
        "frequency": schedule.frequency.value,
        "billingDayOfMonth": schedule.billing_day_of_month,
        "startDate": schedule.start_date.isoformat(),
        "endDate": schedule.end_date.isoformat() if schedule.end_date else None,
        "nextBillingDate": schedule.next_billing_date.isoformat(),
        "status": schedule.status.value,
        "autoApprove": bool(schedule.auto_approve),
        "autoSendEnabled": bool(schedule.auto_send_enabled),
        "description": schedule.description,
    }


def run_to_dict(run) -> Dict[str, Any]:
    return {
        "id": run.id,
        "scheduledBillingId": run.scheduled_billing_id,
        "runDate": run.run_date,
        "status": run.status.value,
        "invoiceId": run.invoice_id,
        "errorMessage": run.error_message,
        "createdAt": run.created_at,
    }


class ScheduleService:
    """CRUD and reporting over scheduled billings.

    Args:
        audit (AuditSink): Receives a record for each create/update/delete.
        session_factory (sessionmaker, optional): Factory for database sessions.
        clock (Callable[[], date], optional): Source of today's date.
    """

    def __init__(self, audit: AuditSink, session_factory=None, clock: Callable[[], date] = date.today):
        self.audit = audit
        self.session_factory = session_factory or session_local
        self.clock = clock

    def create_schedule(
        self, values: Dict[str, Any], created_by_id: Optional[str] = None, as_of: Optional[date] = None
    ) -> Dict[str, Any]:
        """Create a PENDING schedule.

        The first billing date is the first anchor date on or after the
        later of the start date and ``as_of``; past periods are not billed
        retroactively.
        """
        unknown = set(values) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")
        values = validate_schedule_fields(values)
        as_of = as_of or self.clock()

        with get_db_session(self.session_factory) as db:
            self._check_references(db, values)
            schedule = ScheduledBilling(**values)
            schedule.status = ScheduleStatus.PENDING
            schedule.created_by_id = created_by_id
            schedule.next_billing_date = first_occurrence(
                frequency_of(schedule), anchor_day_of(schedule), max(schedule.start_date, as_of)
            )
            ScheduleRepository(db).save_schedule(schedule)
            result = schedule_to_dict(schedule)

        logger.info(
            f"Created schedule {result['id']} for {result['customerName']}, "
            f"first billing date {result['nextBillingDate']}",
            extra={"schedule_id": result["id"]},
        )
        self.audit.record(
            AuditAction.SCHEDULE_CREATED,
            "ScheduledBilling",
            result["id"],
            {"companyName": result["customerName"], "billingAmount": result["billingAmount"]},
            user_id=created_by_id,
        )
        return result

    def get_schedule_detail(self, schedule_id: int, recent_runs: int = 10) -> Dict[str, Any]:
        with get_db_session(self.session_factory) as db:
            repo = ScheduleRepository(db)
            detail = schedule_to_dict(repo.get_schedule(schedule_id))
            detail["runs"] = [run_to_dict(r) for r in repo.list_runs(schedule_id, limit=recent_runs)]
        return detail

    def update_schedule(
        self, schedule_id: int, changes: Dict[str, Any], actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Apply field changes to a schedule that has not ended.

        When the cadence changes, ``next_billing_date`` is recomputed from
        the current next billing date onwards, never earlier.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")

        with get_db_session(self.session_factory) as db:
            repo = ScheduleRepository(db)
            schedule = repo.get_schedule(schedule_id, for_update=True)
            if schedule.status == ScheduleStatus.ENDED:
                raise InvalidStateError("cannot update an ended schedule")

            merged = {name: getattr(schedule, name) for name in EDITABLE_FIELDS}
            merged.update(changes)
            merged = validate_schedule_fields(merged)
            self._check_references(db, merged)

            for name in changes:
                setattr(schedule, name, merged[name])
            previous = schedule.next_billing_date
            if any(name in changes for name in CADENCE_FIELDS):
                schedule.next_billing_date = first_occurrence(
                    frequency_of(schedule),
                    anchor_day_of(schedule),
                    max(previous, schedule.start_date),
                )
            repo.save_schedule(schedule)
            result = schedule_to_dict(schedule)

        details = {"fields": sorted(changes)}
        if result["nextBillingDate"] != previous.isoformat():
            details["nextBillingDate"] = {"from": previous.isoformat(), "to": result["nextBillingDate"]}
        self.audit.record(AuditAction.SCHEDULE_UPDATED, "ScheduledBilling", schedule_id, details, user_id=actor_id)
        return result

    def delete_schedule(self, schedule_id: int, actor_id: Optional[str] = None) -> None:
        """Delete a schedule and its run history. Invoices are kept."""
        with get_db_session(self.session_factory) as db:
            ScheduleRepository(db).delete_schedule(schedule_id)
        logger.info(f"Deleted schedule {schedule_id}", extra={"schedule_id": schedule_id})
        self.audit.record(AuditAction.SCHEDULE_DELETED, "ScheduledBilling", schedule_id, user_id=actor_id)

    def list_schedules(
        self,
        status: Optional[ScheduleStatus] = None,
        billing_entity_id: Optional[int] = None,
        contract_id: Optional[int] = None,
        frequency: Optional[BillingFrequency] = None,
    ) -> List[Dict[str, Any]]:
        with get_db_session(self.session_factory) as db:
            schedules = ScheduleRepository(db).list_schedules(
                status=status,
                billing_entity_id=billing_entity_id,
                contract_id=contract_id,
                frequency=frequency,
            )
            return [schedule_to_dict(s) for s in schedules]

    def get_run_history(
        self, schedule_id: Optional[int] = None, days_back: int = 30, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Runs created in the last ``days_back`` days, newest period first."""
        since = utcnow() - timedelta(days=days_back)
        with get_db_session(self.session_factory) as db:
            runs = ScheduleRepository(db).list_runs(schedule_id, since=since, limit=limit)
            return [run_to_dict(r) for r in runs]

    def run_history_frame(
        self, schedule_id: Optional[int] = None, days_back: int = 30, limit: int = 100
    ) -> pd.DataFrame:
        """Run history as a DataFrame for reports and CSV export."""
        rows = self.get_run_history(schedule_id, days_back=days_back, limit=limit)
        df = pd.DataFrame(rows, columns=RUN_HISTORY_COLUMNS)
        if not df.empty:
            df["runDate"] = pd.to_datetime(df["runDate"])
        return df

    def get_schedule_stats(self, as_of: Optional[date] = None) -> Dict[str, int]:
        """Schedule counts per status plus active schedules due in the next 7 days."""
        as_of = as_of or self.clock()
        with get_db_session(self.session_factory) as db:
            repo = ScheduleRepository(db)
            counts = repo.count_by_status()
            due_soon = repo.count_due_between(as_of, as_of + timedelta(days=7))
        stats = {status.value.lower(): count for status, count in counts.items()}
        stats["total"] = sum(counts.values())
        stats["dueWithin7Days"] = due_soon
        return stats

    @staticmethod
    def _check_references(db, values: Dict[str, Any]) -> None:
        if db.get(BillingEntity, values["billing_entity_id"]) is None:
            raise NotFoundError(f"Billing entity {values['billing_entity_id']} not found")
        contract_id = values.get("contract_id")
        if contract_id is not None and db.get(Contract, contract_id) is None:
            raise NotFoundError(f"Contract {contract_id} not found")
