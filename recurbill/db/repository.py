"""Persistence for schedules, runs, invoices and job runs.

``ScheduleRepository`` wraps one SQLAlchemy session. It flushes but never
commits: transaction boundaries belong to the caller.
"""

from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from recurbill.billing.assembler import InvoiceDraft
from recurbill.db.enums import InvoiceStatus, JobStatus, RunStatus, ScheduleStatus
from recurbill.db.models import (
    BillingEntity,
    Invoice,
    InvoiceLineItem,
    JobRun,
    ScheduledBilling,
    ScheduledBillingRun,
)
from recurbill.errors import NotFoundError, ScheduleNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_billing_no(prefix: str, sequence: int) -> str:
    """Billing number: prefix followed by a zero-padded 10-digit sequence."""
    return f"{prefix}{sequence:010d}"


class ScheduleRepository:
    """Record store for the billing engine.

    Args:
        db (Session): SQLAlchemy session the repository reads and writes through.
    """

    def __init__(self, db: Session):
        self.db = db

    # Schedules

    def get_schedule(self, schedule_id: int, for_update: bool = False) -> ScheduledBilling:
        query = self.db.query(ScheduledBilling).filter(ScheduledBilling.id == schedule_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        schedule = query.first()
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    def list_active_due(self, as_of: date) -> List[ScheduledBilling]:
        return (
            self.db.query(ScheduledBilling)
            .filter(
                ScheduledBilling.status == ScheduleStatus.ACTIVE,
                ScheduledBilling.next_billing_date <= as_of,
            )
            .order_by(ScheduledBilling.next_billing_date, ScheduledBilling.id)
            .all()
        )

    def list_schedules(
        self,
        status: Optional[ScheduleStatus] = None,
        billing_entity_id: Optional[int] = None,
        contract_id: Optional[int] = None,
        frequency=None,
    ) -> List[ScheduledBilling]:
        query = self.db.query(ScheduledBilling)
        if status is not None:
            query = query.filter(ScheduledBilling.status == status)
        if billing_entity_id is not None:
            query = query.filter(ScheduledBilling.billing_entity_id == billing_entity_id)
        if contract_id is not None:
            query = query.filter(ScheduledBilling.contract_id == contract_id)
        if frequency is not None:
            query = query.filter(ScheduledBilling.frequency == frequency)
        return query.order_by(ScheduledBilling.status, ScheduledBilling.next_billing_date).all()

    def save_schedule(self, schedule: ScheduledBilling) -> ScheduledBilling:
        self.db.add(schedule)
        self.db.flush()
        return schedule

    def delete_schedule(self, schedule_id: int) -> None:
        schedule = self.get_schedule(schedule_id)
        self.db.delete(schedule)
        self.db.flush()

    def count_by_status(self) -> Dict[ScheduleStatus, int]:
        rows = (
            self.db.query(ScheduledBilling.status, func.count(ScheduledBilling.id))
            .group_by(ScheduledBilling.status)
            .all()
        )
        counts = {status: 0 for status in ScheduleStatus}
        for status, count in rows:
            counts[ScheduleStatus(status)] = count
        return counts

    def count_due_between(self, start: date, end: date) -> int:
        return (
            self.db.query(func.count(ScheduledBilling.id))
            .filter(
                ScheduledBilling.status == ScheduleStatus.ACTIVE,
                ScheduledBilling.next_billing_date >= start,
                ScheduledBilling.next_billing_date <= end,
            )
            .scalar()
        )

    # Runs

    def create_run(self, schedule_id: int, run_date: date) -> ScheduledBillingRun:
        run = ScheduledBillingRun(
            scheduled_billing_id=schedule_id,
            run_date=run_date,
            status=RunStatus.PENDING,
        )
        self.db.add(run)
        self.db.flush()
        return run

    def record_run(
        self, schedule_id: int, run_date: date, status: RunStatus, error: Optional[str] = None
    ) -> ScheduledBillingRun:
        """Append an already-final run row (skips and batch timeouts)."""
        run = ScheduledBillingRun(
            scheduled_billing_id=schedule_id,
            run_date=run_date,
            status=status,
            error_message=error,
            finalized_at=utcnow(),
        )
        self.db.add(run)
        self.db.flush()
        return run

    def finalize_run(
        self,
        run_id: int,
        status: RunStatus,
        invoice_id: Optional[int] = None,
        error: Optional[str] = None,
    ) -> ScheduledBillingRun:
        run = self.db.get(ScheduledBillingRun, run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        if run.status != RunStatus.PENDING:
            raise ValueError(f"Run {run_id} is already finalized as {run.status.value}")
        run.status = status
        run.invoice_id = invoice_id
        run.error_message = error
        run.finalized_at = utcnow()
        self.db.flush()
        return run

    def find_success_run(
        self, schedule_id: int, period_date: date, exclude_run_id: Optional[int] = None
    ) -> Optional[ScheduledBillingRun]:
        query = self.db.query(ScheduledBillingRun).filter(
            ScheduledBillingRun.scheduled_billing_id == schedule_id,
            ScheduledBillingRun.run_date == period_date,
            ScheduledBillingRun.status == RunStatus.SUCCESS,
        )
        if exclude_run_id is not None:
            query = query.filter(ScheduledBillingRun.id != exclude_run_id)
        return query.first()

    def list_runs(
        self,
        schedule_id: Optional[int] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ScheduledBillingRun]:
        query = self.db.query(ScheduledBillingRun)
        if schedule_id is not None:
            query = query.filter(ScheduledBillingRun.scheduled_billing_id == schedule_id)
        if since is not None:
            query = query.filter(ScheduledBillingRun.created_at >= since)
        return (
            query.order_by(ScheduledBillingRun.run_date.desc(), ScheduledBillingRun.id.desc())
            .limit(limit)
            .all()
        )

    # Invoices

    def create_invoice(self, draft: InvoiceDraft, status: InvoiceStatus) -> Invoice:
        """Persist a draft, taking the next billing number from its billing entity."""
        entity = self.db.get(BillingEntity, draft.billing_entity_id)
        if entity is None:
            raise NotFoundError(f"Billing entity {draft.billing_entity_id} not found")
        billing_no = format_billing_no(entity.invoice_prefix or "INV", entity.next_invoice_no)
        entity.next_invoice_no = entity.next_invoice_no + 1

        invoice = Invoice(
            billing_no=billing_no,
            billing_entity_id=draft.billing_entity_id,
            contract_id=draft.contract_id,
            scheduled_billing_id=draft.scheduled_billing_id,
            customer_name=draft.customer_name,
            customer_email=draft.customer_email,
            customer_tin=draft.customer_tin,
            customer_address=draft.customer_address,
            statement_date=draft.statement_date,
            due_date=draft.due_date,
            period_start=draft.period_start,
            period_end=draft.period_end,
            service_fee=draft.service_fee,
            vat_amount=draft.vat_amount,
            gross_amount=draft.gross_amount,
            withholding_tax=draft.withholding_amount,
            net_amount=draft.net_receivable,
            vat_type=draft.vat_type,
            vat_rate=draft.vat_rate,
            has_withholding=draft.has_withholding,
            withholding_rate=draft.withholding_rate,
            withholding_code=draft.withholding_code,
            status=status,
            approved_at=utcnow() if status == InvoiceStatus.APPROVED else None,
            remarks=draft.remarks,
            line_items=[
                InvoiceLineItem(
                    description=item.description,
                    period_start=item.period_start,
                    period_end=item.period_end,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    service_fee=item.service_fee,
                    vat_amount=item.vat_amount,
                    withholding_tax=item.withholding_tax,
                    amount=item.amount,
                )
                for item in draft.line_items
            ],
        )
        self.db.add(invoice)
        self.db.flush()
        return invoice

    # Job runs

    def create_job_run(self, job_name: str, as_of: date) -> JobRun:
        job = JobRun(job_name=job_name, as_of=as_of, status=JobStatus.RUNNING)
        self.db.add(job)
        self.db.flush()
        return job

    def finish_job_run(
        self,
        job_run_id: int,
        status: JobStatus,
        processed: int = 0,
        succeeded: int = 0,
        skipped: int = 0,
        failed: int = 0,
        errors: Optional[list] = None,
    ) -> JobRun:
        job = self.db.get(JobRun, job_run_id)
        if job is None:
            raise NotFoundError(f"Job run {job_run_id} not found")
        job.status = status
        job.completed_at = utcnow()
        job.processed = processed
        job.succeeded = succeeded
        job.skipped = skipped
        job.failed = failed
        job.errors = errors or []
        self.db.flush()
        return job
