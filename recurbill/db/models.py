"""Database ORM models for the recurring billing engine.

This module defines the SQLAlchemy models:
BillingEntity, Contract, ScheduledBilling, ScheduledBillingRun, Invoice,
InvoiceLineItem, JobRun, Setting, AuditLog and Notification.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Enum,
    Date,
    DateTime,
    Numeric,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    Index,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from recurbill.db.enums import (
    BillingFrequency,
    IntervalUnit,
    InvoiceStatus,
    JobStatus,
    RunStatus,
    ScheduleStatus,
    VatType,
)

Base = declarative_base()

MONEY = Numeric(14, 2)
RATE = Numeric(6, 4)


class BillingEntity(Base):
    """ORM model for billing_entities table (the issuing company).

    Attributes:
        id (int): Primary key.
        code (str): Short unique code, e.g. 'YOWI'.
        name (str): Legal name printed on invoices.
        invoice_prefix (str): Prefix of generated billing numbers.
        next_invoice_no (int): Next sequence number for billing numbers.
    """

    __tablename__ = "billing_entities"
    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    invoice_prefix = Column(String, nullable=False, default="INV")
    next_invoice_no = Column(Integer, nullable=False, default=1)


class Contract(Base):
    """ORM model for contracts table, the client a schedule bills."""

    __tablename__ = "contracts"
    id = Column(Integer, primary_key=True, index=True)
    company_name = Column(String, nullable=False)
    contact_person = Column(String)
    email = Column(String)
    tin = Column(String)
    address = Column(Text)
    product_type = Column(String)


class ScheduledBilling(Base):
    """ORM model for scheduled_billings table, a recurring billing rule.

    ``next_billing_date`` is the single source of truth for when the next
    invoice is due. ``version`` is an optimistic-lock counter: concurrent
    writers of the same schedule fail with ``StaleDataError``.
    """

    __tablename__ = "scheduled_billings"
    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id"), nullable=True, index=True)
    billing_entity_id = Column(
        Integer, ForeignKey("billing_entities.id"), nullable=False, index=True
    )

    billing_amount = Column(MONEY, nullable=False)
    vat_type = Column(Enum(VatType, name="vat_type"), nullable=False, default=VatType.VAT)
    has_withholding = Column(Boolean, nullable=False, default=False)
    withholding_rate = Column(RATE)
    withholding_code = Column(String)
    description = Column(Text)
    remarks = Column(Text)

    frequency = Column(
        Enum(BillingFrequency, name="billing_frequency"),
        nullable=False,
        default=BillingFrequency.MONTHLY,
    )
    billing_day_of_month = Column(Integer)
    due_day_of_month = Column(Integer)
    custom_interval_value = Column(Integer)
    custom_interval_unit = Column(Enum(IntervalUnit, name="interval_unit"))

    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    next_billing_date = Column(Date, nullable=False)

    status = Column(
        Enum(ScheduleStatus, name="schedule_status"),
        nullable=False,
        default=ScheduleStatus.PENDING,
    )
    auto_approve = Column(Boolean, nullable=False, default=False)
    auto_send_enabled = Column(Boolean, nullable=False, default=True)

    created_by_id = Column(String)
    approved_by_id = Column(String)
    approved_at = Column(DateTime)
    rejected_by_id = Column(String)
    rejected_at = Column(DateTime)
    rejection_reason = Column(Text)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
    version = Column(Integer, nullable=False)

    contract = relationship("Contract")
    billing_entity = relationship("BillingEntity")
    runs = relationship(
        "ScheduledBillingRun",
        back_populates="scheduled_billing",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ScheduledBillingRun.id",
    )

    __table_args__ = (
        Index("ix_scheduled_billings_status_next", "status", "next_billing_date"),
    )
    __mapper_args__ = {"version_id_col": version}


class ScheduledBillingRun(Base):
    """ORM model for scheduled_billing_runs table, one row per run attempt.

    Attributes:
        id (int): Primary key.
        scheduled_billing_id (int): Owning schedule.
        invoice_id (int): Generated invoice, null unless the run succeeded.
        run_date (date): The period this run represents.
        status (RunStatus): PENDING while in flight, then final.
        error_message (str): Failure or skip reason.
        created_at (datetime): When the attempt started.
        finalized_at (datetime): When the status was fixed.
    """

    __tablename__ = "scheduled_billing_runs"
    id = Column(Integer, primary_key=True, index=True)
    scheduled_billing_id = Column(
        Integer,
        ForeignKey("scheduled_billings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True)
    run_date = Column(Date, nullable=False)
    status = Column(Enum(RunStatus, name="run_status"), nullable=False, default=RunStatus.PENDING)
    error_message = Column(Text)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    finalized_at = Column(DateTime)

    scheduled_billing = relationship("ScheduledBilling", back_populates="runs")
    invoice = relationship("Invoice")

    __table_args__ = (
        # At most one SUCCESS run per schedule and period.
        Index(
            "uq_scheduled_billing_runs_success_period",
            "scheduled_billing_id",
            "run_date",
            unique=True,
            sqlite_where=text("status = 'SUCCESS'"),
            postgresql_where=text("status = 'SUCCESS'"),
        ),
    )


class Invoice(Base):
    """ORM model for invoices table."""

    __tablename__ = "invoices"
    id = Column(Integer, primary_key=True, index=True)
    billing_no = Column(String, nullable=False, unique=True)
    billing_entity_id = Column(Integer, ForeignKey("billing_entities.id"), nullable=False)
    contract_id = Column(Integer, ForeignKey("contracts.id"))
    scheduled_billing_id = Column(Integer, ForeignKey("scheduled_billings.id", ondelete="SET NULL"))

    customer_name = Column(String, nullable=False)
    customer_email = Column(String)
    customer_tin = Column(String)
    customer_address = Column(Text)

    statement_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    period_start = Column(Date)
    period_end = Column(Date)

    service_fee = Column(MONEY, nullable=False)
    vat_amount = Column(MONEY, nullable=False)
    gross_amount = Column(MONEY, nullable=False)
    withholding_tax = Column(MONEY, nullable=False)
    net_amount = Column(MONEY, nullable=False)
    vat_type = Column(Enum(VatType, name="vat_type"), nullable=False)
    vat_rate = Column(RATE, nullable=False)
    has_withholding = Column(Boolean, nullable=False, default=False)
    withholding_rate = Column(RATE)
    withholding_code = Column(String)

    status = Column(Enum(InvoiceStatus, name="invoice_status"), nullable=False, index=True)
    approved_at = Column(DateTime)
    remarks = Column(Text)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    line_items = relationship(
        "InvoiceLineItem", back_populates="invoice", cascade="all, delete-orphan"
    )


class InvoiceLineItem(Base):
    """ORM model for invoice_line_items table."""

    __tablename__ = "invoice_line_items"
    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    description = Column(Text, nullable=False)
    period_start = Column(Date)
    period_end = Column(Date)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(MONEY, nullable=False)
    service_fee = Column(MONEY, nullable=False)
    vat_amount = Column(MONEY, nullable=False)
    withholding_tax = Column(MONEY, nullable=False)
    amount = Column(MONEY, nullable=False)

    invoice = relationship("Invoice", back_populates="line_items")


class JobRun(Base):
    """ORM model for job_runs table, one summary row per batch pass.

    Attributes:
        id (int): Primary key.
        job_name (str): Name of the job, e.g. 'daily-billing-check'.
        status (JobStatus): RUNNING until the pass finishes.
        as_of (date): The date the pass selected due schedules for.
        processed/succeeded/skipped/failed (int): Outcome counts.
        errors (JSON): List of per-schedule error entries.
    """

    __tablename__ = "job_runs"
    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String, nullable=False, index=True)
    status = Column(Enum(JobStatus, name="job_status"), nullable=False, default=JobStatus.RUNNING)
    as_of = Column(Date, nullable=False)
    started_at = Column(DateTime, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime)
    processed = Column(Integer, nullable=False, default=0)
    succeeded = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    errors = Column(JSON)


class Setting(Base):
    """ORM model for settings table: admin-editable key/value configuration."""

    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class AuditLog(Base):
    """ORM model for audit_logs table."""

    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String)
    action = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    details = Column(JSON)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class Notification(Base):
    """ORM model for notifications table. A null user_id is a broadcast."""

    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True)
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    entity_type = Column(String)
    entity_id = Column(String)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
