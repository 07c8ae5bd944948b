"""Enumerations shared by the ORM models and the billing engine."""

import enum


class ScheduleStatus(str, enum.Enum):
    PENDING = "PENDING"  # Created, waiting for approval
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"  # Terminal


class BillingFrequency(str, enum.Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUALLY = "ANNUALLY"
    CUSTOM = "CUSTOM"


class IntervalUnit(str, enum.Enum):
    DAYS = "DAYS"
    MONTHS = "MONTHS"


class VatType(str, enum.Enum):
    VAT = "VAT"
    NON_VAT = "NON_VAT"


class RunStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class InvoiceStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SENT = "SENT"
    PAID = "PAID"
    VOID = "VOID"


class JobStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
