"""Outbound collaborators of the billing engine.

Sending invoices, notifying users and writing the audit trail are
best-effort: the engine calls them after its own writes are committed and
never depends on their success. The database-backed sinks log and swallow
their own failures.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from recurbill.db.models import AuditLog, Notification
from recurbill.db.session import get_db_session
from recurbill.logging_config import get_logger

logger = get_logger(__name__)


class AuditAction:
    """Standardized audit action constants."""

    SCHEDULE_CREATED = "SCHEDULED_BILLING_CREATED"
    SCHEDULE_UPDATED = "SCHEDULED_BILLING_UPDATED"
    SCHEDULE_DELETED = "SCHEDULED_BILLING_DELETED"
    SCHEDULE_APPROVED = "SCHEDULED_BILLING_APPROVED"
    SCHEDULE_REJECTED = "SCHEDULED_BILLING_REJECTED"
    SCHEDULE_PAUSED = "SCHEDULED_BILLING_PAUSED"
    SCHEDULE_RESUMED = "SCHEDULED_BILLING_RESUMED"
    SCHEDULE_ENDED = "SCHEDULED_BILLING_ENDED"
    SCHEDULE_DATE_CORRECTED = "SCHEDULED_BILLING_DATE_CORRECTED"
    SCHEDULE_MANUAL_RUN = "SCHEDULED_BILLING_MANUAL_RUN"
    RUN_FAILED = "SCHEDULED_BILLING_RUN_FAILED"
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_AUTO_APPROVED = "INVOICE_AUTO_APPROVED"
    INVOICE_SEND_FAILED = "INVOICE_SEND_FAILED"


class NotificationKind:
    INVOICE_PENDING = "INVOICE_PENDING"
    SCHEDULE_APPROVED = "SCHEDULE_APPROVED"
    SCHEDULE_REJECTED = "SCHEDULE_REJECTED"
    SEND_FAILED = "INVOICE_SEND_FAILED"


@dataclass
class SendResult:
    success: bool
    invoice_id: int
    sent_to: Optional[str] = None
    error: Optional[str] = None


class InvoiceSender:
    """Delivers an approved invoice to its customer (PDF + email)."""

    def send_invoice(self, invoice_id: int) -> SendResult:
        raise NotImplementedError


class UnconfiguredSender(InvoiceSender):
    """Sender used when no delivery channel is wired in; every send fails."""

    def send_invoice(self, invoice_id: int) -> SendResult:
        logger.warning(f"No invoice sender configured, invoice {invoice_id} not sent")
        return SendResult(success=False, invoice_id=invoice_id, error="no invoice sender configured")


class NotificationSink:
    def notify(self, user_id: Optional[str], kind: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class AuditSink:
    def record(
        self,
        action: str,
        entity_type: str,
        entity_id,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class DatabaseNotificationSink(NotificationSink):
    """Writes notifications to the notifications table.

    Args:
        session_factory (sessionmaker, optional): Factory for database sessions.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def notify(self, user_id: Optional[str], kind: str, payload: Dict[str, Any]) -> None:
        try:
            with get_db_session(self.session_factory) as db:
                db.add(
                    Notification(
                        user_id=user_id,
                        kind=kind,
                        title=payload.get("title", kind),
                        message=payload.get("message", ""),
                        entity_type=payload.get("entity_type"),
                        entity_id=str(payload["entity_id"]) if payload.get("entity_id") is not None else None,
                    )
                )
        except SQLAlchemyError:
            # Notifications must not break the billing flow.
            logger.exception(f"Error creating {kind} notification")


class DatabaseAuditSink(AuditSink):
    """Writes audit records to the audit_logs table.

    Args:
        session_factory (sessionmaker, optional): Factory for database sessions.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def record(
        self,
        action: str,
        entity_type: str,
        entity_id,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> None:
        try:
            with get_db_session(self.session_factory) as db:
                db.add(
                    AuditLog(
                        user_id=user_id,
                        action=action,
                        entity_type=entity_type,
                        entity_id=str(entity_id),
                        details=details or {},
                    )
                )
        except SQLAlchemyError:
            logger.exception(f"Error writing audit record {action} for {entity_type} {entity_id}")
