"""Post-commit events emitted by the schedule runner and their dispatcher.

The runner only records *what happened*; the dispatcher turns that into
sends, notifications and audit records once the run's transaction has
committed. Delivery problems are returned to the caller as messages and
never undo the run.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from recurbill.logging_config import get_logger
from recurbill.metrics import invoice_send_failures_total
from recurbill.notify.sinks import (
    AuditAction,
    AuditSink,
    InvoiceSender,
    NotificationKind,
    NotificationSink,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class InvoiceGenerated:
    schedule_id: int
    invoice_id: int
    billing_no: str
    customer_name: str
    net_amount: str
    auto_approved: bool


@dataclass(frozen=True)
class ApprovalNeeded:
    schedule_id: int
    invoice_id: int
    billing_no: str
    customer_name: str


@dataclass(frozen=True)
class AutoSendRequested:
    schedule_id: int
    invoice_id: int
    billing_no: str


@dataclass(frozen=True)
class ScheduleEnded:
    schedule_id: int
    reason: str


@dataclass(frozen=True)
class RunFailed:
    schedule_id: int
    run_id: Optional[int]
    error: str


class EventDispatcher:
    """Delivers runner events to the outbound collaborators.

    Args:
        sender (InvoiceSender): Delivers auto-sent invoices.
        notifications (NotificationSink): Receives user-facing notifications.
        audit (AuditSink): Receives audit records.
    """

    def __init__(self, sender: InvoiceSender, notifications: NotificationSink, audit: AuditSink):
        self.sender = sender
        self.notifications = notifications
        self.audit = audit

    def dispatch(self, events: Iterable) -> List[str]:
        """Deliver events in order.

        A collaborator that raises loses only its own delivery; the
        remaining events are still delivered.

        Returns:
            List[str]: Messages for deliveries that did not go out.
        """
        handlers = {
            InvoiceGenerated: self._on_generated,
            ApprovalNeeded: self._on_approval_needed,
            AutoSendRequested: self._on_auto_send,
            ScheduleEnded: self._on_schedule_ended,
            RunFailed: self._on_run_failed,
        }
        errors = []
        for event in events:
            handler = handlers.get(type(event))
            if handler is None:
                logger.warning(f"Ignoring unknown event {event!r}")
                continue
            try:
                error = handler(event)
            except Exception as e:
                logger.exception(
                    f"Error delivering {type(event).__name__} for schedule {event.schedule_id}",
                    extra={"schedule_id": event.schedule_id},
                )
                error = f"{type(event).__name__} delivery failed: {str(e) or e.__class__.__name__}"
            if error:
                errors.append(error)
        return errors

    def _on_schedule_ended(self, event: ScheduleEnded) -> None:
        self.audit.record(
            AuditAction.SCHEDULE_ENDED,
            "ScheduledBilling",
            event.schedule_id,
            {"reason": event.reason},
        )

    def _on_run_failed(self, event: RunFailed) -> None:
        self.audit.record(
            AuditAction.RUN_FAILED,
            "ScheduledBilling",
            event.schedule_id,
            {"runId": event.run_id, "error": event.error},
        )

    def _on_generated(self, event: InvoiceGenerated) -> None:
        action = AuditAction.INVOICE_AUTO_APPROVED if event.auto_approved else AuditAction.INVOICE_CREATED
        self.audit.record(
            action,
            "Invoice",
            event.invoice_id,
            {
                "billingNo": event.billing_no,
                "customerName": event.customer_name,
                "amount": event.net_amount,
                "source": "scheduled",
                "scheduledBillingId": event.schedule_id,
            },
        )

    def _on_approval_needed(self, event: ApprovalNeeded) -> None:
        self.notifications.notify(
            None,
            NotificationKind.INVOICE_PENDING,
            {
                "title": "Invoice Pending Approval",
                "message": f"Invoice {event.billing_no} for {event.customer_name} needs approval",
                "entity_type": "Invoice",
                "entity_id": event.invoice_id,
            },
        )

    def _on_auto_send(self, event: AutoSendRequested) -> Optional[str]:
        try:
            result = self.sender.send_invoice(event.invoice_id)
            error = None if result.success else (result.error or "send failed")
        except Exception as e:
            # The invoice is already committed; a broken sender only loses the send.
            logger.exception(
                f"Error sending invoice {event.billing_no}", extra={"invoice_id": event.invoice_id}
            )
            error = str(e) or e.__class__.__name__

        if error is None:
            logger.info(
                f"Auto-sent invoice {event.billing_no}",
                extra={"invoice_id": event.invoice_id, "schedule_id": event.schedule_id},
            )
            return None

        invoice_send_failures_total.inc()
        logger.error(
            f"Failed to auto-send {event.billing_no}: {error}",
            extra={"invoice_id": event.invoice_id, "schedule_id": event.schedule_id},
        )
        try:
            self.audit.record(
                AuditAction.INVOICE_SEND_FAILED,
                "Invoice",
                event.invoice_id,
                {"billingNo": event.billing_no, "error": error},
            )
            self.notifications.notify(
                None,
                NotificationKind.SEND_FAILED,
                {
                    "title": "Invoice Auto-Send Failed",
                    "message": f"Invoice {event.billing_no} was generated but could not be sent: {error}",
                    "entity_type": "Invoice",
                    "entity_id": event.invoice_id,
                },
            )
        except Exception:
            logger.exception(
                f"Error reporting failed send of {event.billing_no}", extra={"invoice_id": event.invoice_id}
            )
        return f"Auto-send failed for invoice {event.billing_no}: {error}"
