"""Invoice assembly: amounts, line items and bill-to details.

The assembler is side-effect free. It turns a schedule and a billing
period into an ``InvoiceDraft``; persisting it and deciding when to bill
belong to the runner.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from recurbill.billing.datemath import clamp_to_anchor, add_months
from recurbill.db.enums import VatType
from recurbill.errors import ConsistencyError, ValidationError

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Quantize a number to cents, rounding half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class LineItemInput:
    description: str
    amount: Decimal
    period_start: Optional[date] = None
    period_end: Optional[date] = None


@dataclass
class LineItemDraft:
    description: str
    service_fee: Decimal
    vat_amount: Decimal
    withholding_tax: Decimal
    amount: Decimal
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    quantity: int = 1

    @property
    def unit_price(self) -> Decimal:
        return self.service_fee


@dataclass
class Amounts:
    net_of_vat: Decimal
    vat_amount: Decimal
    gross_amount: Decimal
    withholding_amount: Decimal
    net_receivable: Decimal


@dataclass
class InvoiceDraft:
    """Unsaved invoice header plus line items."""

    billing_entity_id: int
    customer_name: str
    statement_date: date
    due_date: date
    service_fee: Decimal
    vat_amount: Decimal
    gross_amount: Decimal
    withholding_amount: Decimal
    net_receivable: Decimal
    vat_type: VatType
    vat_rate: Decimal
    has_withholding: bool
    withholding_rate: Optional[Decimal] = None
    withholding_code: Optional[str] = None
    contract_id: Optional[int] = None
    scheduled_billing_id: Optional[int] = None
    customer_email: Optional[str] = None
    customer_tin: Optional[str] = None
    customer_address: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    remarks: Optional[str] = None
    line_items: List[LineItemDraft] = field(default_factory=list)


def compute_amounts(
    net_of_vat: Decimal,
    vat_type: VatType,
    vat_rate: Decimal,
    has_withholding: bool,
    withholding_rate: Optional[Decimal],
) -> Amounts:
    """VAT and withholding chain on a VAT-exclusive amount.

    Withholding is taken from the gross (VAT-inclusive) amount.
    """
    net_of_vat = to_money(net_of_vat)
    if VatType(vat_type) is VatType.VAT:
        vat_amount = to_money(net_of_vat * vat_rate)
    else:
        vat_amount = to_money(0)
    gross_amount = net_of_vat + vat_amount
    if has_withholding:
        withholding_amount = to_money(gross_amount * withholding_rate)
    else:
        withholding_amount = to_money(0)
    return Amounts(
        net_of_vat=net_of_vat,
        vat_amount=vat_amount,
        gross_amount=gross_amount,
        withholding_amount=withholding_amount,
        net_receivable=gross_amount - withholding_amount,
    )


def compute_due_date(
    run_date: date, due_day_of_month: Optional[int], default_due_days: int
) -> date:
    """Due date of an invoice billed on ``run_date``.

    With a due day of month, the invoice falls due on that day in the
    billing month, or the following month when that day has already
    passed. Without one, it falls due ``default_due_days`` after billing.
    """
    if due_day_of_month:
        candidate = clamp_to_anchor(run_date.year, run_date.month, due_day_of_month)
        if candidate < run_date:
            candidate = add_months(run_date, 1, due_day_of_month)
        return candidate
    return run_date + timedelta(days=default_due_days)


class InvoiceAssembler:
    """Builds invoice drafts from schedules.

    Args:
        settings (SettingsProvider): Source of the VAT rate and withholding
            defaults, read on every call.
    """

    def __init__(self, settings):
        self.settings = settings

    def _validate(self, schedule) -> None:
        if schedule.billing_amount is None or Decimal(str(schedule.billing_amount)) <= 0:
            raise ValidationError("Billing amount must be greater than zero")
        rate = schedule.withholding_rate
        if schedule.has_withholding and rate is not None and not 0 <= Decimal(str(rate)) < 1:
            raise ValidationError(f"Withholding rate must be between 0 and 1, got {rate}")

    def _bill_to(self, schedule) -> dict:
        contract = schedule.contract
        if contract is not None:
            return {
                "customer_name": contract.company_name,
                "customer_email": contract.email,
                "customer_tin": contract.tin,
                "customer_address": contract.address,
            }
        return {"customer_name": schedule.billing_entity.name}

    def assemble(
        self,
        schedule,
        period_description: str,
        line_items: Optional[Sequence[LineItemInput]] = None,
        service_fee: Optional[Decimal] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        statement_date: Optional[date] = None,
        due_date: Optional[date] = None,
    ) -> InvoiceDraft:
        """Assemble an invoice draft for one billing period.

        Args:
            schedule (ScheduledBilling): Schedule supplying amount and tax terms.
            period_description (str): Label for the default line item.
            line_items (Sequence[LineItemInput], optional): Explicit items for
                consolidated billing; summed instead of the billing amount.
            service_fee (Decimal, optional): Stated invoice total the explicit
                items must add up to. Defaults to the schedule's billing amount.
            period_start, period_end (date, optional): Period covered.
            statement_date (date, optional): Invoice date; defaults to the
                schedule's next billing date.
            due_date (date, optional): Defaults to ``compute_due_date``.

        Returns:
            InvoiceDraft: The unsaved invoice.

        Raises:
            ValidationError: If the schedule's amount terms are malformed.
            ConsistencyError: If explicit line items do not add up to the
                stated service fee.
        """
        self._validate(schedule)

        vat_type = VatType(schedule.vat_type)
        vat_rate = self.settings.vat_rate()
        withholding_rate = None
        withholding_code = None
        if schedule.has_withholding:
            withholding_rate = (
                Decimal(str(schedule.withholding_rate))
                if schedule.withholding_rate is not None
                else self.settings.default_withholding_rate()
            )
            withholding_code = (
                schedule.withholding_code or self.settings.default_withholding_code()
            )

        if line_items:
            items = list(line_items)
            stated = to_money(service_fee if service_fee is not None else schedule.billing_amount)
            total = sum((to_money(item.amount) for item in items), Decimal("0.00"))
            if total != stated:
                raise ConsistencyError(
                    f"Line items total {total} does not match service fee {stated}"
                )
        else:
            total = to_money(schedule.billing_amount)
            items = [
                LineItemInput(
                    description=period_description,
                    amount=total,
                    period_start=period_start,
                    period_end=period_end,
                )
            ]

        drafts = []
        for item in items:
            item_amounts = compute_amounts(
                item.amount, vat_type, vat_rate, schedule.has_withholding, withholding_rate
            )
            drafts.append(
                LineItemDraft(
                    description=item.description,
                    service_fee=item_amounts.net_of_vat,
                    vat_amount=item_amounts.vat_amount,
                    withholding_tax=item_amounts.withholding_amount,
                    amount=item_amounts.net_receivable,
                    period_start=item.period_start,
                    period_end=item.period_end,
                )
            )

        amounts = compute_amounts(
            total, vat_type, vat_rate, schedule.has_withholding, withholding_rate
        )
        statement_date = statement_date or schedule.next_billing_date
        if due_date is None:
            due_date = compute_due_date(
                statement_date, schedule.due_day_of_month, self.settings.default_due_days()
            )

        return InvoiceDraft(
            billing_entity_id=schedule.billing_entity_id,
            contract_id=schedule.contract_id,
            scheduled_billing_id=schedule.id,
            statement_date=statement_date,
            due_date=due_date,
            period_start=period_start,
            period_end=period_end,
            service_fee=amounts.net_of_vat,
            vat_amount=amounts.vat_amount,
            gross_amount=amounts.gross_amount,
            withholding_amount=amounts.withholding_amount,
            net_receivable=amounts.net_receivable,
            vat_type=vat_type,
            vat_rate=vat_rate,
            has_withholding=bool(schedule.has_withholding),
            withholding_rate=withholding_rate,
            withholding_code=withholding_code,
            remarks=schedule.remarks,
            line_items=drafts,
            **self._bill_to(schedule),
        )
