"""Calendar arithmetic for recurring billing dates.

Frequencies are modelled as a closed set of variants (``Monthly``,
``Quarterly``, ``Annually``, ``Custom``) and every function here is pure:
no clock, no I/O. Callers pass the reference date explicitly.
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Tuple, Union

from recurbill.db.enums import BillingFrequency, IntervalUnit
from recurbill.errors import ValidationError


@dataclass(frozen=True)
class Monthly:
    months = 1


@dataclass(frozen=True)
class Quarterly:
    months = 3


@dataclass(frozen=True)
class Annually:
    months = 12


@dataclass(frozen=True)
class Custom:
    value: int
    unit: IntervalUnit

    def __post_init__(self):
        if self.value is None or self.value < 1:
            raise ValidationError("Custom interval value must be at least 1")
        if self.unit not in (IntervalUnit.DAYS, IntervalUnit.MONTHS):
            raise ValidationError("Custom interval unit must be DAYS or MONTHS")


Frequency = Union[Monthly, Quarterly, Annually, Custom]

_CALENDAR_VARIANTS = {
    BillingFrequency.MONTHLY: Monthly,
    BillingFrequency.QUARTERLY: Quarterly,
    BillingFrequency.ANNUALLY: Annually,
}


def frequency_of(schedule) -> Frequency:
    """Build the frequency variant for a ScheduledBilling row."""
    kind = BillingFrequency(schedule.frequency)
    if kind is BillingFrequency.CUSTOM:
        unit = schedule.custom_interval_unit
        return Custom(
            value=schedule.custom_interval_value,
            unit=IntervalUnit(unit) if unit is not None else None,
        )
    return _CALENDAR_VARIANTS[kind]()


def anchor_day_of(schedule) -> int:
    """Day of month a schedule is anchored to (falls back to the start date's day)."""
    return schedule.billing_day_of_month or schedule.start_date.day


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_to_anchor(year: int, month: int, anchor_day: int) -> date:
    """Date in ``year``/``month`` on ``anchor_day``, or the month's last day if shorter."""
    return date(year, month, min(anchor_day, last_day_of_month(year, month)))


def add_months(from_date: date, months: int, anchor_day: int) -> date:
    month_index = from_date.year * 12 + (from_date.month - 1) + months
    year, month = divmod(month_index, 12)
    return clamp_to_anchor(year, month + 1, anchor_day)


def _advance_monthly(freq: Monthly, anchor_day: int, from_date: date) -> date:
    return add_months(from_date, 1, anchor_day)


def _advance_quarterly(freq: Quarterly, anchor_day: int, from_date: date) -> date:
    return add_months(from_date, 3, anchor_day)


def _advance_annually(freq: Annually, anchor_day: int, from_date: date) -> date:
    return add_months(from_date, 12, anchor_day)


def _advance_custom(freq: Custom, anchor_day: int, from_date: date) -> date:
    if freq.unit is IntervalUnit.DAYS:
        return from_date + timedelta(days=freq.value)
    return add_months(from_date, freq.value, anchor_day)


_ADVANCE = {
    Monthly: _advance_monthly,
    Quarterly: _advance_quarterly,
    Annually: _advance_annually,
    Custom: _advance_custom,
}


def _validate_anchor(anchor_day: int) -> None:
    if anchor_day is None or not 1 <= anchor_day <= 31:
        raise ValidationError(f"Billing day of month must be between 1 and 31, got {anchor_day}")


def next_occurrence(frequency: Frequency, anchor_day: int, from_date: date) -> date:
    """Next billing date strictly after ``from_date``.

    Calendar frequencies advance by 1/3/12 months and then clamp to the
    anchor day (or the last day of a shorter month). The anchor is applied
    afresh on every call, so a 31st anchor goes Jan 31 -> Feb 28 -> Mar 31.

    Args:
        frequency (Frequency): Monthly(), Quarterly(), Annually() or Custom(value, unit).
        anchor_day (int): Day of month the schedule bills on (1-31).
        from_date (date): Reference date, usually the current next billing date.

    Returns:
        date: A date strictly after ``from_date``.
    """
    _validate_anchor(anchor_day)
    advance = _ADVANCE[type(frequency)]
    result = advance(frequency, anchor_day, from_date)
    while result <= from_date:
        result = advance(frequency, anchor_day, result)
    return result


def first_occurrence(frequency: Frequency, anchor_day: int, not_before: date) -> date:
    """First billing date on or after ``not_before`` for a new schedule."""
    _validate_anchor(anchor_day)
    if isinstance(frequency, Custom) and frequency.unit is IntervalUnit.DAYS:
        return not_before
    candidate = clamp_to_anchor(not_before.year, not_before.month, anchor_day)
    if candidate >= not_before:
        return candidate
    return next_occurrence(frequency, anchor_day, candidate)


def roll_forward(frequency: Frequency, anchor_day: int, current: date, as_of: date) -> date:
    """Advance ``current`` by whole periods until it is on or after ``as_of``."""
    while current < as_of:
        current = next_occurrence(frequency, anchor_day, current)
    return current


def period_bounds(frequency: Frequency, run_date: date) -> Tuple[date, date]:
    """Billing period covered by a run on ``run_date``.

    Calendar frequencies bill the calendar month, quarter or year that
    contains the run date. Custom intervals bill the interval ending on
    the run date.
    """
    if isinstance(frequency, Monthly):
        return (
            date(run_date.year, run_date.month, 1),
            date(run_date.year, run_date.month, last_day_of_month(run_date.year, run_date.month)),
        )
    if isinstance(frequency, Quarterly):
        first_month = (run_date.month - 1) // 3 * 3 + 1
        last_month = first_month + 2
        return (
            date(run_date.year, first_month, 1),
            date(run_date.year, last_month, last_day_of_month(run_date.year, last_month)),
        )
    if isinstance(frequency, Annually):
        return date(run_date.year, 1, 1), date(run_date.year, 12, 31)
    if frequency.unit is IntervalUnit.DAYS:
        return run_date - timedelta(days=frequency.value), run_date
    return add_months(run_date, -frequency.value, run_date.day), run_date


def describe_period(frequency: Frequency, period_start: date, period_end: date) -> str:
    """Human-readable label of a billing period, e.g. 'Jan 2026' or 'Q1 2026'."""
    if isinstance(frequency, Monthly):
        return period_start.strftime("%b %Y")
    if isinstance(frequency, Quarterly):
        return f"Q{(period_start.month - 1) // 3 + 1} {period_start.year}"
    if isinstance(frequency, Annually):
        return str(period_start.year)
    start = f"{period_start.strftime('%b')} {period_start.day}"
    end = f"{period_end.strftime('%b')} {period_end.day}, {period_end.year}"
    return f"{start} to {end}"
