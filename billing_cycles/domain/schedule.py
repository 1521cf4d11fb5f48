"""Calendar arithmetic shared by the cycle generator and service lifecycle.

All helpers work on timezone-aware UTC datetimes. Values coming back from a
store without tzinfo are read as UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta

from dateutil.relativedelta import relativedelta

from billing_cycles.domain.models import BillingFrequency

FREQUENCY_OFFSETS: dict[BillingFrequency, relativedelta] = {
    BillingFrequency.BIWEEKLY: relativedelta(days=14),
    BillingFrequency.MONTHLY: relativedelta(months=1),
    BillingFrequency.QUARTERLY: relativedelta(months=3),
    BillingFrequency.SEMIANNUAL: relativedelta(months=6),
    BillingFrequency.YEARLY: relativedelta(years=1),
}


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def start_of_day(value: datetime) -> datetime:
    normalized = as_utc(value)
    return datetime.combine(normalized.date(), time.min, tzinfo=UTC)


def end_of_day(value: datetime) -> datetime:
    normalized = as_utc(value)
    return datetime.combine(normalized.date(), time.max, tzinfo=UTC)


def advance(start: datetime, frequency: BillingFrequency | str) -> datetime:
    """Return ``start`` moved forward by one billing period.

    Month based periods clamp to the last day of a shorter target month, so a
    monthly period starting Jan 31 ends Feb 28 (or Feb 29 in a leap year).
    """
    offset = FREQUENCY_OFFSETS[BillingFrequency(frequency)]
    return as_utc(start) + offset


def next_cycle_window(
    previous_end: datetime,
    frequency: BillingFrequency | str,
    *,
    due_offset_days: int,
) -> tuple[datetime, datetime, datetime]:
    start = as_utc(previous_end)
    end = advance(start, frequency)
    return start, end, end + timedelta(days=due_offset_days)


def invoice_due_date(issue_date: datetime, *, due_days: int) -> datetime:
    return as_utc(issue_date) + timedelta(days=due_days)


def days_late(issued_at: datetime, cycle_end: datetime) -> int:
    return (as_utc(issued_at) - as_utc(cycle_end)).days


def is_late_issued(issued_at: datetime, cycle_end: datetime, *, threshold_days: int) -> bool:
    return days_late(issued_at, cycle_end) > threshold_days


def build_invoice_number(cycle_id: str, cycle_end: datetime) -> str:
    # Derived from the cycle id so a re-run cannot mint a second number.
    suffix = cycle_id.replace("-", "")[:12].upper()
    return f"INV-{as_utc(cycle_end):%Y%m%d}-{suffix}"
