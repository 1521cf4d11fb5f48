from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from billing_cycles.domain.models import BillingFrequency
from billing_cycles.domain.schedule import (
    advance,
    build_invoice_number,
    days_late,
    invoice_due_date,
    is_late_issued,
    next_cycle_window,
)


@pytest.mark.parametrize(
    ("start", "frequency", "expected"),
    [
        (datetime(2026, 1, 1, tzinfo=UTC), BillingFrequency.BIWEEKLY, datetime(2026, 1, 15, tzinfo=UTC)),
        (datetime(2026, 1, 31, tzinfo=UTC), BillingFrequency.MONTHLY, datetime(2026, 2, 28, tzinfo=UTC)),
        (datetime(2028, 1, 31, tzinfo=UTC), BillingFrequency.MONTHLY, datetime(2028, 2, 29, tzinfo=UTC)),
        (datetime(2026, 11, 30, tzinfo=UTC), BillingFrequency.QUARTERLY, datetime(2027, 2, 28, tzinfo=UTC)),
        (datetime(2026, 8, 31, tzinfo=UTC), BillingFrequency.SEMIANNUAL, datetime(2027, 2, 28, tzinfo=UTC)),
        (datetime(2028, 2, 29, tzinfo=UTC), BillingFrequency.YEARLY, datetime(2029, 2, 28, tzinfo=UTC)),
    ],
)
def test_advance_clamps_to_month_end(
    start: datetime,
    frequency: BillingFrequency,
    expected: datetime,
) -> None:
    assert advance(start, frequency) == expected


def test_next_cycle_window_starts_at_previous_end() -> None:
    previous_end = datetime(2026, 1, 31, 9, 30)
    start, end, due = next_cycle_window(previous_end, "monthly", due_offset_days=5)
    assert start == datetime(2026, 1, 31, 9, 30, tzinfo=UTC)
    assert end == datetime(2026, 2, 28, 9, 30, tzinfo=UTC)
    assert due == datetime(2026, 3, 5, 9, 30, tzinfo=UTC)


def test_invoice_due_date_is_fixed_offset_from_issue() -> None:
    issued = datetime(2026, 2, 1, 10, 0, tzinfo=UTC)
    assert invoice_due_date(issued, due_days=30) == issued + timedelta(days=30)


def test_late_issuance_counts_whole_days() -> None:
    cycle_end = datetime(2026, 2, 1, tzinfo=UTC)
    assert days_late(cycle_end + timedelta(days=4, hours=23), cycle_end) == 4
    assert not is_late_issued(cycle_end + timedelta(days=4, hours=23), cycle_end, threshold_days=4)
    assert is_late_issued(cycle_end + timedelta(days=5), cycle_end, threshold_days=4)
    assert not is_late_issued(cycle_end, cycle_end, threshold_days=4)


def test_invoice_number_is_derived_from_cycle() -> None:
    cycle_id = "0f8b2c1e-5d4a-4b7e-9c3f-112233445566"
    number = build_invoice_number(cycle_id, datetime(2026, 2, 1, tzinfo=UTC))
    assert number == "INV-20260201-0F8B2C1E5D4A"
    assert build_invoice_number(cycle_id, datetime(2026, 2, 1, tzinfo=UTC)) == number
