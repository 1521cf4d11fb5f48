"""Effective-status rules for invoices, billing cycles and services.

Everything here is a pure function of stored fields and a point in time.
Pass ``now`` explicitly to pin the clock; it defaults to the current UTC time.
Nothing in this module reads from or writes to the datastore.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from billing_cycles.domain.models import (
    BillingCycle,
    EffectiveCycleStatus,
    EffectiveInvoiceStatus,
    EffectiveServiceStatus,
    FinancialStanding,
    Invoice,
    InvoiceStatus,
    Service,
    ServiceHealth,
    now_utc,
)
from billing_cycles.domain.schedule import as_utc, end_of_day, start_of_day
from billing_cycles.domain.state_machine import CycleState, ServiceState

ACTIONABLE_INVOICE_STATUSES = frozenset(
    {EffectiveInvoiceStatus.PENDING, EffectiveInvoiceStatus.OVERDUE}
)


def _now(now: datetime | None) -> datetime:
    return as_utc(now) if now is not None else now_utc()


def _is_deleted(row: object) -> bool:
    return getattr(row, "deleted_at", None) is not None


def resolve_invoice_status(invoice: Invoice, now: datetime | None = None) -> EffectiveInvoiceStatus:
    raw = invoice.status
    if raw is None or raw == "":
        return EffectiveInvoiceStatus.DRAFT
    if raw == InvoiceStatus.PAID:
        return EffectiveInvoiceStatus.PAID
    if raw in (InvoiceStatus.VOID, InvoiceStatus.CANCELLED):
        return EffectiveInvoiceStatus.VOID
    if raw == InvoiceStatus.OVERDUE:
        return EffectiveInvoiceStatus.OVERDUE

    # pending, draft and unknown raw values are judged by the due date.
    if invoice.due_date is None:
        return EffectiveInvoiceStatus.PENDING
    if end_of_day(invoice.due_date) < _now(now):
        return EffectiveInvoiceStatus.OVERDUE
    return EffectiveInvoiceStatus.PENDING


def is_invoice_actionable(status: EffectiveInvoiceStatus | str) -> bool:
    return status in ACTIONABLE_INVOICE_STATUSES


def resolve_cycle_status(
    cycle: BillingCycle,
    invoice: Invoice | None = None,
    now: datetime | None = None,
) -> EffectiveCycleStatus:
    """Classify a billing cycle.

    A cycle with an invoice counts as ``completed`` whether or not the invoice
    has been paid; only a voided invoice turns it into ``skipped``. A cycle
    whose window has elapsed but that has not been invoiced yet stays
    ``running``.
    """
    if cycle.status == CycleState.SKIPPED:
        return EffectiveCycleStatus.SKIPPED

    if invoice is not None:
        invoice_status = resolve_invoice_status(invoice, now)
        if invoice_status == EffectiveInvoiceStatus.VOID:
            return EffectiveCycleStatus.SKIPPED
        return EffectiveCycleStatus.COMPLETED

    if cycle.status == CycleState.INVOICED:
        return EffectiveCycleStatus.COMPLETED

    current = _now(now)
    if current < start_of_day(cycle.start_date):
        return EffectiveCycleStatus.FUTURE
    return EffectiveCycleStatus.RUNNING


def resolve_service_state(service: Service) -> EffectiveServiceStatus:
    raw = service.status
    if raw == ServiceState.ACTIVE:
        return EffectiveServiceStatus.ACTIVE
    if raw == ServiceState.PAUSED:
        return EffectiveServiceStatus.PAUSED
    if raw in (ServiceState.CANCELLED, ServiceState.COMPLETED):
        return EffectiveServiceStatus.CANCELLED
    return EffectiveServiceStatus.DRAFT


def derive_service_health(
    service: Service,
    invoices: Iterable[Invoice],
    now: datetime | None = None,
) -> ServiceHealth:
    state = resolve_service_state(service)
    if state == EffectiveServiceStatus.CANCELLED:
        return ServiceHealth.CHURNED
    if state in (EffectiveServiceStatus.DRAFT, EffectiveServiceStatus.PAUSED):
        return ServiceHealth.INVARIANT

    current = _now(now)
    for invoice in invoices:
        if _is_deleted(invoice):
            continue
        if resolve_invoice_status(invoice, current) == EffectiveInvoiceStatus.OVERDUE:
            return ServiceHealth.AT_RISK
    return ServiceHealth.HEALTHY


def derive_financial_state(
    invoices: Iterable[Invoice],
    now: datetime | None = None,
) -> FinancialStanding:
    current = _now(now)
    total_debt = Decimal("0")
    future_debt = Decimal("0")
    overdue_count = 0
    for invoice in invoices:
        if _is_deleted(invoice):
            continue
        status = resolve_invoice_status(invoice, current)
        total = Decimal(invoice.total or 0)
        if status == EffectiveInvoiceStatus.OVERDUE:
            total_debt += total
            overdue_count += 1
        elif status == EffectiveInvoiceStatus.PENDING:
            future_debt += total
    return FinancialStanding(
        total_debt=total_debt,
        future_debt=future_debt,
        overdue_count=overdue_count,
    )
