from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import or_
from sqlmodel import Session, col, select

from billing_cycles.domain.models import (
    BillingCycle,
    Client,
    ClientFinancialRead,
    CycleRead,
    DomainEvent,
    EffectiveInvoiceStatus,
    Invoice,
    InvoiceRead,
    Service,
    ServiceStateRead,
    now_utc,
)
from billing_cycles.domain.schedule import as_utc
from billing_cycles.domain.state_machine import OPEN_CYCLE_STATES
from billing_cycles.domain.status_resolver import (
    derive_financial_state,
    derive_service_health,
    is_invoice_actionable,
    resolve_cycle_status,
    resolve_invoice_status,
    resolve_service_state,
)
from billing_cycles.infra.db import get_engine
from billing_cycles.services.errors import NotFoundError

Clock = Callable[[], datetime]


class LedgerService:
    """Tenant-scoped reads that pair raw rows with their effective status."""

    def __init__(self, *, clock: Clock = now_utc) -> None:
        self._clock = clock

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _get_scoped_client(self, session: Session, tenant_id: str, client_id: str) -> Client:
        row = session.exec(
            select(Client).where(Client.tenant_id == tenant_id).where(Client.id == client_id)
        ).first()
        if row is None:
            raise NotFoundError("client not found")
        return row

    def _get_scoped_service(self, session: Session, tenant_id: str, service_id: str) -> Service:
        row = session.exec(
            select(Service).where(Service.tenant_id == tenant_id).where(Service.id == service_id)
        ).first()
        if row is None:
            raise NotFoundError("service not found")
        return row

    @staticmethod
    def _invoice_read(invoice: Invoice, now: datetime) -> InvoiceRead:
        effective = resolve_invoice_status(invoice, now)
        read = InvoiceRead.model_validate(invoice)
        read.effective_status = effective
        read.actionable = is_invoice_actionable(effective)
        return read

    def list_clients(self, tenant_id: str) -> list[Client]:
        with self._session() as session:
            return list(
                session.exec(
                    select(Client)
                    .where(Client.tenant_id == tenant_id)
                    .order_by(col(Client.created_at).asc())
                ).all()
            )

    def list_services(self, tenant_id: str, *, client_id: str | None = None) -> list[Service]:
        with self._session() as session:
            statement = (
                select(Service)
                .where(Service.tenant_id == tenant_id)
                .where(col(Service.deleted_at).is_(None))
            )
            if client_id is not None:
                statement = statement.where(Service.client_id == client_id)
            return list(session.exec(statement.order_by(col(Service.created_at).asc())).all())

    def list_invoices(
        self,
        tenant_id: str,
        *,
        client_id: str | None = None,
        service_id: str | None = None,
        effective_status: EffectiveInvoiceStatus | None = None,
    ) -> list[InvoiceRead]:
        now = self._now()
        with self._session() as session:
            statement = (
                select(Invoice)
                .where(Invoice.tenant_id == tenant_id)
                .where(col(Invoice.deleted_at).is_(None))
            )
            if client_id is not None:
                statement = statement.where(Invoice.client_id == client_id)
            if service_id is not None:
                statement = statement.where(Invoice.service_id == service_id)
            rows = session.exec(statement.order_by(col(Invoice.issue_date).desc())).all()

        reads = [self._invoice_read(row, now) for row in rows]
        if effective_status is not None:
            reads = [item for item in reads if item.effective_status == effective_status]
        return reads

    def get_invoice(self, tenant_id: str, invoice_id: str) -> InvoiceRead:
        with self._session() as session:
            row = session.exec(
                select(Invoice)
                .where(Invoice.tenant_id == tenant_id)
                .where(Invoice.id == invoice_id)
            ).first()
        if row is None:
            raise NotFoundError("invoice not found")
        return self._invoice_read(row, self._now())

    def list_cycles(self, tenant_id: str, service_id: str) -> list[CycleRead]:
        now = self._now()
        with self._session() as session:
            self._get_scoped_service(session, tenant_id, service_id)
            cycles = session.exec(
                select(BillingCycle)
                .where(BillingCycle.tenant_id == tenant_id)
                .where(BillingCycle.service_id == service_id)
                .order_by(col(BillingCycle.start_date).asc())
            ).all()
            cycle_ids = [cycle.id for cycle in cycles]
            linked_ids = [cycle.invoice_id for cycle in cycles if cycle.invoice_id]
            invoices = session.exec(
                select(Invoice)
                .where(Invoice.tenant_id == tenant_id)
                .where(
                    or_(
                        col(Invoice.id).in_(linked_ids),
                        col(Invoice.cycle_id).in_(cycle_ids),
                    )
                )
            ).all()
        by_id = {row.id: row for row in invoices}
        by_cycle = {row.cycle_id: row for row in invoices if row.cycle_id}

        reads: list[CycleRead] = []
        for cycle in cycles:
            # The cycle's own link wins over an invoice that merely points back at it.
            invoice = by_id.get(cycle.invoice_id) if cycle.invoice_id else None
            read = CycleRead.model_validate(cycle)
            read.effective_status = resolve_cycle_status(
                cycle,
                invoice or by_cycle.get(cycle.id),
                now,
            )
            reads.append(read)
        return reads

    def get_service_state(self, tenant_id: str, service_id: str) -> ServiceStateRead:
        now = self._now()
        with self._session() as session:
            service = self._get_scoped_service(session, tenant_id, service_id)
            invoices = session.exec(
                select(Invoice)
                .where(Invoice.tenant_id == tenant_id)
                .where(Invoice.service_id == service_id)
            ).all()
            open_cycle = session.exec(
                select(BillingCycle)
                .where(BillingCycle.tenant_id == tenant_id)
                .where(BillingCycle.service_id == service_id)
                .where(col(BillingCycle.status).in_(list(OPEN_CYCLE_STATES)))
            ).first()

        return ServiceStateRead(
            service_id=service.id,
            raw_status=service.status,
            effective_status=resolve_service_state(service),
            health=derive_service_health(service, invoices, now),
            next_billing_date=service.next_billing_date,
            open_cycle_id=open_cycle.id if open_cycle else None,
        )

    def get_client_financials(self, tenant_id: str, client_id: str) -> ClientFinancialRead:
        with self._session() as session:
            self._get_scoped_client(session, tenant_id, client_id)
            invoices = session.exec(
                select(Invoice)
                .where(Invoice.tenant_id == tenant_id)
                .where(Invoice.client_id == client_id)
            ).all()
        return ClientFinancialRead(
            client_id=client_id,
            standing=derive_financial_state(invoices, self._now()),
        )

    def list_entity_events(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
    ) -> list[DomainEvent]:
        with self._session() as session:
            return list(
                session.exec(
                    select(DomainEvent)
                    .where(DomainEvent.tenant_id == tenant_id)
                    .where(DomainEvent.entity_type == entity_type)
                    .where(DomainEvent.entity_id == entity_id)
                    .order_by(col(DomainEvent.created_at).asc())
                ).all()
            )
