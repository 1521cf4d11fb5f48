from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from billing_cycles.domain.models import (
    BillingCycle,
    BillingFrequency,
    BillingRunResult,
    BillingType,
    Client,
    EventEnvelope,
    Invoice,
    InvoiceStatus,
    NotificationEvent,
    NotificationType,
    Service,
    now_utc,
)
from billing_cycles.domain.schedule import (
    as_utc,
    build_invoice_number,
    invoice_due_date,
    is_late_issued,
    next_cycle_window,
)
from billing_cycles.domain.state_machine import CycleState, ServiceState, can_transition
from billing_cycles.infra import redis_state
from billing_cycles.infra.config import BillingSettings, get_settings
from billing_cycles.infra.db import get_engine
from billing_cycles.infra.events import EventBus, event_bus
from billing_cycles.services.errors import (
    DataGapError,
    PersistenceError,
    TenantIntegrityError,
    TopLevelError,
)
from billing_cycles.services.notification_service import (
    NotificationDispatcher,
    OutboxNotificationDispatcher,
    dispatch_quietly,
)
from billing_cycles.services.reminder_service import ReminderService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

GENERATOR_ACTOR = "system:cycle_generator"
RUN_LOCK_KEY = "billing:cycle-generator:run-lock"
CENT = Decimal("0.01")


@dataclass(frozen=True)
class BillableObligation:
    """Snapshot of everything needed to bill one cycle, keyed by cycle id."""

    cycle_id: str
    tenant_id: str
    client_id: str
    service_id: str
    service_name: str
    period_start: datetime
    period_end: datetime
    amount: Decimal
    quantity: int
    billing_type: BillingType
    frequency: BillingFrequency | None
    service_status: ServiceState

    @classmethod
    def from_rows(cls, cycle: BillingCycle, service: Service) -> BillableObligation:
        return cls(
            cycle_id=cycle.id,
            tenant_id=service.tenant_id,
            client_id=service.client_id,
            service_id=service.id,
            service_name=service.name,
            period_start=as_utc(cycle.start_date),
            period_end=as_utc(cycle.end_date),
            amount=Decimal(cycle.amount),
            quantity=max(service.quantity or 1, 1),
            billing_type=BillingType(service.billing_type),
            frequency=BillingFrequency(service.frequency) if service.frequency else None,
            service_status=ServiceState(service.status),
        )

    @property
    def rolls_forward(self) -> bool:
        return (
            self.billing_type == BillingType.RECURRING
            and self.frequency is not None
            and self.service_status == ServiceState.ACTIVE
        )

    def line_items(self) -> list[dict[str, Any]]:
        unit_price = (self.amount / self.quantity).quantize(CENT)
        return [
            {
                "description": (
                    f"{self.service_name} "
                    f"({self.period_start:%Y-%m-%d} - {self.period_end:%Y-%m-%d})"
                ),
                "quantity": self.quantity,
                "unit_price": str(unit_price),
                "amount": str(self.amount.quantize(CENT)),
            }
        ]


def line_items_total(items: list[dict[str, Any]]) -> Decimal:
    return sum((Decimal(item["amount"]) for item in items), Decimal("0"))


class CycleGenerator:
    """Turns elapsed billing cycles into invoices and rolls schedules forward.

    One ``run`` is one batch pass across every tenant. Each cycle is its own
    unit of work: it is claimed with a compare-and-swap (``pending`` to
    ``invoicing``), billed and rolled forward in a single transaction, and
    released back to ``pending`` if anything goes wrong. A failing cycle is
    reported in the result, counted in ``attempts`` so it queues behind
    fresh cycles, and never stops the batch.
    """

    def __init__(
        self,
        settings: BillingSettings | None = None,
        *,
        clock: Clock = now_utc,
        dispatcher: NotificationDispatcher | None = None,
        bus: EventBus | None = None,
        reminders: ReminderService | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._dispatcher = dispatcher or OutboxNotificationDispatcher()
        self._bus = bus or event_bus
        self._reminders = reminders

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _lease_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self._settings.claim_lease_seconds)

    def _claimable(self, now: datetime) -> Any:
        return sa.or_(
            col(BillingCycle.status) == CycleState.PENDING,
            sa.and_(
                col(BillingCycle.status) == CycleState.INVOICING,
                col(BillingCycle.claimed_at) < self._lease_cutoff(now),
            ),
        )

    def run(self) -> BillingRunResult:
        started = time.monotonic()
        now = as_utc(self._clock())
        run_id = uuid4().hex
        result = BillingRunResult()
        logger.info("billing run %s started at %s", run_id, now.isoformat())

        lock_state = self._acquire_run_lock(run_id)
        if lock_state is False:
            result.warnings.append("another billing run holds the run lock")
            result.duration_ms = int((time.monotonic() - started) * 1000)
            logger.info("billing run %s skipped: run lock held", run_id)
            return result

        try:
            attempted: set[str] = set()
            for cycle_id in self._fetch_reconcilable_cycle_ids(now):
                attempted.add(cycle_id)
                result.processed += 1
                self._process_cycle(cycle_id, now, run_id, result, reconciling=True)

            for cycle_id in self._fetch_due_cycle_ids(now):
                if cycle_id in attempted:
                    continue
                result.processed += 1
                self._process_cycle(cycle_id, now, run_id, result)

            if self._reminders is not None:
                self._reminders.run(result, now=now)
        finally:
            if lock_state:
                self._release_run_lock(run_id)

        result.success = True
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "billing run %s finished processed=%s completed=%s failed=%s skipped=%s reconciled=%s",
            run_id,
            result.processed,
            result.completed,
            result.failed,
            result.skipped,
            result.reconciled,
        )
        return result

    def _acquire_run_lock(self, run_id: str) -> bool | None:
        try:
            return redis_state.acquire_lock(
                RUN_LOCK_KEY,
                run_id,
                self._settings.run_lock_ttl_seconds,
            )
        except RedisError as exc:
            # The per-cycle claim still prevents double billing without the lock.
            logger.warning("billing run lock unavailable, continuing without it: %s", exc)
            return None

    def _release_run_lock(self, run_id: str) -> None:
        try:
            redis_state.release_lock(RUN_LOCK_KEY, run_id)
        except RedisError as exc:
            logger.warning("failed to release billing run lock: %s", exc)

    def _fetch_due_cycle_ids(self, now: datetime) -> list[str]:
        statement = (
            select(BillingCycle.id)
            .outerjoin(Service, col(Service.id) == col(BillingCycle.service_id))
            .where(self._claimable(now))
            .where(col(BillingCycle.end_date) <= now)
            .where(col(Service.deleted_at).is_(None))
            # Cycles that keep failing fall behind fresh work instead of starving it.
            .order_by(
                col(BillingCycle.attempts).asc(),
                col(BillingCycle.end_date).asc(),
                col(BillingCycle.id).asc(),
            )
            .limit(self._settings.batch_size)
        )
        try:
            with self._session() as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            logger.exception("failed to fetch due billing cycles")
            raise TopLevelError(f"failed to fetch due billing cycles: {exc}") from exc

    def _fetch_reconcilable_cycle_ids(self, now: datetime) -> list[str]:
        # Cycles whose invoice exists but whose own status never caught up.
        statement = (
            select(BillingCycle.id)
            .join(
                Invoice,
                sa.and_(
                    col(Invoice.cycle_id) == col(BillingCycle.id),
                    col(Invoice.tenant_id) == col(BillingCycle.tenant_id),
                ),
            )
            .where(self._claimable(now))
            .order_by(col(BillingCycle.attempts).asc(), col(BillingCycle.end_date).asc())
            .limit(self._settings.batch_size)
        )
        try:
            with self._session() as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            logger.exception("failed to fetch cycles pending reconciliation")
            raise TopLevelError(f"failed to fetch cycles pending reconciliation: {exc}") from exc

    def _claim(self, cycle_id: str, token: str, now: datetime) -> bool:
        with self._session() as session:
            outcome = session.execute(
                sa.update(BillingCycle)
                .where(col(BillingCycle.id) == cycle_id)
                .where(self._claimable(now))
                .values(
                    status=CycleState.INVOICING,
                    claim_token=token,
                    claimed_at=now,
                    updated_at=now,
                )
            )
            session.commit()
            return int(getattr(outcome, "rowcount", 0) or 0) == 1

    def _release(self, cycle_id: str, token: str, now: datetime) -> None:
        try:
            with self._session() as session:
                session.execute(
                    sa.update(BillingCycle)
                    .where(col(BillingCycle.id) == cycle_id)
                    .where(col(BillingCycle.claim_token) == token)
                    .where(col(BillingCycle.status) == CycleState.INVOICING)
                    .values(
                        status=CycleState.PENDING,
                        claim_token=None,
                        claimed_at=None,
                        attempts=col(BillingCycle.attempts) + 1,
                        last_attempt_at=now,
                        updated_at=now,
                    )
                )
                session.commit()
        except SQLAlchemyError:
            # The claim lease expires on its own and the next run picks the cycle up.
            logger.exception("failed to release claim on cycle %s", cycle_id)

    def _process_cycle(
        self,
        cycle_id: str,
        now: datetime,
        run_id: str,
        result: BillingRunResult,
        *,
        reconciling: bool = False,
    ) -> None:
        token = uuid4().hex
        try:
            claimed = self._claim(cycle_id, token, now)
        except SQLAlchemyError as exc:
            logger.exception("failed to claim cycle %s", cycle_id)
            result.failed += 1
            result.errors.append(f"cycle {cycle_id}: claim failed: {exc}")
            return
        if not claimed:
            result.skipped += 1
            result.warnings.append(f"cycle {cycle_id}: already claimed by another run")
            return

        try:
            events, notification = self._bill_cycle(
                cycle_id,
                token,
                now,
                run_id,
                reconciling=reconciling,
            )
        except DataGapError as exc:
            self._release(cycle_id, token, now)
            logger.warning("skipping cycle %s: %s", cycle_id, exc)
            result.skipped += 1
            result.warnings.append(f"cycle {cycle_id}: {exc}")
            return
        except TenantIntegrityError as exc:
            self._release(cycle_id, token, now)
            logger.error("tenant integrity violation on cycle %s: %s", cycle_id, exc)
            result.failed += 1
            result.errors.append(f"cycle {cycle_id}: {exc}")
            return
        except Exception as exc:
            self._release(cycle_id, token, now)
            logger.exception("failed to bill cycle %s", cycle_id)
            result.failed += 1
            result.errors.append(f"cycle {cycle_id}: {exc}")
            return

        if reconciling:
            result.reconciled += 1
        else:
            result.completed += 1
        self._bus.notify(events)
        if notification is not None:
            dispatch_quietly(self._dispatcher, notification)

    def _bill_cycle(
        self,
        cycle_id: str,
        token: str,
        now: datetime,
        run_id: str,
        *,
        reconciling: bool,
    ) -> tuple[list[EventEnvelope], NotificationEvent | None]:
        with self._session() as session:
            try:
                cycle = session.exec(
                    select(BillingCycle)
                    .where(BillingCycle.id == cycle_id)
                    .where(BillingCycle.claim_token == token)
                ).first()
                if cycle is None:
                    raise PersistenceError("claimed cycle is no longer held by this run")
                obligation = self._load_obligation(session, cycle)

                events: list[EventEnvelope] = []
                invoice = session.exec(
                    select(Invoice)
                    .where(Invoice.tenant_id == obligation.tenant_id)
                    .where(Invoice.cycle_id == cycle.id)
                ).first()
                created = invoice is None
                if invoice is None:
                    invoice = self._build_invoice(obligation, now)
                    session.add(invoice)
                    session.flush()
                    events.append(self._invoice_created_event(invoice, obligation, now, run_id))
                else:
                    logger.info("cycle %s already has invoice %s, linking it", cycle.id, invoice.id)

                if not can_transition(cycle.status, CycleState.INVOICED):
                    raise PersistenceError(f"cycle cannot move from {cycle.status} to invoiced")
                cycle.status = CycleState.INVOICED
                cycle.invoice_id = invoice.id
                cycle.claim_token = None
                cycle.claimed_at = None
                cycle.updated_at = now
                session.add(cycle)
                session.flush()
                events.append(
                    self._event(
                        "cycle.reconciled" if reconciling else "cycle.invoiced",
                        obligation.tenant_id,
                        "billing_cycle",
                        cycle.id,
                        {
                            "cycle_id": cycle.id,
                            "invoice_id": invoice.id,
                            "service_id": obligation.service_id,
                        },
                        now,
                        run_id,
                    )
                )

                events.extend(self._roll_forward(session, obligation, cycle, now, run_id))
                for event in events:
                    self._bus.record(event, session)
                session.commit()
            except (DataGapError, TenantIntegrityError, PersistenceError):
                session.rollback()
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"failed to persist invoice for cycle: {exc}") from exc

        notification = self._invoice_notification(invoice, obligation, now) if created else None
        return events, notification

    def _load_obligation(self, session: Session, cycle: BillingCycle) -> BillableObligation:
        service = session.get(Service, cycle.service_id)
        if service is None:
            raise DataGapError(f"service {cycle.service_id} not found")
        if service.deleted_at is not None:
            raise DataGapError(f"service {service.id} is deleted")
        if service.tenant_id != cycle.tenant_id:
            raise TenantIntegrityError(
                f"cycle tenant {cycle.tenant_id} does not match service tenant {service.tenant_id}"
            )
        client = session.get(Client, service.client_id)
        if client is None:
            raise DataGapError(f"client {service.client_id} not found")
        if client.tenant_id != service.tenant_id:
            raise TenantIntegrityError(
                f"client tenant {client.tenant_id} does not match service tenant {service.tenant_id}"
            )
        return BillableObligation.from_rows(cycle, service)

    def _build_invoice(self, obligation: BillableObligation, now: datetime) -> Invoice:
        items = obligation.line_items()
        return Invoice(
            # Tenant always comes from the service row, never from the caller.
            tenant_id=obligation.tenant_id,
            client_id=obligation.client_id,
            service_id=obligation.service_id,
            cycle_id=obligation.cycle_id,
            number=build_invoice_number(obligation.cycle_id, obligation.period_end),
            issue_date=now,
            due_date=invoice_due_date(now, due_days=self._settings.invoice_due_days),
            status=InvoiceStatus.PENDING,
            total=line_items_total(items),
            currency=self._settings.currency,
            items=items,
            is_late_issued=is_late_issued(
                now,
                obligation.period_end,
                threshold_days=self._settings.late_issue_threshold_days,
            ),
            created_by=GENERATOR_ACTOR,
            created_at=now,
            updated_at=now,
        )

    def _roll_forward(
        self,
        session: Session,
        obligation: BillableObligation,
        cycle: BillingCycle,
        now: datetime,
        run_id: str,
    ) -> list[EventEnvelope]:
        service = session.get(Service, obligation.service_id)
        if service is None:
            raise DataGapError(f"service {obligation.service_id} not found")

        if obligation.billing_type == BillingType.ONE_OFF:
            service.next_billing_date = None
            service.updated_at = now
            session.add(service)
            return []
        if obligation.frequency is None or not obligation.rolls_forward:
            return []

        successor = session.exec(
            select(BillingCycle).where(BillingCycle.previous_cycle_id == cycle.id)
        ).first()
        if successor is not None:
            return []

        start, end, due = next_cycle_window(
            cycle.end_date,
            obligation.frequency,
            due_offset_days=self._settings.cycle_due_offset_days,
        )
        successor = BillingCycle(
            tenant_id=service.tenant_id,
            service_id=service.id,
            previous_cycle_id=cycle.id,
            start_date=start,
            end_date=end,
            due_date=due,
            # Snapshot of the current price; earlier cycles keep theirs.
            amount=Decimal(service.amount),
            status=CycleState.PENDING,
            created_at=now,
            updated_at=now,
        )
        session.add(successor)
        service.next_billing_date = end
        service.updated_at = now
        session.add(service)
        session.flush()
        return [
            self._event(
                "cycle.created",
                service.tenant_id,
                "billing_cycle",
                successor.id,
                {
                    "cycle_id": successor.id,
                    "service_id": service.id,
                    "previous_cycle_id": cycle.id,
                    "start_date": start.isoformat(),
                    "end_date": end.isoformat(),
                    "amount": str(successor.amount),
                },
                now,
                run_id,
            )
        ]

    def _invoice_created_event(
        self,
        invoice: Invoice,
        obligation: BillableObligation,
        now: datetime,
        run_id: str,
    ) -> EventEnvelope:
        return self._event(
            "invoice.created",
            invoice.tenant_id,
            "invoice",
            invoice.id,
            {
                "invoice_id": invoice.id,
                "number": invoice.number,
                "cycle_id": obligation.cycle_id,
                "service_id": obligation.service_id,
                "client_id": obligation.client_id,
                "total": str(invoice.total),
                "due_date": as_utc(invoice.due_date).isoformat() if invoice.due_date else None,
                "is_late_issued": invoice.is_late_issued,
            },
            now,
            run_id,
        )

    @staticmethod
    def _event(
        event_type: str,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any],
        now: datetime,
        run_id: str,
    ) -> EventEnvelope:
        return EventEnvelope(
            event_type=event_type,
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
            ts=now,
            triggered_by=GENERATOR_ACTOR,
            correlation_id=run_id,
        )

    @staticmethod
    def _invoice_notification(
        invoice: Invoice,
        obligation: BillableObligation,
        now: datetime,
    ) -> NotificationEvent:
        return NotificationEvent(
            type=NotificationType.INVOICE_GENERATED,
            occurred_at=now,
            tenant_id=invoice.tenant_id,
            client_id=invoice.client_id,
            invoice_id=invoice.id,
            title="Invoice generated",
            message=(
                f"Invoice {invoice.number} for {obligation.service_name} was generated. "
                f"Amount: {invoice.total}"
            ),
            action_reference=f"/invoices/{invoice.id}",
        )
