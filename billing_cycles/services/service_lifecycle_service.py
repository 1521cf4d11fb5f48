from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from billing_cycles.domain.models import (
    BillingCycle,
    BillingType,
    Client,
    ClientCreate,
    EventEnvelope,
    Service,
    ServiceActivateRequest,
    ServiceAmountUpdate,
    ServiceCreate,
    Tenant,
    now_utc,
)
from billing_cycles.domain.schedule import advance, as_utc, next_cycle_window, start_of_day
from billing_cycles.domain.state_machine import (
    OPEN_CYCLE_STATES,
    CycleState,
    ServiceState,
    can_service_transition,
    can_transition,
)
from billing_cycles.infra.config import BillingSettings, get_settings
from billing_cycles.infra.db import get_engine
from billing_cycles.infra.events import EventBus, event_bus
from billing_cycles.services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ServiceLifecycleService:
    def __init__(
        self,
        settings: BillingSettings | None = None,
        *,
        clock: Clock = now_utc,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._bus = bus or event_bus

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    @staticmethod
    def _normalize_non_empty(value: str, field_name: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ConflictError(f"{field_name} cannot be empty")
        return normalized

    def _get_scoped_client(self, session: Session, tenant_id: str, client_id: str) -> Client:
        row = session.exec(
            select(Client).where(Client.tenant_id == tenant_id).where(Client.id == client_id)
        ).first()
        if row is None:
            raise NotFoundError("client not found")
        return row

    def _get_scoped_service(self, session: Session, tenant_id: str, service_id: str) -> Service:
        row = session.exec(
            select(Service)
            .where(Service.tenant_id == tenant_id)
            .where(Service.id == service_id)
            .where(col(Service.deleted_at).is_(None))
        ).first()
        if row is None:
            raise NotFoundError("service not found")
        return row

    def _get_scoped_cycle(self, session: Session, tenant_id: str, cycle_id: str) -> BillingCycle:
        row = session.exec(
            select(BillingCycle)
            .where(BillingCycle.tenant_id == tenant_id)
            .where(BillingCycle.id == cycle_id)
        ).first()
        if row is None:
            raise NotFoundError("billing cycle not found")
        return row

    def _open_cycles(self, session: Session, service: Service) -> list[BillingCycle]:
        return list(
            session.exec(
                select(BillingCycle)
                .where(BillingCycle.tenant_id == service.tenant_id)
                .where(BillingCycle.service_id == service.id)
                .where(col(BillingCycle.status).in_(list(OPEN_CYCLE_STATES)))
            ).all()
        )

    @staticmethod
    def _event(
        event_type: str,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        actor_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> EventEnvelope:
        return EventEnvelope(
            event_type=event_type,
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            triggered_by=actor_id,
            payload=payload,
            ts=now,
        )

    def _commit(self, session: Session, events: list[EventEnvelope], conflict: str) -> None:
        for event in events:
            self._bus.record(event, session)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(conflict) from exc
        self._bus.notify(events)

    def _transition(self, service: Service, target: ServiceState) -> None:
        if not can_service_transition(service.status, target):
            raise ConflictError(f"service cannot move from {service.status} to {target}")
        service.status = target

    def create_client(self, tenant_id: str, actor_id: str, payload: ClientCreate) -> Client:
        name = self._normalize_non_empty(payload.name, "name")
        now = self._now()
        with self._session() as session:
            if session.get(Tenant, tenant_id) is None:
                raise NotFoundError("tenant not found")
            client = Client(tenant_id=tenant_id, name=name, email=payload.email, created_at=now)
            session.add(client)
            session.flush()
            event = self._event(
                "client.created",
                tenant_id,
                "client",
                client.id,
                actor_id,
                {"client_id": client.id, "name": name},
                now,
            )
            self._commit(session, [event], "client already exists")
            session.refresh(client)
            return client

    def create_service(self, tenant_id: str, actor_id: str, payload: ServiceCreate) -> Service:
        name = self._normalize_non_empty(payload.name, "name")
        if payload.billing_type == BillingType.RECURRING and payload.frequency is None:
            raise ConflictError("frequency is required for recurring services")
        if payload.billing_type == BillingType.ONE_OFF and payload.frequency is not None:
            raise ConflictError("one-off services cannot have a frequency")

        now = self._now()
        with self._session() as session:
            self._get_scoped_client(session, tenant_id, payload.client_id)
            service = Service(
                tenant_id=tenant_id,
                client_id=payload.client_id,
                name=name,
                description=payload.description,
                amount=payload.amount,
                quantity=payload.quantity,
                billing_type=payload.billing_type,
                frequency=payload.frequency,
                status=ServiceState.DRAFT,
                created_at=now,
                updated_at=now,
            )
            session.add(service)
            session.flush()
            event = self._event(
                "service.created",
                tenant_id,
                "service",
                service.id,
                actor_id,
                {
                    "service_id": service.id,
                    "client_id": service.client_id,
                    "amount": str(service.amount),
                    "billing_type": str(service.billing_type),
                    "frequency": str(service.frequency) if service.frequency else None,
                },
                now,
            )
            self._commit(session, [event], "service already exists")
            session.refresh(service)
            return service

    def activate_service(
        self,
        tenant_id: str,
        actor_id: str,
        service_id: str,
        payload: ServiceActivateRequest | None = None,
    ) -> tuple[Service, BillingCycle]:
        payload = payload or ServiceActivateRequest()
        now = self._now()
        with self._session() as session:
            service = self._get_scoped_service(session, tenant_id, service_id)
            self._transition(service, ServiceState.ACTIVE)
            service.updated_at = now
            events = [
                self._event(
                    "service.activated",
                    tenant_id,
                    "service",
                    service.id,
                    actor_id,
                    {"service_id": service.id},
                    now,
                )
            ]

            open_cycles = self._open_cycles(session, service)
            if open_cycles:
                cycle = open_cycles[0]
            else:
                cycle = self._first_cycle(service, payload, now)
                session.add(cycle)
                service.next_billing_date = cycle.end_date
                session.flush()
                events.append(
                    self._event(
                        "cycle.created",
                        tenant_id,
                        "billing_cycle",
                        cycle.id,
                        actor_id,
                        {
                            "cycle_id": cycle.id,
                            "service_id": service.id,
                            "start_date": cycle.start_date.isoformat(),
                            "end_date": cycle.end_date.isoformat(),
                            "amount": str(cycle.amount),
                        },
                        now,
                    )
                )
            session.add(service)
            self._commit(session, events, "service already has an open billing cycle")
            logger.info("service %s activated, open cycle %s", service.id, cycle.id)
            return service, cycle

    def _first_cycle(
        self,
        service: Service,
        payload: ServiceActivateRequest,
        now: datetime,
    ) -> BillingCycle:
        start = as_utc(payload.start_date) if payload.start_date else start_of_day(now)
        if service.billing_type == BillingType.ONE_OFF:
            end = as_utc(payload.first_cycle_end) if payload.first_cycle_end else start + timedelta(days=1)
        else:
            if service.frequency is None:
                raise ConflictError("frequency is required for recurring services")
            end = advance(start, service.frequency)
        if end <= start:
            raise ConflictError("billing cycle must end after it starts")
        return BillingCycle(
            tenant_id=service.tenant_id,
            service_id=service.id,
            start_date=start,
            end_date=end,
            due_date=end + timedelta(days=self._settings.cycle_due_offset_days),
            amount=service.amount,
            status=CycleState.PENDING,
            created_at=now,
            updated_at=now,
        )

    def pause_service(self, tenant_id: str, actor_id: str, service_id: str) -> Service:
        now = self._now()
        with self._session() as session:
            service = self._get_scoped_service(session, tenant_id, service_id)
            self._transition(service, ServiceState.PAUSED)
            service.updated_at = now
            session.add(service)
            event = self._event(
                "service.paused",
                tenant_id,
                "service",
                service.id,
                actor_id,
                {"service_id": service.id},
                now,
            )
            self._commit(session, [event], "service update conflict")
            return service

    def cancel_service(self, tenant_id: str, actor_id: str, service_id: str) -> Service:
        now = self._now()
        with self._session() as session:
            service = self._get_scoped_service(session, tenant_id, service_id)
            self._transition(service, ServiceState.CANCELLED)
            service.next_billing_date = None
            service.updated_at = now
            session.add(service)
            events = [
                self._event(
                    "service.cancelled",
                    tenant_id,
                    "service",
                    service.id,
                    actor_id,
                    {"service_id": service.id},
                    now,
                )
            ]
            for cycle in self._open_cycles(session, service):
                if cycle.status == CycleState.INVOICING:
                    raise ConflictError("service has a billing cycle being invoiced")
                events.append(self._skip(session, cycle, actor_id, now))
            self._commit(session, events, "service update conflict")
            return service

    def soft_delete_service(self, tenant_id: str, actor_id: str, service_id: str) -> Service:
        now = self._now()
        with self._session() as session:
            service = self._get_scoped_service(session, tenant_id, service_id)
            service.deleted_at = now
            service.updated_at = now
            session.add(service)
            event = self._event(
                "service.deleted",
                tenant_id,
                "service",
                service.id,
                actor_id,
                {"service_id": service.id},
                now,
            )
            self._commit(session, [event], "service update conflict")
            return service

    def skip_cycle(self, tenant_id: str, actor_id: str, cycle_id: str) -> BillingCycle:
        now = self._now()
        with self._session() as session:
            cycle = self._get_scoped_cycle(session, tenant_id, cycle_id)
            events = [self._skip(session, cycle, actor_id, now)]
            session.flush()
            events.extend(self._replace_skipped(session, cycle, actor_id, now))
            self._commit(session, events, "billing cycle update conflict")
            return cycle

    def _replace_skipped(
        self,
        session: Session,
        cycle: BillingCycle,
        actor_id: str,
        now: datetime,
    ) -> list[EventEnvelope]:
        service = session.exec(
            select(Service)
            .where(Service.tenant_id == cycle.tenant_id)
            .where(Service.id == cycle.service_id)
        ).first()
        if service is None:
            raise NotFoundError("service not found")

        frequency = service.frequency
        rolls = (
            service.status == ServiceState.ACTIVE
            and service.billing_type == BillingType.RECURRING
            and service.deleted_at is None
        )
        service.updated_at = now
        session.add(service)
        if frequency is None or not rolls:
            # Nothing is scheduled until the service is activated again.
            service.next_billing_date = None
            return []

        start, end, due = next_cycle_window(
            cycle.end_date,
            frequency,
            due_offset_days=self._settings.cycle_due_offset_days,
        )
        successor = BillingCycle(
            tenant_id=service.tenant_id,
            service_id=service.id,
            previous_cycle_id=cycle.id,
            start_date=start,
            end_date=end,
            due_date=due,
            amount=service.amount,
            status=CycleState.PENDING,
            created_at=now,
            updated_at=now,
        )
        session.add(successor)
        service.next_billing_date = end
        session.flush()
        return [
            self._event(
                "cycle.created",
                service.tenant_id,
                "billing_cycle",
                successor.id,
                actor_id,
                {
                    "cycle_id": successor.id,
                    "service_id": service.id,
                    "previous_cycle_id": cycle.id,
                    "start_date": start.isoformat(),
                    "end_date": end.isoformat(),
                    "amount": str(successor.amount),
                },
                now,
            )
        ]

    def _skip(
        self,
        session: Session,
        cycle: BillingCycle,
        actor_id: str,
        now: datetime,
    ) -> EventEnvelope:
        if cycle.status != CycleState.PENDING or not can_transition(cycle.status, CycleState.SKIPPED):
            raise ConflictError(f"billing cycle cannot be skipped from {cycle.status}")
        cycle.status = CycleState.SKIPPED
        cycle.updated_at = now
        session.add(cycle)
        return self._event(
            "cycle.skipped",
            cycle.tenant_id,
            "billing_cycle",
            cycle.id,
            actor_id,
            {"cycle_id": cycle.id, "service_id": cycle.service_id},
            now,
        )

    def update_service_amount(
        self,
        tenant_id: str,
        actor_id: str,
        service_id: str,
        payload: ServiceAmountUpdate,
    ) -> Service:
        now = self._now()
        with self._session() as session:
            service = self._get_scoped_service(session, tenant_id, service_id)
            if service.status == ServiceState.CANCELLED:
                raise ConflictError("cancelled service cannot be repriced")
            previous = service.amount
            # Existing cycles keep their snapshot; the next rolled cycle picks this up.
            service.amount = payload.amount
            service.updated_at = now
            session.add(service)
            event = self._event(
                "service.amount_changed",
                tenant_id,
                "service",
                service.id,
                actor_id,
                {
                    "service_id": service.id,
                    "previous_amount": str(previous),
                    "amount": str(payload.amount),
                },
                now,
            )
            self._commit(session, [event], "service update conflict")
            return service
