from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, col, create_engine, select

from billing_cycles.domain.models import (
    BillingCycle,
    BillingFrequency,
    BillingType,
    ClientCreate,
    DomainEvent,
    EffectiveCycleStatus,
    Invoice,
    InvoiceStatus,
    Service,
    ServiceActivateRequest,
    ServiceAmountUpdate,
    ServiceCreate,
    Tenant,
)
from billing_cycles.domain.schedule import as_utc
from billing_cycles.domain.state_machine import CycleState, ServiceState
from billing_cycles.infra import db, events, redis_state
from billing_cycles.infra.config import BillingSettings
from billing_cycles.services.cycle_generator import CycleGenerator
from billing_cycles.services.errors import ConflictError, NotFoundError
from billing_cycles.services.ledger_service import LedgerService
from billing_cycles.services.reminder_service import ReminderService
from billing_cycles.services.service_lifecycle_service import ServiceLifecycleService

NOW = datetime(2026, 1, 10, 15, 30, tzinfo=UTC)
SETTINGS = BillingSettings()


def _redis_down() -> None:
    raise RedisConnectionError("redis not used in lifecycle tests")


@pytest.fixture()
def lifecycle_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'lifecycle_test.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    monkeypatch.setattr(redis_state, "get_redis", _redis_down)
    yield test_engine
    test_engine.dispose()


def _tenant(test_engine: Engine, name: str = "tenant-a") -> str:
    with Session(test_engine) as session:
        tenant = Tenant(name=name)
        session.add(tenant)
        session.commit()
        return tenant.id


def _lifecycle() -> ServiceLifecycleService:
    return ServiceLifecycleService(SETTINGS, clock=lambda: NOW)


def _recurring_service(
    lifecycle: ServiceLifecycleService,
    tenant_id: str,
    frequency: BillingFrequency = BillingFrequency.MONTHLY,
) -> str:
    client = lifecycle.create_client(tenant_id, "operator", ClientCreate(name="Acme"))
    service = lifecycle.create_service(
        tenant_id,
        "operator",
        ServiceCreate(
            client_id=client.id,
            name="Support plan",
            amount=Decimal("250000"),
            billing_type=BillingType.RECURRING,
            frequency=frequency,
        ),
    )
    return service.id


def _open_cycles(test_engine: Engine, service_id: str) -> list[BillingCycle]:
    with Session(test_engine) as session:
        return list(
            session.exec(
                select(BillingCycle)
                .where(BillingCycle.service_id == service_id)
                .where(col(BillingCycle.status).in_([CycleState.PENDING, CycleState.INVOICING]))
            ).all()
        )


def test_create_service_starts_in_draft(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)

    assert _open_cycles(lifecycle_engine, service_id) == []
    with Session(lifecycle_engine) as session:
        stored = session.get(Service, service_id)
        assert stored is not None
        assert stored.status == ServiceState.DRAFT
        event_types = {row.event_type for row in session.exec(select(DomainEvent)).all()}
    assert event_types == {"client.created", "service.created"}


def test_recurring_service_needs_frequency(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    client = lifecycle.create_client(tenant_id, "operator", ClientCreate(name="Acme"))

    with pytest.raises(ConflictError):
        lifecycle.create_service(
            tenant_id,
            "operator",
            ServiceCreate(client_id=client.id, name="No frequency", amount=Decimal("10")),
        )


def test_service_cannot_use_client_of_another_tenant(lifecycle_engine: Engine) -> None:
    tenant_a = _tenant(lifecycle_engine, "tenant-a")
    tenant_b = _tenant(lifecycle_engine, "tenant-b")
    lifecycle = _lifecycle()
    client_b = lifecycle.create_client(tenant_b, "operator", ClientCreate(name="Other"))

    with pytest.raises(NotFoundError):
        lifecycle.create_service(
            tenant_a,
            "operator",
            ServiceCreate(
                client_id=client_b.id,
                name="Leaky",
                amount=Decimal("10"),
                frequency=BillingFrequency.MONTHLY,
            ),
        )


def test_activation_opens_first_cycle(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)

    service, cycle = lifecycle.activate_service(tenant_id, "operator", service_id)

    assert service.status == ServiceState.ACTIVE
    assert as_utc(cycle.start_date) == datetime(2026, 1, 10, tzinfo=UTC)
    assert as_utc(cycle.end_date) == datetime(2026, 2, 10, tzinfo=UTC)
    assert as_utc(cycle.due_date) == datetime(2026, 2, 15, tzinfo=UTC)  # type: ignore[arg-type]
    assert cycle.amount == Decimal("250000")
    assert as_utc(service.next_billing_date) == datetime(2026, 2, 10, tzinfo=UTC)  # type: ignore[arg-type]
    assert len(_open_cycles(lifecycle_engine, service_id)) == 1


def test_one_off_activation_defaults_to_single_day(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    client = lifecycle.create_client(tenant_id, "operator", ClientCreate(name="Acme"))
    service = lifecycle.create_service(
        tenant_id,
        "operator",
        ServiceCreate(
            client_id=client.id,
            name="Setup fee",
            amount=Decimal("50000"),
            billing_type=BillingType.ONE_OFF,
        ),
    )

    _, cycle = lifecycle.activate_service(
        tenant_id,
        "operator",
        service.id,
        ServiceActivateRequest(start_date=datetime(2026, 1, 5, tzinfo=UTC)),
    )

    assert as_utc(cycle.end_date) == datetime(2026, 1, 6, tzinfo=UTC)


def test_pause_and_resume_keep_single_open_cycle(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    _, first = lifecycle.activate_service(tenant_id, "operator", service_id)

    paused = lifecycle.pause_service(tenant_id, "operator", service_id)
    assert paused.status == ServiceState.PAUSED

    _, resumed = lifecycle.activate_service(tenant_id, "operator", service_id)
    assert resumed.id == first.id
    assert len(_open_cycles(lifecycle_engine, service_id)) == 1


def test_cancel_skips_open_cycles(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    _, cycle = lifecycle.activate_service(tenant_id, "operator", service_id)

    cancelled = lifecycle.cancel_service(tenant_id, "operator", service_id)

    assert cancelled.status == ServiceState.CANCELLED
    assert cancelled.next_billing_date is None
    assert _open_cycles(lifecycle_engine, service_id) == []
    with Session(lifecycle_engine) as session:
        stored = session.get(BillingCycle, cycle.id)
        assert stored is not None
        assert stored.status == CycleState.SKIPPED

    with pytest.raises(ConflictError):
        lifecycle.activate_service(tenant_id, "operator", service_id)


def test_skip_cycle_only_from_pending(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    _, cycle = lifecycle.activate_service(tenant_id, "operator", service_id)

    skipped = lifecycle.skip_cycle(tenant_id, "operator", cycle.id)
    assert skipped.status == CycleState.SKIPPED

    with pytest.raises(ConflictError):
        lifecycle.skip_cycle(tenant_id, "operator", cycle.id)


def test_skip_cycle_is_tenant_scoped(lifecycle_engine: Engine) -> None:
    tenant_a = _tenant(lifecycle_engine, "tenant-a")
    tenant_b = _tenant(lifecycle_engine, "tenant-b")
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_a)
    _, cycle = lifecycle.activate_service(tenant_a, "operator", service_id)

    with pytest.raises(NotFoundError):
        lifecycle.skip_cycle(tenant_b, "operator", cycle.id)


def test_soft_deleted_service_is_hidden_and_never_billed(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    lifecycle.activate_service(tenant_id, "operator", service_id)

    deleted = lifecycle.soft_delete_service(tenant_id, "operator", service_id)
    assert deleted.deleted_at is not None

    with pytest.raises(NotFoundError):
        lifecycle.pause_service(tenant_id, "operator", service_id)

    result = CycleGenerator(SETTINGS, clock=lambda: NOW + timedelta(days=90)).run()
    assert result.processed == 0


def test_amount_update_applies_to_future_cycles_only(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    _, cycle = lifecycle.activate_service(tenant_id, "operator", service_id)

    updated = lifecycle.update_service_amount(
        tenant_id,
        "operator",
        service_id,
        ServiceAmountUpdate(amount=Decimal("300000")),
    )

    assert updated.amount == Decimal("300000")
    with Session(lifecycle_engine) as session:
        stored = session.get(BillingCycle, cycle.id)
        assert stored is not None
        assert stored.amount == Decimal("250000")


def test_skipping_active_cycle_rolls_the_schedule_forward(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    _, cycle = lifecycle.activate_service(tenant_id, "operator", service_id)
    assert as_utc(cycle.end_date) == datetime(2026, 2, 10, tzinfo=UTC)

    lifecycle.skip_cycle(tenant_id, "operator", cycle.id)

    (successor,) = _open_cycles(lifecycle_engine, service_id)
    assert successor.previous_cycle_id == cycle.id
    assert as_utc(successor.start_date) == datetime(2026, 2, 10, tzinfo=UTC)
    assert as_utc(successor.end_date) == datetime(2026, 3, 10, tzinfo=UTC)
    with Session(lifecycle_engine) as session:
        service = session.get(Service, service_id)
        assert service is not None
        assert as_utc(service.next_billing_date) == datetime(2026, 3, 10, tzinfo=UTC)  # type: ignore[arg-type]
        event_types = [
            row.event_type
            for row in session.exec(
                select(DomainEvent).where(DomainEvent.entity_id == successor.id)
            ).all()
        ]
    assert event_types == ["cycle.created"]

    # No reminder for the skipped charge, one for the replacement.
    reminders = ReminderService(SETTINGS)
    assert reminders.send_payment_reminders(datetime(2026, 2, 8, 12, tzinfo=UTC)) == 0
    assert reminders.send_payment_reminders(datetime(2026, 3, 8, 12, tzinfo=UTC)) == 1

    result = CycleGenerator(SETTINGS, clock=lambda: datetime(2026, 3, 10, 1, tzinfo=UTC)).run()
    assert result.completed == 1
    with Session(lifecycle_engine) as session:
        invoice = session.exec(select(Invoice).where(Invoice.service_id == service_id)).one()
    assert invoice.cycle_id == successor.id


def test_skipping_paused_cycle_clears_next_billing_date(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    _, cycle = lifecycle.activate_service(tenant_id, "operator", service_id)
    lifecycle.pause_service(tenant_id, "operator", service_id)

    lifecycle.skip_cycle(tenant_id, "operator", cycle.id)

    assert _open_cycles(lifecycle_engine, service_id) == []
    with Session(lifecycle_engine) as session:
        service = session.get(Service, service_id)
        assert service is not None
        assert service.next_billing_date is None

    # Resuming opens a fresh cycle from the resume date.
    _, reopened = lifecycle.activate_service(tenant_id, "operator", service_id)
    assert reopened.id != cycle.id
    assert reopened.previous_cycle_id is None


def test_cycle_listing_follows_the_cycle_invoice_link(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    _, cycle = lifecycle.activate_service(tenant_id, "operator", service_id)

    with Session(lifecycle_engine) as session:
        service = session.get(Service, service_id)
        assert service is not None
        # Manual invoice that does not point back at the cycle.
        manual = Invoice(
            tenant_id=tenant_id,
            client_id=service.client_id,
            service_id=service_id,
            number="INV-MANUAL-0001",
            issue_date=NOW,
            status=InvoiceStatus.VOID,
            total=Decimal("250000"),
        )
        session.add(manual)
        session.flush()
        stored = session.get(BillingCycle, cycle.id)
        assert stored is not None
        stored.invoice_id = manual.id
        stored.status = CycleState.INVOICED
        session.add(stored)
        session.commit()

    (read,) = LedgerService(clock=lambda: NOW).list_cycles(tenant_id, service_id)
    assert read.invoice_id is not None
    assert read.effective_status == EffectiveCycleStatus.SKIPPED


def test_activating_recurring_service_without_frequency_conflicts(lifecycle_engine: Engine) -> None:
    tenant_id = _tenant(lifecycle_engine)
    lifecycle = _lifecycle()
    service_id = _recurring_service(lifecycle, tenant_id)
    with Session(lifecycle_engine) as session:
        # Legacy row written before frequency was validated.
        row = session.get(Service, service_id)
        assert row is not None
        row.frequency = None
        session.add(row)
        session.commit()

    with pytest.raises(ConflictError):
        lifecycle.activate_service(tenant_id, "operator", service_id)
    assert _open_cycles(lifecycle_engine, service_id) == []
