from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from billing_cycles.domain.models import (
    BillingFrequency,
    BillingRunResult,
    BillingType,
    Client,
    Invoice,
    InvoiceStatus,
    NotificationRecord,
    NotificationType,
    Service,
    Tenant,
)
from billing_cycles.domain.state_machine import ServiceState
from billing_cycles.infra import db
from billing_cycles.infra.config import BillingSettings
from billing_cycles.services.reminder_service import ReminderService

NOW = datetime(2026, 3, 10, 8, 0, tzinfo=UTC)


@pytest.fixture()
def reminder_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'reminder_test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


def _client(test_engine: Engine) -> Client:
    with Session(test_engine, expire_on_commit=False) as session:
        tenant = Tenant(name="tenant-a")
        session.add(tenant)
        session.flush()
        client = Client(tenant_id=tenant.id, name="Acme")
        session.add(client)
        session.commit()
        return client


def _service(
    test_engine: Engine,
    client: Client,
    next_billing_date: datetime | None,
    *,
    status: ServiceState = ServiceState.ACTIVE,
    billing_type: BillingType = BillingType.RECURRING,
) -> Service:
    with Session(test_engine, expire_on_commit=False) as session:
        service = Service(
            tenant_id=client.tenant_id,
            client_id=client.id,
            name="Hosting",
            amount=Decimal("100000"),
            billing_type=billing_type,
            frequency=BillingFrequency.MONTHLY if billing_type == BillingType.RECURRING else None,
            status=status,
            next_billing_date=next_billing_date,
        )
        session.add(service)
        session.commit()
        return service


def _invoice(
    test_engine: Engine,
    client: Client,
    number: str,
    due_date: datetime,
    status: InvoiceStatus = InvoiceStatus.PENDING,
) -> Invoice:
    with Session(test_engine, expire_on_commit=False) as session:
        invoice = Invoice(
            tenant_id=client.tenant_id,
            client_id=client.id,
            number=number,
            issue_date=due_date - timedelta(days=30),
            due_date=due_date,
            status=status,
            total=Decimal("100000"),
        )
        session.add(invoice)
        session.commit()
        return invoice


def _notifications(test_engine: Engine, notification_type: NotificationType) -> list[NotificationRecord]:
    with Session(test_engine) as session:
        return list(
            session.exec(
                select(NotificationRecord).where(NotificationRecord.type == notification_type)
            ).all()
        )


def _reminders(now: datetime) -> ReminderService:
    return ReminderService(BillingSettings(), clock=lambda: now)


def test_reminder_sent_two_days_before_charge(reminder_engine: Engine) -> None:
    client = _client(reminder_engine)
    due_soon = _service(reminder_engine, client, datetime(2026, 3, 12, tzinfo=UTC))
    _service(reminder_engine, client, datetime(2026, 3, 13, tzinfo=UTC))
    _service(reminder_engine, client, datetime(2026, 3, 11, tzinfo=UTC))
    _service(reminder_engine, client, datetime(2026, 3, 12, tzinfo=UTC), status=ServiceState.PAUSED)

    sent = _reminders(NOW).send_payment_reminders()

    assert sent == 1
    rows = _notifications(reminder_engine, NotificationType.PAYMENT_REMINDER)
    assert [row.subscription_id for row in rows] == [due_soon.id]
    assert rows[0].client_id == client.id
    assert rows[0].tenant_id == client.tenant_id


def test_reminder_is_not_repeated_within_window(reminder_engine: Engine) -> None:
    client = _client(reminder_engine)
    _service(reminder_engine, client, datetime(2026, 3, 12, 18, 0, tzinfo=UTC))

    assert _reminders(NOW).send_payment_reminders() == 1
    assert _reminders(NOW + timedelta(hours=6)).send_payment_reminders() == 0
    assert len(_notifications(reminder_engine, NotificationType.PAYMENT_REMINDER)) == 1


def test_overdue_alert_for_effectively_overdue_invoice(reminder_engine: Engine) -> None:
    client = _client(reminder_engine)
    overdue = _invoice(reminder_engine, client, "INV-1", NOW - timedelta(days=2))
    _invoice(reminder_engine, client, "INV-2", NOW + timedelta(days=2))
    _invoice(reminder_engine, client, "INV-3", NOW - timedelta(days=2), InvoiceStatus.PAID)
    _invoice(reminder_engine, client, "INV-4", NOW - timedelta(days=2), InvoiceStatus.OVERDUE)

    sent = _reminders(NOW).send_overdue_alerts()

    assert sent == 1
    rows = _notifications(reminder_engine, NotificationType.PAYMENT_DUE)
    assert [row.invoice_id for row in rows] == [overdue.id]


def test_overdue_alert_dedupe_window(reminder_engine: Engine) -> None:
    client = _client(reminder_engine)
    _invoice(reminder_engine, client, "INV-1", NOW - timedelta(days=2))

    assert _reminders(NOW).send_overdue_alerts() == 1
    assert _reminders(NOW + timedelta(days=2)).send_overdue_alerts() == 0
    assert _reminders(NOW + timedelta(days=3, minutes=1)).send_overdue_alerts() == 1


def test_run_adds_counts_to_result(reminder_engine: Engine) -> None:
    client = _client(reminder_engine)
    _service(reminder_engine, client, datetime(2026, 3, 12, tzinfo=UTC))
    _invoice(reminder_engine, client, "INV-1", NOW - timedelta(days=5))
    result = BillingRunResult()

    _reminders(NOW).run(result)

    assert result.reminders_sent == 1
    assert result.overdue_alerts == 1
    assert result.errors == []
