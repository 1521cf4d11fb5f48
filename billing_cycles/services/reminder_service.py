from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from billing_cycles.domain.models import (
    BillingRunResult,
    BillingType,
    Client,
    EffectiveInvoiceStatus,
    Invoice,
    InvoiceStatus,
    NotificationEvent,
    NotificationType,
    Service,
    now_utc,
)
from billing_cycles.domain.schedule import as_utc, start_of_day
from billing_cycles.domain.state_machine import ServiceState
from billing_cycles.domain.status_resolver import resolve_invoice_status
from billing_cycles.infra.config import BillingSettings, get_settings
from billing_cycles.infra.db import get_engine
from billing_cycles.services.notification_service import (
    NotificationDispatcher,
    OutboxNotificationDispatcher,
    dispatch_quietly,
    notification_sent_since,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ReminderService:
    """Sends upcoming-charge reminders and overdue alerts.

    Both passes are deduplicated against the notification outbox, so calling
    them on every billing run is safe.
    """

    def __init__(
        self,
        settings: BillingSettings | None = None,
        *,
        clock: Clock = now_utc,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._dispatcher = dispatcher or OutboxNotificationDispatcher()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def run(self, result: BillingRunResult, now: datetime | None = None) -> None:
        current = as_utc(now) if now is not None else as_utc(self._clock())
        try:
            result.reminders_sent += self.send_payment_reminders(current)
        except SQLAlchemyError as exc:
            logger.exception("payment reminder pass failed")
            result.errors.append(f"payment reminders: {exc}")
        try:
            result.overdue_alerts += self.send_overdue_alerts(current)
        except SQLAlchemyError as exc:
            logger.exception("overdue alert pass failed")
            result.errors.append(f"overdue alerts: {exc}")

    def send_payment_reminders(self, now: datetime | None = None) -> int:
        current = as_utc(now) if now is not None else as_utc(self._clock())
        target_day = start_of_day(current) + timedelta(days=self._settings.reminder_lead_days)
        since = current - timedelta(hours=self._settings.reminder_dedupe_hours)

        with self._session() as session:
            rows = session.exec(
                select(Service, Client)
                .join(
                    Client,
                    (col(Client.id) == col(Service.client_id))
                    & (col(Client.tenant_id) == col(Service.tenant_id)),
                )
                .where(Service.status == ServiceState.ACTIVE)
                .where(Service.billing_type == BillingType.RECURRING)
                .where(col(Service.deleted_at).is_(None))
                .where(col(Service.next_billing_date) >= target_day)
                .where(col(Service.next_billing_date) < target_day + timedelta(days=1))
                .order_by(col(Service.next_billing_date).asc())
            ).all()

            pending: list[NotificationEvent] = []
            for service, client in rows:
                if service.next_billing_date is None or notification_sent_since(
                    session,
                    notification_type=NotificationType.PAYMENT_REMINDER,
                    since=since,
                    subscription_id=service.id,
                ):
                    continue
                charge_day = as_utc(service.next_billing_date)
                pending.append(
                    NotificationEvent(
                        type=NotificationType.PAYMENT_REMINDER,
                        occurred_at=current,
                        tenant_id=service.tenant_id,
                        client_id=client.id,
                        subscription_id=service.id,
                        title="Upcoming charge",
                        message=(
                            f"{service.name} for {client.name} will be billed on "
                            f"{charge_day:%Y-%m-%d}. Amount: {service.amount}"
                        ),
                        action_reference=f"/services/{service.id}",
                    )
                )

        sent = sum(1 for item in pending if dispatch_quietly(self._dispatcher, item))
        if sent:
            logger.info("sent %s payment reminders for %s", sent, target_day.date().isoformat())
        return sent

    def send_overdue_alerts(self, now: datetime | None = None) -> int:
        current = as_utc(now) if now is not None else as_utc(self._clock())
        since = current - timedelta(days=self._settings.overdue_alert_dedupe_days)

        with self._session() as session:
            # Stored status lags behind the due date; only the effective status counts.
            candidates = session.exec(
                select(Invoice)
                .where(col(Invoice.deleted_at).is_(None))
                .where(col(Invoice.due_date).is_not(None))
                .where(col(Invoice.due_date) < current)
                .where(col(Invoice.status).in_([InvoiceStatus.DRAFT, InvoiceStatus.PENDING]))
                .order_by(col(Invoice.due_date).asc())
            ).all()

            pending: list[NotificationEvent] = []
            for invoice in candidates:
                if resolve_invoice_status(invoice, current) != EffectiveInvoiceStatus.OVERDUE:
                    continue
                if notification_sent_since(
                    session,
                    notification_type=NotificationType.PAYMENT_DUE,
                    since=since,
                    invoice_id=invoice.id,
                ):
                    continue
                pending.append(
                    NotificationEvent(
                        type=NotificationType.PAYMENT_DUE,
                        occurred_at=current,
                        tenant_id=invoice.tenant_id,
                        client_id=invoice.client_id,
                        invoice_id=invoice.id,
                        title="Invoice overdue",
                        message=f"Invoice {invoice.number} is overdue. Amount: {invoice.total}",
                        action_reference=f"/invoices/{invoice.id}",
                    )
                )

        sent = sum(1 for item in pending if dispatch_quietly(self._dispatcher, item))
        if sent:
            logger.info("sent %s overdue alerts", sent)
        return sent
