from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from sqlmodel import Session, col, select

from billing_cycles.domain.models import NotificationEvent, NotificationRecord, NotificationType
from billing_cycles.infra.db import get_engine

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def dispatch(self, notification: NotificationEvent) -> None: ...


class OutboxNotificationDispatcher:
    """Writes notifications to the outbox table read by the delivery worker."""

    def dispatch(self, notification: NotificationEvent) -> None:
        with Session(get_engine()) as session:
            session.add(
                NotificationRecord(
                    tenant_id=notification.tenant_id,
                    type=notification.type,
                    client_id=notification.client_id,
                    invoice_id=notification.invoice_id,
                    subscription_id=notification.subscription_id,
                    title=notification.title,
                    message=notification.message,
                    action_reference=notification.action_reference,
                    created_at=notification.occurred_at,
                )
            )
            session.commit()


def dispatch_quietly(dispatcher: NotificationDispatcher, notification: NotificationEvent) -> bool:
    """Fire-and-forget delivery: failures are logged, never raised."""
    try:
        dispatcher.dispatch(notification)
    except Exception:
        logger.exception(
            "notification dispatch failed type=%s tenant=%s",
            notification.type,
            notification.tenant_id,
        )
        return False
    return True


def notification_sent_since(
    session: Session,
    *,
    notification_type: NotificationType,
    since: datetime,
    invoice_id: str | None = None,
    subscription_id: str | None = None,
) -> bool:
    statement = (
        select(NotificationRecord.id)
        .where(NotificationRecord.type == notification_type)
        .where(col(NotificationRecord.created_at) >= since)
    )
    if invoice_id is not None:
        statement = statement.where(NotificationRecord.invoice_id == invoice_id)
    if subscription_id is not None:
        statement = statement.where(NotificationRecord.subscription_id == subscription_id)
    return session.exec(statement).first() is not None
