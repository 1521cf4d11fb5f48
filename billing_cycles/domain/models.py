from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import (
    JSON,
    Column,
    ForeignKeyConstraint,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

from billing_cycles.domain.state_machine import CycleState, ServiceState


def now_utc() -> datetime:
    return datetime.now(UTC)


class BillingType(StrEnum):
    RECURRING = "recurring"
    ONE_OFF = "one_off"


class BillingFrequency(StrEnum):
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"
    YEARLY = "yearly"


class InvoiceStatus(StrEnum):
    DRAFT = "draft"
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"
    VOID = "void"
    CANCELLED = "cancelled"


class EffectiveInvoiceStatus(StrEnum):
    DRAFT = "draft"
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"
    VOID = "void"


class EffectiveCycleStatus(StrEnum):
    FUTURE = "future"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class EffectiveServiceStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class ServiceHealth(StrEnum):
    HEALTHY = "healthy"
    AT_RISK = "at_risk"
    CHURNED = "churned"
    INVARIANT = "invariant"


class NotificationType(StrEnum):
    INVOICE_GENERATED = "invoice_generated"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_DUE = "payment_due"


def _money_column() -> Column[Any]:
    return Column(Numeric(14, 2), nullable=False)


def _code_column(*, nullable: bool = False, index: bool = True) -> Column[Any]:
    return Column(String(length=20), nullable=nullable, index=index)


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Client(SQLModel, table=True):
    __tablename__ = "clients"
    __table_args__ = (UniqueConstraint("tenant_id", "id", name="uq_clients_tenant_id_id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str = Field(index=True)
    email: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Service(SQLModel, table=True):
    __tablename__ = "services"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_services_tenant_id_id"),
        ForeignKeyConstraint(
            ["tenant_id", "client_id"],
            ["clients.tenant_id", "clients.id"],
            ondelete="RESTRICT",
        ),
        Index("ix_services_tenant_client_id", "tenant_id", "client_id"),
        Index("ix_services_tenant_status", "tenant_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    client_id: str = Field(index=True)
    name: str
    description: str | None = None
    amount: Decimal = Field(default=Decimal("0"), sa_column=_money_column())
    quantity: int = Field(default=1)
    billing_type: BillingType = Field(default=BillingType.RECURRING, sa_column=_code_column())
    frequency: BillingFrequency | None = Field(
        default=None,
        sa_column=_code_column(nullable=True, index=False),
    )
    status: ServiceState = Field(default=ServiceState.DRAFT, sa_column=_code_column())
    next_billing_date: datetime | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)
    deleted_at: datetime | None = Field(default=None, index=True)


class BillingCycle(SQLModel, table=True):
    __tablename__ = "billing_cycles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_billing_cycles_tenant_id_id"),
        UniqueConstraint("previous_cycle_id", name="uq_billing_cycles_previous_cycle_id"),
        ForeignKeyConstraint(
            ["tenant_id", "service_id"],
            ["services.tenant_id", "services.id"],
            ondelete="RESTRICT",
        ),
        Index("ix_billing_cycles_status_end_date", "status", "end_date"),
        Index("ix_billing_cycles_status_attempts_end_date", "status", "attempts", "end_date"),
        Index("ix_billing_cycles_tenant_service_id", "tenant_id", "service_id"),
        Index(
            "uq_billing_cycles_open_per_service",
            "service_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'invoicing')"),
            postgresql_where=text("status IN ('pending', 'invoicing')"),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    service_id: str = Field(index=True)
    previous_cycle_id: str | None = Field(default=None)
    start_date: datetime = Field(index=True)
    end_date: datetime = Field(index=True)
    due_date: datetime | None = Field(default=None)
    amount: Decimal = Field(default=Decimal("0"), sa_column=_money_column())
    status: CycleState = Field(default=CycleState.PENDING, sa_column=_code_column())
    invoice_id: str | None = Field(default=None, index=True)
    claim_token: str | None = Field(default=None)
    claimed_at: datetime | None = Field(default=None)
    attempts: int = Field(default=0)
    last_attempt_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class Invoice(SQLModel, table=True):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_invoices_tenant_id_id"),
        UniqueConstraint("tenant_id", "number", name="uq_invoices_tenant_number"),
        UniqueConstraint("tenant_id", "cycle_id", name="uq_invoices_tenant_cycle_id"),
        ForeignKeyConstraint(
            ["tenant_id", "client_id"],
            ["clients.tenant_id", "clients.id"],
            ondelete="RESTRICT",
        ),
        Index("ix_invoices_tenant_status", "tenant_id", "status"),
        Index("ix_invoices_tenant_client_id", "tenant_id", "client_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    client_id: str = Field(index=True)
    service_id: str | None = Field(default=None, index=True)
    cycle_id: str | None = Field(default=None, index=True)
    number: str = Field(index=True)
    issue_date: datetime = Field(default_factory=now_utc, index=True)
    due_date: datetime | None = Field(default=None, index=True)
    status: InvoiceStatus | None = Field(
        default=InvoiceStatus.PENDING,
        sa_column=_code_column(nullable=True),
    )
    total: Decimal = Field(default=Decimal("0"), sa_column=_money_column())
    currency: str = Field(default="COP")
    items: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    is_late_issued: bool = Field(default=False)
    created_by: str = Field(default="system")
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)
    deleted_at: datetime | None = Field(default=None, index=True)


class DomainEvent(SQLModel, table=True):
    __tablename__ = "domain_events"
    __table_args__ = (
        Index("ix_domain_events_entity", "entity_type", "entity_id"),
        Index("ix_domain_events_tenant_type", "tenant_id", "event_type"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    entity_type: str
    entity_id: str
    event_type: str = Field(index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    triggered_by: str = Field(index=True)
    correlation_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class NotificationRecord(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_type_invoice", "type", "invoice_id"),
        Index("ix_notifications_type_subscription", "type", "subscription_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    type: NotificationType = Field(sa_column=Column(String(length=40), nullable=False, index=True))
    client_id: str | None = Field(default=None, index=True)
    invoice_id: str | None = Field(default=None)
    subscription_id: str | None = Field(default=None)
    title: str
    message: str
    action_reference: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    entity_type: str
    entity_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    triggered_by: str = "system"
    correlation_id: str | None = None
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class NotificationEvent(BaseModel):
    type: NotificationType
    occurred_at: datetime = PydanticField(default_factory=now_utc)
    tenant_id: str
    client_id: str | None = None
    invoice_id: str | None = None
    subscription_id: str | None = None
    title: str
    message: str
    action_reference: str | None = None


class FinancialStanding(BaseModel):
    total_debt: Decimal = Decimal("0")
    future_debt: Decimal = Decimal("0")
    overdue_count: int = 0


class BillingRunResult(BaseModel):
    # processed counts every cycle the run took up, in either pass:
    # processed == completed + reconciled + failed + skipped.
    success: bool = True
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    reconciled: int = 0
    reminders_sent: int = 0
    overdue_alerts: int = 0
    errors: list[str] = PydanticField(default_factory=list)
    warnings: list[str] = PydanticField(default_factory=list)
    duration_ms: int = 0


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ClientCreate(BaseModel):
    name: str
    email: str | None = None


class ClientRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    email: str | None
    created_at: datetime


class ServiceCreate(BaseModel):
    client_id: str
    name: str
    description: str | None = None
    amount: Decimal = PydanticField(gt=0)
    quantity: int = PydanticField(default=1, ge=1)
    billing_type: BillingType = BillingType.RECURRING
    frequency: BillingFrequency | None = None


class ServiceAmountUpdate(BaseModel):
    amount: Decimal = PydanticField(gt=0)


class ServiceActivateRequest(BaseModel):
    start_date: datetime | None = None
    first_cycle_end: datetime | None = None


class ServiceRead(ORMReadModel):
    id: str
    tenant_id: str
    client_id: str
    name: str
    description: str | None
    amount: Decimal
    quantity: int
    billing_type: BillingType
    frequency: BillingFrequency | None
    status: ServiceState
    next_billing_date: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class ServiceStateRead(BaseModel):
    service_id: str
    raw_status: ServiceState
    effective_status: EffectiveServiceStatus
    health: ServiceHealth
    next_billing_date: datetime | None
    open_cycle_id: str | None


class CycleRead(ORMReadModel):
    id: str
    tenant_id: str
    service_id: str
    previous_cycle_id: str | None
    start_date: datetime
    end_date: datetime
    due_date: datetime | None
    amount: Decimal
    status: CycleState
    invoice_id: str | None
    attempts: int = 0
    effective_status: EffectiveCycleStatus | None = None


class InvoiceRead(ORMReadModel):
    id: str
    tenant_id: str
    client_id: str
    service_id: str | None
    cycle_id: str | None
    number: str
    issue_date: datetime
    due_date: datetime | None
    status: InvoiceStatus | None
    total: Decimal
    currency: str
    items: list[dict[str, Any]]
    is_late_issued: bool
    created_at: datetime
    deleted_at: datetime | None
    effective_status: EffectiveInvoiceStatus | None = None
    actionable: bool = False


class ClientFinancialRead(BaseModel):
    client_id: str
    standing: FinancialStanding


class DomainEventRead(ORMReadModel):
    id: str
    tenant_id: str
    entity_type: str
    entity_id: str
    event_type: str
    payload: dict[str, Any]
    triggered_by: str
    correlation_id: str | None
    created_at: datetime
