from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from billing_cycles.api.deps import (
    get_billing_settings,
    get_clock,
    get_current_claims,
    require_perm,
)
from billing_cycles.domain.models import (
    ClientCreate,
    ClientFinancialRead,
    ClientRead,
    CycleRead,
    DomainEventRead,
    EffectiveInvoiceStatus,
    InvoiceRead,
    ServiceActivateRequest,
    ServiceAmountUpdate,
    ServiceCreate,
    ServiceRead,
    ServiceStateRead,
)
from billing_cycles.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from billing_cycles.infra.config import BillingSettings
from billing_cycles.services.errors import ConflictError, NotFoundError
from billing_cycles.services.ledger_service import LedgerService
from billing_cycles.services.service_lifecycle_service import ServiceLifecycleService

router = APIRouter()

ClockDep = Annotated[Callable[[], datetime], Depends(get_clock)]


def get_lifecycle_service(
    settings: Annotated[BillingSettings, Depends(get_billing_settings)],
    clock: ClockDep,
) -> ServiceLifecycleService:
    return ServiceLifecycleService(settings, clock=clock)


def get_ledger_service(clock: ClockDep) -> LedgerService:
    return LedgerService(clock=clock)


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Lifecycle = Annotated[ServiceLifecycleService, Depends(get_lifecycle_service)]
Ledger = Annotated[LedgerService, Depends(get_ledger_service)]


def _handle_billing_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


@router.post(
    "/clients",
    response_model=ClientRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_client(payload: ClientCreate, claims: Claims, lifecycle: Lifecycle) -> ClientRead:
    try:
        row = lifecycle.create_client(claims["tenant_id"], claims["sub"], payload)
        return ClientRead.model_validate(row)
    except (NotFoundError, ConflictError) as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/clients",
    response_model=list[ClientRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_clients(claims: Claims, ledger: Ledger) -> list[ClientRead]:
    return [ClientRead.model_validate(row) for row in ledger.list_clients(claims["tenant_id"])]


@router.get(
    "/clients/{client_id}/financials",
    response_model=ClientFinancialRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_client_financials(client_id: str, claims: Claims, ledger: Ledger) -> ClientFinancialRead:
    try:
        return ledger.get_client_financials(claims["tenant_id"], client_id)
    except NotFoundError as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/services",
    response_model=ServiceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_service(payload: ServiceCreate, claims: Claims, lifecycle: Lifecycle) -> ServiceRead:
    try:
        row = lifecycle.create_service(claims["tenant_id"], claims["sub"], payload)
        return ServiceRead.model_validate(row)
    except (NotFoundError, ConflictError) as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/services",
    response_model=list[ServiceRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_services(
    claims: Claims,
    ledger: Ledger,
    client_id: str | None = None,
) -> list[ServiceRead]:
    rows = ledger.list_services(claims["tenant_id"], client_id=client_id)
    return [ServiceRead.model_validate(row) for row in rows]


@router.get(
    "/services/{service_id}/state",
    response_model=ServiceStateRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_service_state(service_id: str, claims: Claims, ledger: Ledger) -> ServiceStateRead:
    try:
        return ledger.get_service_state(claims["tenant_id"], service_id)
    except NotFoundError as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/services/{service_id}/activate",
    response_model=CycleRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def activate_service(
    service_id: str,
    claims: Claims,
    lifecycle: Lifecycle,
    payload: Annotated[ServiceActivateRequest | None, Body()] = None,
) -> CycleRead:
    try:
        _, cycle = lifecycle.activate_service(claims["tenant_id"], claims["sub"], service_id, payload)
        return CycleRead.model_validate(cycle)
    except (NotFoundError, ConflictError) as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/services/{service_id}/pause",
    response_model=ServiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def pause_service(service_id: str, claims: Claims, lifecycle: Lifecycle) -> ServiceRead:
    try:
        row = lifecycle.pause_service(claims["tenant_id"], claims["sub"], service_id)
        return ServiceRead.model_validate(row)
    except (NotFoundError, ConflictError) as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/services/{service_id}/cancel",
    response_model=ServiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def cancel_service(service_id: str, claims: Claims, lifecycle: Lifecycle) -> ServiceRead:
    try:
        row = lifecycle.cancel_service(claims["tenant_id"], claims["sub"], service_id)
        return ServiceRead.model_validate(row)
    except (NotFoundError, ConflictError) as exc:
        _handle_billing_error(exc)
        raise


@router.patch(
    "/services/{service_id}/amount",
    response_model=ServiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def update_service_amount(
    service_id: str,
    payload: ServiceAmountUpdate,
    claims: Claims,
    lifecycle: Lifecycle,
) -> ServiceRead:
    try:
        row = lifecycle.update_service_amount(claims["tenant_id"], claims["sub"], service_id, payload)
        return ServiceRead.model_validate(row)
    except (NotFoundError, ConflictError) as exc:
        _handle_billing_error(exc)
        raise


@router.delete(
    "/services/{service_id}",
    response_model=ServiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def delete_service(service_id: str, claims: Claims, lifecycle: Lifecycle) -> ServiceRead:
    try:
        row = lifecycle.soft_delete_service(claims["tenant_id"], claims["sub"], service_id)
        return ServiceRead.model_validate(row)
    except (NotFoundError, ConflictError) as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/services/{service_id}/cycles",
    response_model=list[CycleRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_cycles(service_id: str, claims: Claims, ledger: Ledger) -> list[CycleRead]:
    try:
        return ledger.list_cycles(claims["tenant_id"], service_id)
    except NotFoundError as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/cycles/{cycle_id}/skip",
    response_model=CycleRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def skip_cycle(cycle_id: str, claims: Claims, lifecycle: Lifecycle) -> CycleRead:
    try:
        row = lifecycle.skip_cycle(claims["tenant_id"], claims["sub"], cycle_id)
        return CycleRead.model_validate(row)
    except (NotFoundError, ConflictError) as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/invoices",
    response_model=list[InvoiceRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_invoices(
    claims: Claims,
    ledger: Ledger,
    client_id: str | None = None,
    service_id: str | None = None,
    effective_status: EffectiveInvoiceStatus | None = None,
) -> list[InvoiceRead]:
    return ledger.list_invoices(
        claims["tenant_id"],
        client_id=client_id,
        service_id=service_id,
        effective_status=effective_status,
    )


@router.get(
    "/invoices/{invoice_id}",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_invoice(invoice_id: str, claims: Claims, ledger: Ledger) -> InvoiceRead:
    try:
        return ledger.get_invoice(claims["tenant_id"], invoice_id)
    except NotFoundError as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/events/{entity_type}/{entity_id}",
    response_model=list[DomainEventRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_entity_events(
    entity_type: str,
    entity_id: str,
    claims: Claims,
    ledger: Ledger,
) -> list[DomainEventRead]:
    rows = ledger.list_entity_events(claims["tenant_id"], entity_type, entity_id)
    return [DomainEventRead.model_validate(row) for row in rows]
