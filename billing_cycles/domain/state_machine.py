from __future__ import annotations

from enum import StrEnum


class CycleState(StrEnum):
    PENDING = "pending"
    INVOICING = "invoicing"
    INVOICED = "invoiced"
    SKIPPED = "skipped"


OPEN_CYCLE_STATES: frozenset[CycleState] = frozenset({CycleState.PENDING, CycleState.INVOICING})


# INVOICING is the resumable middle of the per-cycle saga: a run claims the
# cycle, and either finishes it or releases it back to PENDING.
ALLOWED_TRANSITIONS: dict[CycleState, set[CycleState]] = {
    CycleState.PENDING: {CycleState.INVOICING, CycleState.INVOICED, CycleState.SKIPPED},
    CycleState.INVOICING: {CycleState.INVOICED, CycleState.PENDING},
    CycleState.INVOICED: set(),
    CycleState.SKIPPED: set(),
}


def can_transition(source: CycleState, target: CycleState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(CycleState(source), set())


class ServiceState(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    # Legacy raw value still present in older rows.
    COMPLETED = "completed"


SERVICE_ALLOWED_TRANSITIONS: dict[ServiceState, set[ServiceState]] = {
    ServiceState.DRAFT: {ServiceState.ACTIVE, ServiceState.CANCELLED},
    ServiceState.ACTIVE: {ServiceState.PAUSED, ServiceState.CANCELLED},
    ServiceState.PAUSED: {ServiceState.ACTIVE, ServiceState.CANCELLED},
    ServiceState.CANCELLED: set(),
    ServiceState.COMPLETED: set(),
}


def can_service_transition(source: ServiceState, target: ServiceState) -> bool:
    return target in SERVICE_ALLOWED_TRANSITIONS.get(ServiceState(source), set())
