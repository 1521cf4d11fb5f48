from __future__ import annotations


class BillingError(Exception):
    pass


class NotFoundError(BillingError):
    pass


class ConflictError(BillingError):
    pass


class AuthError(BillingError):
    """Trigger credential missing or wrong; no batch work is done."""


class TenantIntegrityError(BillingError):
    """Rows that must share a tenant do not; nothing may be persisted."""


class DataGapError(BillingError):
    """A cycle points at a service that is gone or soft-deleted."""


class PersistenceError(BillingError):
    """A datastore write for one cycle failed."""


class TopLevelError(BillingError):
    """The batch could not start, e.g. the due-cycle query failed."""
