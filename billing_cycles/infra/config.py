from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class BillingSettings:
    cron_secret: str = ""
    batch_size: int = 50
    invoice_due_days: int = 30
    cycle_due_offset_days: int = 5
    late_issue_threshold_days: int = 4
    claim_lease_seconds: int = 900
    reminder_lead_days: int = 2
    reminder_dedupe_hours: int = 48
    overdue_alert_dedupe_days: int = 3
    run_lock_ttl_seconds: int = 300
    currency: str = "COP"


def load_settings() -> BillingSettings:
    return BillingSettings(
        cron_secret=os.getenv("CRON_SECRET", ""),
        batch_size=_env_int("BILLING_BATCH_SIZE", 50),
        invoice_due_days=_env_int("BILLING_INVOICE_DUE_DAYS", 30),
        cycle_due_offset_days=_env_int("BILLING_CYCLE_DUE_OFFSET_DAYS", 5),
        late_issue_threshold_days=_env_int("BILLING_LATE_ISSUE_THRESHOLD_DAYS", 4),
        claim_lease_seconds=_env_int("BILLING_CLAIM_LEASE_SECONDS", 900),
        reminder_lead_days=_env_int("BILLING_REMINDER_LEAD_DAYS", 2),
        run_lock_ttl_seconds=_env_int("BILLING_RUN_LOCK_TTL_SECONDS", 300),
        currency=os.getenv("BILLING_CURRENCY", "COP"),
    )


@lru_cache(maxsize=1)
def get_settings() -> BillingSettings:
    return load_settings()
