from __future__ import annotations

from fastapi import FastAPI, HTTPException

from billing_cycles.api.routers import billing, cron
from billing_cycles.infra.db import check_db_ready
from billing_cycles.infra.logging import setup_logging
from billing_cycles.infra.redis_state import check_redis_ready

setup_logging()

app = FastAPI(
    title="billing-cycles",
    description="Recurring billing cycle engine: cycle generation, invoicing and status resolution.",
    version="0.1.0",
)

app.include_router(cron.router, prefix="/api/cron", tags=["cron"])
app.include_router(billing.router, prefix="/api/billing", tags=["billing"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
