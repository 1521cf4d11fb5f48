from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta

import httpx
from demo_common import assert_status, auth_headers, bootstrap_tenant, wait_ok


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    cron_secret = os.getenv("CRON_SECRET", "")
    if not cron_secret:
        raise RuntimeError("CRON_SECRET must be set to trigger the billing run")

    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await wait_ok(client, "/healthz")
        await wait_ok(client, "/readyz")

        _, token = bootstrap_tenant("billing-demo")

        client_resp = await client.post(
            "/api/billing/clients",
            json={"name": "Demo Client", "email": "billing@example.com"},
            headers=auth_headers(token),
        )
        assert_status(client_resp, 201)
        client_id = client_resp.json()["id"]

        service_resp = await client.post(
            "/api/billing/services",
            json={
                "client_id": client_id,
                "name": "Managed hosting",
                "amount": "100000",
                "billing_type": "recurring",
                "frequency": "monthly",
            },
            headers=auth_headers(token),
        )
        assert_status(service_resp, 201)
        service_id = service_resp.json()["id"]

        # Start one period back so the first cycle is already due.
        start = (datetime.now(UTC) - timedelta(days=32)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        activate_resp = await client.post(
            f"/api/billing/services/{service_id}/activate",
            json={"start_date": start.isoformat()},
            headers=auth_headers(token),
        )
        assert_status(activate_resp, 200)

        run_resp = await client.post("/api/cron/billing", headers=auth_headers(cron_secret))
        assert_status(run_resp, 200)
        run = run_resp.json()
        if run["completed"] < 1:
            raise RuntimeError(f"expected at least one completed cycle, got {run}")

        invoices_resp = await client.get(
            f"/api/billing/invoices?service_id={service_id}",
            headers=auth_headers(token),
        )
        assert_status(invoices_resp, 200)
        invoices = invoices_resp.json()
        if len(invoices) != 1:
            raise RuntimeError(f"expected exactly one invoice, got {len(invoices)}")

        cycles_resp = await client.get(
            f"/api/billing/services/{service_id}/cycles",
            headers=auth_headers(token),
        )
        assert_status(cycles_resp, 200)
        statuses = [item["status"] for item in cycles_resp.json()]
        if statuses != ["invoiced", "pending"]:
            raise RuntimeError(f"unexpected cycle statuses: {statuses}")

        rerun_resp = await client.post("/api/cron/billing", headers=auth_headers(cron_secret))
        assert_status(rerun_resp, 200)
        if rerun_resp.json()["completed"] != 0:
            raise RuntimeError("second run must not invoice the same cycle again")

        print(f"billing demo ok: invoice {invoices[0]['number']} total {invoices[0]['total']}")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
