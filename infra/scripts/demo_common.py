from __future__ import annotations

import asyncio
import time
from uuid import uuid4

import httpx
from sqlmodel import Session

from billing_cycles.domain.models import Tenant
from billing_cycles.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from billing_cycles.infra.auth import create_access_token
from billing_cycles.infra.db import get_engine


def assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
        except httpx.HTTPError:
            pass
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}")


def bootstrap_tenant(prefix: str) -> tuple[str, str]:
    """Insert a tenant row and mint an operator token for it."""
    run_id = uuid4().hex[:8]
    with Session(get_engine()) as session:
        tenant = Tenant(name=f"{prefix}-tenant-{run_id}")
        session.add(tenant)
        session.commit()
        tenant_id = tenant.id
    token = create_access_token(
        user_id=f"{prefix}-operator-{run_id}",
        tenant_id=tenant_id,
        permissions=[PERM_BILLING_READ, PERM_BILLING_WRITE],
    )
    return tenant_id, token
