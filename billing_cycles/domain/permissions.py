from __future__ import annotations

from typing import Any

PERM_WILDCARD = "*"
PERM_BILLING_READ = "billing.read"
PERM_BILLING_WRITE = "billing.write"


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    return permission in permissions or PERM_WILDCARD in permissions
