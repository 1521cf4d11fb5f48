from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Annotated, Any

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from billing_cycles.domain.models import now_utc
from billing_cycles.domain.permissions import has_permission
from billing_cycles.infra.auth import decode_access_token, verify_static_secret
from billing_cycles.infra.config import BillingSettings, get_settings
from billing_cycles.services.errors import AuthError

bearer_scheme = HTTPBearer()


def get_billing_settings() -> BillingSettings:
    return get_settings()


def get_clock() -> Callable[[], datetime]:
    return now_utc


def get_current_claims(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> dict[str, Any]:
    try:
        claims = decode_access_token(credentials.credentials)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    if not claims.get("tenant_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token carries no tenant",
        )
    request.state.claims = claims
    return claims


def require_perm(permission: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def _checker(
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    ) -> dict[str, Any]:
        if not has_permission(claims, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return claims

    return _checker


def verify_cron_authorization(authorization: str | None, settings: BillingSettings) -> None:
    if not settings.cron_secret:
        raise AuthError("cron secret is not configured")
    scheme, _, presented = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not verify_static_secret(presented.strip(), settings.cron_secret):
        raise AuthError("invalid cron credentials")


def require_cron_secret(
    settings: Annotated[BillingSettings, Depends(get_billing_settings)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    try:
        verify_cron_authorization(authorization, settings)
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized") from exc
