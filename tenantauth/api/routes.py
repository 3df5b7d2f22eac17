from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query

from tenantauth.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MfaSetupResponse,
    TokenRefreshRequest,
    UserView,
    ValidateResponse,
)
from tenantauth.logging import bind_auth_context
from tenantauth.service.auth import AuthContext
from tenantauth.service.permissions import Permission
from tenantauth.service.runtime import get_runtime

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token.strip()


def _require_tenant(x_tenant_id: Optional[str]) -> str:
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise _http_error(
            "validation_error", "X-Tenant-ID header is required", status_code=400
        )
    return tenant_id


async def get_principal(
    authorization: Optional[str] = Header(None),
    x_tenant_id: Optional[str] = Header(None, convert_underscores=False, alias="X-Tenant-ID"),
) -> AuthContext:
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(
        _bearer_token(authorization), tenant_id=(x_tenant_id or "").strip() or None
    )
    bind_auth_context(tenant_id=principal.tenant_id, user_id=principal.user_id)
    return principal


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    x_tenant_id: Optional[str] = Header(None, convert_underscores=False, alias="X-Tenant-ID"),
):
    """Authenticate with email and password within the tenant from X-Tenant-ID.

    Returns ``status="mfa_required"`` without tokens when the account has MFA
    enabled and no code was supplied.

    Raises:
        401: invalid credentials or MFA code
        423: account not active
        429: too many failed attempts (with Retry-After)
    """
    tenant_id = _require_tenant(x_tenant_id)
    bind_auth_context(tenant_id=tenant_id)
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, tenant_id, mfa_code=body.mfa_code
    )
    return Envelope(status="ok", data=LoginResponse(**result.to_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        _bearer_token(authorization), body.refresh_token if body else None
    )
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    """Rotate a refresh token; the presented token cannot be used again."""
    runtime = get_runtime()
    result = await runtime.auth.refresh_token(body.refresh_token)
    return Envelope(status="ok", data=LoginResponse(**result.to_dict()))


@router.post("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    scheme, _, token = (authorization or "").partition(" ")
    valid = False
    if scheme.lower() == "bearer" and token.strip():
        valid = await runtime.auth.validate_token(token.strip())
    return Envelope(status="ok", data=ValidateResponse(valid=valid))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_principal),
):
    """List accounts in the caller's tenant; requires ``user:view``."""
    runtime = get_runtime()
    runtime.auth.permissions.require(principal.role, [Permission.USER_VIEW])
    users = await runtime.auth.list_users(principal.tenant_id, limit=limit)
    return Envelope(
        status="ok",
        data={"items": [UserView(**u.public_view()) for u in users], "count": len(users)},
    )


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["auth"])
async def mfa_setup(principal: AuthContext = Depends(get_principal)):
    """Enrol the caller in TOTP MFA; secret and backup codes are shown once."""
    runtime = get_runtime()
    setup = await runtime.auth.setup_mfa(principal.user_id, principal.tenant_id)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            backup_codes=setup.backup_codes,
        ),
    )
