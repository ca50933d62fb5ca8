from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from hubauth.api.schemas import (
    AccountSummary,
    AuditLogResponse,
    BackupCodesResponse,
    BulkDeleteRequest,
    BulkDeleteResponse,
    Envelope,
    LockRequest,
    LoginRequest,
    LoginResponse,
    MFAConfirmRequest,
    MFALoginRequest,
    MFASetupResponse,
    PasswordConfirmRequest,
    PasswordResetRequest,
    PrincipalResponse,
    RoleAssignmentResponse,
    TokenRefreshRequest,
    TokenResponse,
)
from hubauth.service.auth import AuthContext, LoginResult
from hubauth.service.errors import NotFoundError
from hubauth.service.runtime import get_runtime
from hubauth.service.tokens import TokenPair

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        access_token_expires_at=pair.access_token_expires_at,
    )


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        requires_mfa=result.requires_mfa,
        principal_id=result.principal_id,
        tokens=_token_response(result.tokens) if result.tokens else None,
        backup_codes_remaining=result.backup_codes_remaining,
    )


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def require_permission(module: str, action: str) -> Callable:
    """Dependency factory: authenticate, then demand ``module:action``."""

    async def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        get_runtime().permissions.require(ctx, module, action)
        return ctx

    return dependency


# -- login and tokens ------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/login/mfa", response_model=Envelope, tags=["auth"])
async def login_mfa(body: MFALoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.complete_mfa_login(body.principal_id, body.code)
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/login/backup-code", response_model=Envelope, tags=["auth"])
async def login_backup_code(body: MFALoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.complete_mfa_login_with_backup_code(
        body.principal_id, body.code
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: TokenRefreshRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"status": "logged_out"})


# -- mfa self-service ------------------------------------------------------


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(ctx: AuthContext = Depends(get_auth_context)):
    """Start enrollment. Nothing is persisted until the code is confirmed."""
    runtime = get_runtime()
    material = await runtime.auth.begin_mfa_enrollment(ctx.principal_id)
    return Envelope(
        status="ok",
        data=MFASetupResponse(
            secret=material.secret,
            otpauth_uri=material.otpauth_uri,
            qr_code=material.qr_image,
            backup_codes=material.backup_codes,
        ),
    )


@router.post("/auth/mfa/confirm", response_model=Envelope, tags=["mfa"])
async def mfa_confirm(body: MFAConfirmRequest, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.auth.confirm_mfa_enrollment(
        ctx.principal_id, body.secret, body.code, body.backup_codes
    )
    return Envelope(status="ok", data={"status": "enabled"})


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.auth.disable_mfa(ctx.principal_id, body.password)
    return Envelope(status="ok", data={"status": "disabled"})


@router.post("/auth/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(
    body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    codes = await runtime.auth.regenerate_backup_codes(ctx.principal_id, body.password)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_principal(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    account = runtime.store.get_account(ctx.principal_id)
    if not account:
        raise NotFoundError("User not found")
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            principal_id=account.id,
            email=account.email,
            name=account.name,
            tenant_id=account.tenant_id,
            roles=ctx.roles,
            is_super_admin=account.is_super_admin,
            mfa_enabled=account.mfa_enabled,
            permissions=runtime.permissions.effective_permissions(ctx),
        ),
    )


# -- administration --------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(require_permission("users", "read")),
):
    runtime = get_runtime()
    accounts = runtime.accounts.list_accounts(ctx, limit=limit)
    return Envelope(
        status="ok",
        data=[
            AccountSummary(
                id=a.id,
                email=a.email,
                name=a.name,
                tenant_id=a.tenant_id,
                is_super_admin=a.is_super_admin,
                locked=a.locked,
                mfa_enabled=a.mfa_enabled,
                created_at=a.created_at,
            )
            for a in accounts
        ],
    )


@router.post(
    "/admin/users/{account_id}/roles/{role_id}",
    response_model=Envelope,
    status_code=201,
    tags=["admin"],
)
async def admin_assign_role(
    account_id: str,
    role_id: str,
    ctx: AuthContext = Depends(require_permission("users", "assign_roles")),
):
    runtime = get_runtime()
    assignment = runtime.accounts.assign_role(ctx, account_id, role_id)
    return Envelope(
        status="ok",
        data=RoleAssignmentResponse(
            account_id=assignment.account_id,
            role_id=assignment.role_id,
            created_at=assignment.created_at,
        ),
    )


@router.delete("/admin/users/{account_id}/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def admin_remove_role(
    account_id: str,
    role_id: str,
    ctx: AuthContext = Depends(require_permission("users", "assign_roles")),
):
    runtime = get_runtime()
    runtime.accounts.remove_role(ctx, account_id, role_id)
    return Envelope(status="ok", data={"status": "removed"})


@router.post("/admin/users/{account_id}/lock", response_model=Envelope, tags=["admin"])
async def admin_set_locked(
    account_id: str,
    body: LockRequest,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    account = runtime.accounts.set_locked(ctx, account_id, body.locked)
    return Envelope(status="ok", data={"id": account.id, "locked": account.locked})


@router.post("/admin/users/{account_id}/password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    account_id: str,
    body: PasswordResetRequest,
    ctx: AuthContext = Depends(require_permission("users", "reset_password")),
):
    runtime = get_runtime()
    runtime.accounts.reset_password(ctx, account_id, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/admin/users/delete", response_model=Envelope, tags=["admin"])
async def admin_delete_users(
    body: BulkDeleteRequest,
    ctx: AuthContext = Depends(require_permission("users", "delete")),
):
    runtime = get_runtime()
    deleted = runtime.accounts.delete_accounts(ctx, body.account_ids)
    return Envelope(status="ok", data=BulkDeleteResponse(deleted=deleted))


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def admin_audit_logs(
    tenant_id: Optional[str] = Query(None, max_length=128),
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(require_permission("audit", "read")),
):
    runtime = get_runtime()
    entries = runtime.accounts.list_audit_logs(ctx, tenant_id=tenant_id, limit=limit)
    return Envelope(
        status="ok",
        data=[
            AuditLogResponse(
                id=e.id,
                action=e.action,
                resource=e.resource,
                actor_id=e.actor_id,
                tenant_id=e.tenant_id,
                resource_id=e.resource_id,
                changes_before=e.changes_before,
                changes_after=e.changes_after,
                metadata=e.metadata,
                is_suspicious=e.is_suspicious,
                ip_address=e.ip_address,
                user_agent=e.user_agent,
                created_at=e.created_at,
            )
            for e in entries
        ],
    )
