"""Privileged account mutations.

Every operation runs the same sequence: permission gate, tenant check,
mutation, then a best-effort audit record.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from hubauth.logging import get_logger
from hubauth.service.audit import (
    AuditAction,
    AuditEvent,
    AuditRecorder,
    AuditResource,
    create_diff,
)
from hubauth.service.auth import AuthContext
from hubauth.service.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from hubauth.service.passwords import CredentialVerifier, validate_password_strength
from hubauth.service.permissions import PermissionResolver
from hubauth.service.tenancy import (
    apply_tenant_filter,
    optional_tenant_filter,
    validate_tenant_access,
)
from hubauth.storage.common import AuthStore
from hubauth.storage.errors import MISSING_REFERENCE, ConstraintViolation
from hubauth.storage.models import Account, AuditLogEntry, RoleAssignment

logger = get_logger(__name__)


def _account_snapshot(account: Account) -> dict:
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "tenant_id": account.tenant_id,
        "is_super_admin": account.is_super_admin,
        "locked": account.locked,
        "mfa_enabled": account.mfa_enabled,
        "password_hash": account.password_hash,
    }


def _split_diff(before: dict, after: dict) -> Tuple[dict, dict]:
    """Changed fields only, as separate before and after maps."""
    diff = create_diff(before, after)
    return (
        {key: change["before"] for key, change in diff.items()},
        {key: change["after"] for key, change in diff.items()},
    )


class AccountAdminService:
    def __init__(
        self,
        store: AuthStore,
        resolver: PermissionResolver,
        verifier: CredentialVerifier,
        audit: AuditRecorder,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.verifier = verifier
        self.audit = audit

    def _target(self, ctx: AuthContext, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account or account.is_deleted:
            raise NotFoundError("User not found")
        validate_tenant_access(ctx, account.tenant_id)
        return account

    def _event(self, ctx: AuthContext, action: AuditAction, resource_id: str, **kwargs) -> AuditEvent:
        return AuditEvent(
            actor_id=ctx.principal_id,
            tenant_id=ctx.tenant_id,
            action=action,
            resource=AuditResource.USER,
            resource_id=resource_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            **kwargs,
        )

    def _role_names(self, account_id: str) -> List[str]:
        return sorted(role.name for role in self.store.list_account_roles(account_id))

    def assign_role(self, ctx: AuthContext, account_id: str, role_id: str) -> RoleAssignment:
        self.resolver.require(ctx, "users", "assign_roles")
        account = self._target(ctx, account_id)
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("Role not found")
        if role.tenant_id is not None and role.tenant_id != account.tenant_id:
            raise ForbiddenError("Role belongs to a different tenant")
        if not self.resolver.can_grant(ctx, role):
            raise ForbiddenError("Cannot grant permissions you do not hold")
        roles_before = self._role_names(account.id)
        try:
            assignment = self.store.assign_role(account.id, role.id)
        except ConstraintViolation as exc:
            if exc.kind == MISSING_REFERENCE:
                raise NotFoundError("User or role not found", detail=exc.detail)
            raise ConflictError("User already has this role", detail=exc.detail)
        self.audit.record(
            self._event(
                ctx,
                AuditAction.ASSIGN_ROLE,
                account.id,
                before={"roles": roles_before},
                after={"roles": self._role_names(account.id)},
                metadata={"role_id": role.id, "role_name": role.name},
            )
        )
        return assignment

    def remove_role(self, ctx: AuthContext, account_id: str, role_id: str) -> None:
        self.resolver.require(ctx, "users", "assign_roles")
        account = self._target(ctx, account_id)
        role = self.store.get_role(role_id)
        roles_before = self._role_names(account.id)
        if not self.store.remove_role(account.id, role_id):
            raise NotFoundError("User does not have this role")
        self.audit.record(
            self._event(
                ctx,
                AuditAction.REMOVE_ROLE,
                account.id,
                before={"roles": roles_before},
                after={"roles": self._role_names(account.id)},
                metadata={"role_id": role_id, "role_name": role.name if role else None},
            )
        )

    def set_locked(self, ctx: AuthContext, account_id: str, locked: bool) -> Account:
        """Lock or unlock an account. Super admins only."""
        if not ctx.is_super_admin:
            raise ForbiddenError("Super admin access required")
        if account_id == ctx.principal_id and locked:
            raise ForbiddenError("Cannot lock your own account")
        account = self._target(ctx, account_id)
        updated = self.store.set_locked(account_id, locked)
        if not updated:
            raise NotFoundError("User not found")
        before, after = _split_diff(_account_snapshot(account), _account_snapshot(updated))
        self.audit.record(
            self._event(
                ctx,
                AuditAction.SUSPEND if locked else AuditAction.ACTIVATE,
                account_id,
                before=before,
                after=after,
                metadata={"locked": locked},
            )
        )
        return updated

    def reset_password(self, ctx: AuthContext, account_id: str, new_password: str) -> None:
        self.resolver.require(ctx, "users", "reset_password")
        account = self._target(ctx, account_id)
        if account.is_super_admin and not ctx.is_super_admin:
            raise ForbiddenError("Cannot reset a super admin password")
        strength = validate_password_strength(new_password)
        if not strength.valid:
            raise BadRequestError("Password is too weak", detail={"errors": strength.errors})
        self.store.update_password(account.id, self.verifier.hash(new_password))
        updated = self.store.get_account(account.id) or account
        # password_hash is redacted on both sides; the entry only shows that it changed
        before, after = _split_diff(_account_snapshot(account), _account_snapshot(updated))
        self.audit.record(
            self._event(
                ctx,
                AuditAction.RESET_PASSWORD,
                account.id,
                before=before,
                after=after,
                metadata={"target_is_super_admin": account.is_super_admin},
            )
        )

    def delete_accounts(self, ctx: AuthContext, account_ids: Iterable[str]) -> int:
        """Soft-delete several accounts; all targets are checked before any change."""
        self.resolver.require(ctx, "users", "delete")
        ids = list(dict.fromkeys(account_ids))
        if not ids:
            raise BadRequestError("No users selected")
        targets: List[Account] = []
        for account_id in ids:
            account = self._target(ctx, account_id)
            if account.id == ctx.principal_id:
                raise ForbiddenError("Cannot delete your own account")
            if account.is_super_admin and not ctx.is_super_admin:
                raise ForbiddenError("Cannot delete super admin accounts")
            targets.append(account)
        deleted = self.store.soft_delete_accounts(a.id for a in targets)
        logger.info("accounts_soft_deleted", actor_id=ctx.principal_id, count=deleted)
        self.audit.record(
            self._event(
                ctx,
                AuditAction.DELETE,
                ",".join(a.id for a in targets),
                before={"accounts": [_account_snapshot(a) for a in targets]},
                metadata={"count": deleted},
            )
        )
        return deleted

    def list_accounts(self, ctx: AuthContext, limit: int = 100) -> List[Account]:
        self.resolver.require(ctx, "users", "read")
        scope = apply_tenant_filter(ctx)
        return self.store.list_accounts(tenant_id=scope.get("tenant_id"), limit=limit)

    def list_audit_logs(
        self, ctx: AuthContext, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        self.resolver.require(ctx, "audit", "read")
        scope = optional_tenant_filter(ctx, tenant_id)
        return self.store.list_audit_logs(tenant_id=scope.get("tenant_id"), limit=limit)
