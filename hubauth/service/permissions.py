from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from hubauth.logging import get_logger
from hubauth.service.errors import ForbiddenError
from hubauth.storage.common import AuthStore
from hubauth.storage.errors import ConstraintViolation
from hubauth.storage.models import Role

if TYPE_CHECKING:
    from hubauth.service.auth import AuthContext

logger = get_logger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class PermissionDef:
    module: str
    action: str
    description: str

    @property
    def key(self) -> str:
        return f"{self.module}:{self.action}"


_CATALOG: Tuple[PermissionDef, ...] = (
    PermissionDef("shops", "create", "Create new shop"),
    PermissionDef("shops", "read", "View shop details"),
    PermissionDef("shops", "update", "Update shop information"),
    PermissionDef("shops", "delete", "Delete shop"),
    PermissionDef("shops", "approve", "Approve shop enrollment"),
    PermissionDef("shops", "suspend", "Suspend shop"),
    PermissionDef("users", "create", "Create new user"),
    PermissionDef("users", "read", "View user details"),
    PermissionDef("users", "read_all", "View all users across tenants"),
    PermissionDef("users", "update", "Update user information"),
    PermissionDef("users", "delete", "Delete user"),
    PermissionDef("users", "assign_roles", "Assign roles to users"),
    PermissionDef("users", "reset_password", "Reset another user's password"),
    PermissionDef("receipts", "create", "Upload receipt"),
    PermissionDef("receipts", "read", "View receipts"),
    PermissionDef("receipts", "read_own", "View own receipts only"),
    PermissionDef("receipts", "update", "Update receipt details"),
    PermissionDef("receipts", "delete", "Delete receipt"),
    PermissionDef("receipts", "verify", "Verify receipt authenticity"),
    PermissionDef("receipts", "reject", "Reject receipt"),
    PermissionDef("vouchers", "create", "Create voucher"),
    PermissionDef("vouchers", "read", "View vouchers"),
    PermissionDef("vouchers", "update", "Update voucher"),
    PermissionDef("vouchers", "delete", "Delete voucher"),
    PermissionDef("vouchers", "approve", "Approve voucher"),
    PermissionDef("vouchers", "redeem", "Redeem voucher"),
    PermissionDef("campaigns", "create", "Create campaign"),
    PermissionDef("campaigns", "read", "View campaigns"),
    PermissionDef("campaigns", "update", "Update campaign"),
    PermissionDef("campaigns", "delete", "Delete campaign"),
    PermissionDef("campaigns", "activate", "Activate campaign"),
    PermissionDef("campaigns", "pause", "Pause campaign"),
    PermissionDef("ads", "create", "Create ad"),
    PermissionDef("ads", "read", "View ads"),
    PermissionDef("ads", "update", "Update ad"),
    PermissionDef("ads", "delete", "Delete ad"),
    PermissionDef("ads", "approve", "Approve ad"),
    PermissionDef("ads", "view_analytics", "View ad analytics"),
    PermissionDef("analytics", "view", "View analytics dashboard"),
    PermissionDef("analytics", "view_all", "View all tenants analytics"),
    PermissionDef("analytics", "export", "Export analytics data"),
    PermissionDef("roles", "create", "Create roles"),
    PermissionDef("roles", "read", "View roles"),
    PermissionDef("roles", "update", "Update roles"),
    PermissionDef("roles", "delete", "Delete roles"),
    PermissionDef("config", "read", "View system config"),
    PermissionDef("config", "update", "Update system config"),
    PermissionDef("config", "manage_integrations", "Manage integrations"),
    PermissionDef("audit", "read", "View audit logs"),
    PermissionDef("audit", "read_all", "View all audit logs across tenants"),
    PermissionDef("audit", "export", "Export audit logs"),
    PermissionDef("gdpr", "export_data", "Export user data"),
    PermissionDef("gdpr", "delete_data", "Delete user data"),
    PermissionDef("gdpr", "manage_consents", "Manage GDPR consents"),
    PermissionDef("billing", "view", "View billing information"),
    PermissionDef("billing", "manage", "Manage billing settings"),
    PermissionDef("billing", "view_all", "View all tenants billing"),
)


class PermissionCatalog:
    """Closed registry of known ``module:action`` pairs."""

    def __init__(self, permissions: Iterable[PermissionDef] = _CATALOG) -> None:
        self._by_key: Dict[str, PermissionDef] = {}
        self._modules: Dict[str, set[str]] = {}
        for perm in permissions:
            if perm.key in self._by_key:
                raise ValueError(f"duplicate permission {perm.key}")
            self._by_key[perm.key] = perm
            self._modules.setdefault(perm.module, set()).add(perm.action)

    def __contains__(self, key: str) -> bool:
        return key in self._by_key

    def __iter__(self):
        return iter(self._by_key.values())

    def __len__(self) -> int:
        return len(self._by_key)

    def has_module(self, module: str) -> bool:
        return module in self._modules

    def has_action(self, module: str, action: str) -> bool:
        return action in self._modules.get(module, ())

    def modules(self) -> List[str]:
        return sorted(self._modules)


CATALOG = PermissionCatalog()


@dataclass(frozen=True)
class PermissionPattern:
    module: str
    action: str

    @classmethod
    def parse(cls, raw: str, catalog: PermissionCatalog = CATALOG) -> "PermissionPattern":
        """Parse ``module:action``, ``module:*`` or ``*:*``.

        Raises ValueError for anything the catalog does not know.
        """
        module, sep, action = (raw or "").strip().partition(":")
        if not sep or not module or not action:
            raise ValueError(f"permission must look like module:action, got {raw!r}")
        if module == WILDCARD:
            if action != WILDCARD:
                raise ValueError(f"only '*:*' may use a module wildcard, got {raw!r}")
        elif not catalog.has_module(module):
            raise ValueError(f"unknown permission module {module!r}")
        elif action != WILDCARD and not catalog.has_action(module, action):
            raise ValueError(f"unknown permission {raw!r}")
        return cls(module=module, action=action)

    def matches(self, module: str, action: str) -> bool:
        if self.module == WILDCARD:
            return True
        if self.module != module:
            return False
        return self.action == WILDCARD or self.action == action

    def covers(self, other: "PermissionPattern") -> bool:
        """True if everything ``other`` grants is also granted by ``self``."""
        if self.module == WILDCARD:
            return True
        if self.module != other.module:
            return False
        return self.action == WILDCARD or self.action == other.action

    def __str__(self) -> str:
        return f"{self.module}:{self.action}"


def parse_patterns(
    raw: Iterable[str], catalog: PermissionCatalog = CATALOG
) -> FrozenSet[PermissionPattern]:
    return frozenset(PermissionPattern.parse(item, catalog) for item in raw)


Requirement = Tuple[str, str]


class PermissionResolver:
    """Effective-permission computation over the principal's assigned roles.

    Super admins short-circuit without a role lookup. Roles bound to a tenant
    other than the principal's never contribute.
    """

    def __init__(self, store: AuthStore, catalog: PermissionCatalog = CATALOG) -> None:
        self.store = store
        self.catalog = catalog

    def _role_applies(self, role: Role, tenant_id: Optional[str]) -> bool:
        return role.tenant_id is None or role.tenant_id == tenant_id

    def patterns_for_roles(
        self, roles: Iterable[Role], tenant_id: Optional[str]
    ) -> FrozenSet[PermissionPattern]:
        patterns: set[PermissionPattern] = set()
        for role in roles:
            if not self._role_applies(role, tenant_id):
                continue
            for raw in role.permissions:
                try:
                    patterns.add(PermissionPattern.parse(raw, self.catalog))
                except ValueError:
                    # Stored data predates a catalog change; never grant on it
                    logger.warning("role_permission_unknown", role=role.name, permission=raw)
        return frozenset(patterns)

    def _patterns(self, ctx: "AuthContext") -> FrozenSet[PermissionPattern]:
        roles = self.store.list_account_roles(ctx.principal_id)
        return self.patterns_for_roles(roles, ctx.tenant_id)

    def effective_permissions(self, ctx: "AuthContext") -> List[str]:
        if ctx.is_super_admin:
            return [f"{WILDCARD}:{WILDCARD}"]
        return sorted(str(p) for p in self._patterns(ctx))

    def has_permission(self, ctx: "AuthContext", module: str, action: str) -> bool:
        if ctx.is_super_admin:
            return True
        return any(p.matches(module, action) for p in self._patterns(ctx))

    def any_of(self, ctx: "AuthContext", required: Sequence[Requirement]) -> bool:
        if ctx.is_super_admin:
            return True
        patterns = self._patterns(ctx)
        return any(p.matches(m, a) for (m, a) in required for p in patterns)

    def all_of(self, ctx: "AuthContext", required: Sequence[Requirement]) -> bool:
        if ctx.is_super_admin:
            return True
        patterns = self._patterns(ctx)
        return all(any(p.matches(m, a) for p in patterns) for (m, a) in required)

    def can_grant(self, ctx: "AuthContext", role: Role) -> bool:
        """Whether ``ctx`` already holds everything ``role`` would confer."""
        if ctx.is_super_admin:
            return True
        held = self._patterns(ctx)
        granted = self.patterns_for_roles([role], role.tenant_id)
        return all(any(h.covers(g) for h in held) for g in granted)

    def require(self, ctx: "AuthContext", module: str, action: str) -> None:
        if not self.has_permission(ctx, module, action):
            logger.info(
                "permission_denied",
                principal_id=ctx.principal_id,
                permission=f"{module}:{action}",
            )
            raise ForbiddenError(
                "Insufficient permissions", detail={"required": f"{module}:{action}"}
            )

    def require_any(self, ctx: "AuthContext", required: Sequence[Requirement]) -> None:
        if not self.any_of(ctx, required):
            raise ForbiddenError(
                "Insufficient permissions",
                detail={"required_any": [f"{m}:{a}" for m, a in required]},
            )

    def require_all(self, ctx: "AuthContext", required: Sequence[Requirement]) -> None:
        if not self.all_of(ctx, required):
            raise ForbiddenError(
                "Insufficient permissions",
                detail={"required_all": [f"{m}:{a}" for m, a in required]},
            )


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    description: str
    permissions: Tuple[str, ...]


DEFAULT_ROLES: Tuple[RoleDefinition, ...] = (
    RoleDefinition(
        name="super_admin",
        description="Super administrator with full system access",
        permissions=("*:*",),
    ),
    RoleDefinition(
        name="admin",
        description="Shop administrator with full shop management access",
        permissions=(
            "shops:read",
            "shops:update",
            "users:create",
            "users:read",
            "users:update",
            "users:delete",
            "users:assign_roles",
            "receipts:read",
            "receipts:verify",
            "receipts:reject",
            "vouchers:create",
            "vouchers:read",
            "vouchers:update",
            "vouchers:delete",
            "vouchers:approve",
            "campaigns:create",
            "campaigns:read",
            "campaigns:update",
            "campaigns:delete",
            "campaigns:activate",
            "campaigns:pause",
            "ads:create",
            "ads:read",
            "ads:update",
            "ads:delete",
            "ads:view_analytics",
            "analytics:view",
            "analytics:export",
            "roles:create",
            "roles:read",
            "roles:update",
            "roles:delete",
            "config:read",
            "config:update",
            "audit:read",
            "audit:export",
            "gdpr:export_data",
            "gdpr:delete_data",
            "gdpr:manage_consents",
            "billing:view",
            "billing:manage",
        ),
    ),
    RoleDefinition(
        name="user",
        description="End user with basic access",
        permissions=(
            "receipts:create",
            "receipts:read_own",
            "vouchers:read",
            "vouchers:redeem",
            "gdpr:export_data",
        ),
    ),
)


def create_role(
    store: AuthStore,
    name: str,
    permissions: Iterable[str],
    *,
    tenant_id: Optional[str] = None,
    description: Optional[str] = None,
    is_system_role: bool = False,
    catalog: PermissionCatalog = CATALOG,
) -> Role:
    """Validate ``permissions`` against the catalog, then persist the role."""
    patterns = parse_patterns(permissions, catalog)
    return store.create_role(
        name,
        sorted(str(p) for p in patterns),
        tenant_id=tenant_id,
        is_system_role=is_system_role,
        description=description,
    )


def seed_default_roles(store: AuthStore) -> Dict[str, Role]:
    """Create the built-in global roles that are missing. Idempotent."""
    seeded: Dict[str, Role] = {}
    for definition in DEFAULT_ROLES:
        existing = store.get_role_by_name(definition.name)
        if existing:
            seeded[definition.name] = existing
            continue
        try:
            seeded[definition.name] = create_role(
                store,
                definition.name,
                definition.permissions,
                description=definition.description,
                is_system_role=True,
            )
        except ConstraintViolation:
            # Created concurrently by another process
            role = store.get_role_by_name(definition.name)
            if role is None:
                raise
            seeded[definition.name] = role
    return seeded
