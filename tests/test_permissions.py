"""Unit tests for the permission catalog, patterns, resolver and role seeding."""

import pytest

from hubauth.service.auth import AuthContext
from hubauth.service.errors import ForbiddenError
from hubauth.service.permissions import (
    CATALOG,
    DEFAULT_ROLES,
    PermissionPattern,
    create_role,
    parse_patterns,
    seed_default_roles,
)


def _ctx(account, **overrides):
    values = dict(
        principal_id=account.id,
        tenant_id=account.tenant_id,
        is_super_admin=account.is_super_admin,
    )
    values.update(overrides)
    return AuthContext(**values)


@pytest.fixture
def tenant(store):
    return store.create_tenant("Corner Shop", tenant_id="tenant-a")


@pytest.fixture
def other_tenant(store):
    return store.create_tenant("Other Shop", tenant_id="tenant-b")


class TestPatterns:
    def test_exact_match(self):
        pattern = PermissionPattern.parse("users:delete")
        assert pattern.matches("users", "delete")
        assert not pattern.matches("users", "read")
        assert not pattern.matches("vouchers", "delete")

    def test_module_wildcard(self):
        pattern = PermissionPattern.parse("users:*")
        assert pattern.matches("users", "delete")
        assert not pattern.matches("vouchers", "delete")

    def test_global_wildcard(self):
        assert PermissionPattern.parse("*:*").matches("vouchers", "approve")

    @pytest.mark.parametrize(
        "raw", ["users", "users:", ":delete", "usr:delete", "users:destroy", "*:delete"]
    )
    def test_unknown_or_malformed_rejected(self, raw):
        with pytest.raises(ValueError):
            PermissionPattern.parse(raw)

    def test_covers(self):
        assert PermissionPattern.parse("users:*").covers(PermissionPattern.parse("users:read"))
        assert not PermissionPattern.parse("users:read").covers(PermissionPattern.parse("users:*"))
        assert PermissionPattern.parse("*:*").covers(PermissionPattern.parse("users:*"))

    def test_catalog_includes_reset_password(self):
        assert "users:reset_password" in CATALOG
        assert CATALOG.has_module("audit")
        assert not CATALOG.has_action("users", "manage_roles")

    def test_default_roles_are_valid(self):
        for definition in DEFAULT_ROLES:
            parse_patterns(definition.permissions)


class TestResolver:
    def test_super_admin_passes_everything_without_roles(self, resolver, make_account):
        root = make_account("root@example.com", is_super_admin=True)
        ctx = _ctx(root)
        assert resolver.has_permission(ctx, "users", "delete")
        assert resolver.has_permission(ctx, "billing", "view_all")
        assert resolver.effective_permissions(ctx) == ["*:*"]

    def test_admin_delete_requires_matching_pattern(self, resolver, store, make_account, tenant):
        account = make_account("admin@example.com", tenant_id=tenant.id)
        ctx = _ctx(account, roles=["admin"])
        assert not resolver.has_permission(ctx, "users", "delete")

        role = create_role(store, "shop-admin", ["users:read"], tenant_id=tenant.id)
        store.assign_role(account.id, role.id)
        assert not resolver.has_permission(ctx, "users", "delete")

        wide = create_role(store, "user-manager", ["users:*"], tenant_id=tenant.id)
        store.assign_role(account.id, wide.id)
        assert resolver.has_permission(ctx, "users", "delete")

    def test_roles_of_other_tenants_never_apply(self, resolver, store, make_account, tenant, other_tenant):
        account = make_account("clerk@example.com", tenant_id=tenant.id)
        foreign = create_role(store, "foreign", ["users:delete"], tenant_id=other_tenant.id)
        store.assign_role(account.id, foreign.id)
        assert not resolver.has_permission(_ctx(account), "users", "delete")

    def test_global_roles_apply_in_any_tenant(self, resolver, store, make_account, tenant):
        roles = seed_default_roles(store)
        account = make_account("member@example.com", tenant_id=tenant.id)
        store.assign_role(account.id, roles["user"].id)
        ctx = _ctx(account)
        assert resolver.has_permission(ctx, "vouchers", "redeem")
        assert not resolver.has_permission(ctx, "vouchers", "approve")
        assert "vouchers:redeem" in resolver.effective_permissions(ctx)

    def test_composites(self, resolver, store, make_account):
        account = make_account("ops@example.com")
        role = create_role(store, "ops", ["audit:read", "users:read"])
        store.assign_role(account.id, role.id)
        ctx = _ctx(account)
        assert resolver.any_of(ctx, [("billing", "manage"), ("audit", "read")])
        assert not resolver.any_of(ctx, [("billing", "manage")])
        assert resolver.all_of(ctx, [("audit", "read"), ("users", "read")])
        assert not resolver.all_of(ctx, [("audit", "read"), ("users", "delete")])

    def test_require_variants_raise_forbidden(self, resolver, make_account):
        ctx = _ctx(make_account("nobody@example.com"))
        with pytest.raises(ForbiddenError) as exc_info:
            resolver.require(ctx, "users", "delete")
        assert exc_info.value.detail == {"required": "users:delete"}
        with pytest.raises(ForbiddenError):
            resolver.require_any(ctx, [("users", "delete"), ("users", "read")])
        with pytest.raises(ForbiddenError):
            resolver.require_all(ctx, [("users", "read")])

    def test_unknown_stored_permission_grants_nothing(self, resolver, store, make_account):
        account = make_account("legacy@example.com")
        role = store.create_role("legacy", ["users:obliterate", "audit:read"])
        store.assign_role(account.id, role.id)
        ctx = _ctx(account)
        assert resolver.effective_permissions(ctx) == ["audit:read"]

    def test_can_grant(self, resolver, store, make_account):
        account = make_account("manager@example.com")
        held = create_role(store, "manager", ["users:*"])
        store.assign_role(account.id, held.id)
        ctx = _ctx(account)
        assert resolver.can_grant(ctx, create_role(store, "reader", ["users:read"]))
        assert not resolver.can_grant(ctx, create_role(store, "auditor", ["audit:read"]))


class TestRoleCreation:
    def test_create_role_rejects_unknown_permissions(self, store):
        with pytest.raises(ValueError):
            create_role(store, "bad", ["users:explode"])
        assert store.get_role_by_name("bad") is None

    def test_seeding_is_idempotent(self, store):
        first = seed_default_roles(store)
        second = seed_default_roles(store)
        assert set(first) == {"super_admin", "admin", "user"}
        assert {name: role.id for name, role in first.items()} == {
            name: role.id for name, role in second.items()
        }
        assert all(role.is_system_role for role in second.values())
        assert first["super_admin"].permissions == frozenset({"*:*"})
