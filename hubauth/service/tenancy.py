"""Tenant scoping applied after permission checks.

A principal with no tenant is platform level and sees everything; a
tenant-scoped principal is confined to its own tenant no matter which
permissions it holds.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional

from hubauth.logging import get_logger
from hubauth.service.errors import ForbiddenError

if TYPE_CHECKING:
    from hubauth.service.auth import AuthContext

logger = get_logger(__name__)


def is_platform_level(ctx: "AuthContext") -> bool:
    return ctx.tenant_id is None


def apply_tenant_filter(ctx: "AuthContext") -> Dict[str, str]:
    """Query filter for list operations: ``{}`` or ``{"tenant_id": ...}``."""
    if is_platform_level(ctx):
        return {}
    return {"tenant_id": ctx.tenant_id}


def optional_tenant_filter(
    ctx: "AuthContext", requested_tenant_id: Optional[str] = None
) -> Dict[str, str]:
    """Like ``apply_tenant_filter`` but lets platform principals narrow to one tenant."""
    if is_platform_level(ctx):
        return {"tenant_id": requested_tenant_id} if requested_tenant_id else {}
    return {"tenant_id": ctx.tenant_id}


def validate_tenant_access(ctx: "AuthContext", resource_tenant_id: Optional[str]) -> None:
    """Raise ForbiddenError unless ``ctx`` may touch a resource of that tenant.

    Platform-level resources (``None``) are out of reach for tenant principals.
    """
    if is_platform_level(ctx):
        return
    if resource_tenant_id != ctx.tenant_id:
        logger.warning(
            "cross_tenant_access_denied",
            principal_id=ctx.principal_id,
            principal_tenant=ctx.tenant_id,
            resource_tenant=resource_tenant_id,
        )
        raise ForbiddenError("You do not have permission to access this resource")
