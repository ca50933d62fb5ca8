from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Tenant:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    """A principal that can authenticate.

    ``tenant_id`` of ``None`` marks a platform-level account. ``mfa_secret``
    is the decrypted base32 TOTP secret; stores encrypt it at rest.
    ``backup_codes`` holds SHA-256 digests of normalised one-time codes.
    """

    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    tenant_id: Optional[str] = None
    is_super_admin: bool = False
    locked: bool = False
    deleted_at: Optional[datetime] = None
    mfa_secret: Optional[str] = None
    mfa_enabled: bool = False
    backup_codes: FrozenSet[str] = frozenset()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def can_authenticate(self) -> bool:
        return not self.locked and self.deleted_at is None


@dataclass
class Role:
    id: str
    name: str
    permissions: FrozenSet[str] = frozenset()
    tenant_id: Optional[str] = None
    is_system_role: bool = False
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_global(self) -> bool:
        return self.tenant_id is None


@dataclass
class RoleAssignment:
    account_id: str
    role_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditLogEntry:
    id: str
    action: str
    resource: str
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    resource_id: Optional[str] = None
    changes_before: Dict | None = None
    changes_after: Dict | None = None
    metadata: Dict | None = None
    is_suspicious: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
