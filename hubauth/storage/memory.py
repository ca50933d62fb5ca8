from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from hubauth.storage.common import SecretCipher, normalize_email
from hubauth.storage.errors import ConstraintViolation
from hubauth.storage.models import (
    Account,
    AuditLogEntry,
    Role,
    RoleAssignment,
    Tenant,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process backing store used by tests and single-node development.

    Records are held with the MFA secret encrypted; callers receive decrypted
    copies so mutations never leak back into the store.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.tenants: Dict[str, Tenant] = {}
        self.accounts: Dict[str, Account] = {}
        self.roles: Dict[str, Role] = {}
        self.assignments: Dict[tuple[str, str], RoleAssignment] = {}
        self.audit_logs: List[AuditLogEntry] = []
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    # -- tenants ---------------------------------------------------------

    def create_tenant(self, name: str, *, tenant_id: Optional[str] = None) -> Tenant:
        with self._data_lock:
            tid = tenant_id or new_id()
            if tid in self.tenants:
                raise ConstraintViolation("tenant exists", {"tenant_id": tid})
            tenant = Tenant(id=tid, name=name)
            self.tenants[tid] = tenant
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    # -- accounts --------------------------------------------------------

    def _public(self, record: Account) -> Account:
        return replace(record, mfa_secret=self._cipher.decrypt(record.mfa_secret))

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        is_super_admin: bool = False,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(a.email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation.missing("tenant not found", tenant_id=tenant_id)
            account = Account(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                name=name,
                tenant_id=tenant_id,
                is_super_admin=is_super_admin,
            )
            self.accounts[account.id] = account
            return self._public(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            record = self.accounts.get(account_id)
            return self._public(record) if record else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            record = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return self._public(record) if record else None

    def list_accounts(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Account]:
        with self._data_lock:
            results = [
                a
                for a in self.accounts.values()
                if a.deleted_at is None and (tenant_id is None or a.tenant_id == tenant_id)
            ]
            results.sort(key=lambda a: a.created_at, reverse=True)
            return [self._public(a) for a in results[:limit]]

    def update_password(self, account_id: str, password_hash: str) -> bool:
        with self._data_lock:
            record = self.accounts.get(account_id)
            if not record:
                return False
            record.password_hash = password_hash
            record.updated_at = utcnow()
            return True

    def set_locked(self, account_id: str, locked: bool) -> Optional[Account]:
        with self._data_lock:
            record = self.accounts.get(account_id)
            if not record:
                return None
            record.locked = locked
            record.updated_at = utcnow()
            return self._public(record)

    def soft_delete_accounts(self, account_ids: Iterable[str]) -> int:
        now = utcnow()
        deleted = 0
        with self._data_lock:
            for account_id in set(account_ids):
                record = self.accounts.get(account_id)
                if record and record.deleted_at is None:
                    record.deleted_at = now
                    record.updated_at = now
                    deleted += 1
        return deleted

    # -- mfa -------------------------------------------------------------

    def enable_mfa(
        self, account_id: str, secret: str, backup_code_digests: Iterable[str]
    ) -> bool:
        """Persist secret, flag and backup codes in one step.

        Returns False if the account is missing or MFA is already enabled.
        """
        encrypted = self._cipher.encrypt(secret)
        digests = frozenset(backup_code_digests)
        with self._data_lock:
            record = self.accounts.get(account_id)
            if not record or record.mfa_enabled:
                return False
            record.mfa_secret = encrypted
            record.mfa_enabled = True
            record.backup_codes = digests
            record.updated_at = utcnow()
            return True

    def disable_mfa(self, account_id: str) -> bool:
        with self._data_lock:
            record = self.accounts.get(account_id)
            if not record:
                return False
            record.mfa_secret = None
            record.mfa_enabled = False
            record.backup_codes = frozenset()
            record.updated_at = utcnow()
            return True

    def replace_backup_codes(
        self, account_id: str, backup_code_digests: Iterable[str]
    ) -> bool:
        digests = frozenset(backup_code_digests)
        with self._data_lock:
            record = self.accounts.get(account_id)
            if not record or not record.mfa_enabled:
                return False
            record.backup_codes = digests
            record.updated_at = utcnow()
            return True

    def consume_backup_code(self, account_id: str, digest: str) -> Optional[int]:
        """Remove ``digest`` if present and return how many codes remain.

        Returns None when the code was not there, so of two concurrent
        redemptions exactly one sees a number.
        """
        with self._data_lock:
            record = self.accounts.get(account_id)
            if not record or digest not in record.backup_codes:
                return None
            record.backup_codes = record.backup_codes - {digest}
            record.updated_at = utcnow()
            return len(record.backup_codes)

    # -- roles -----------------------------------------------------------

    def create_role(
        self,
        name: str,
        permissions: Iterable[str],
        *,
        tenant_id: Optional[str] = None,
        is_system_role: bool = False,
        description: Optional[str] = None,
    ) -> Role:
        with self._data_lock:
            if any(r.name == name and r.tenant_id == tenant_id for r in self.roles.values()):
                raise ConstraintViolation(
                    "role already exists", {"name": name, "tenant_id": tenant_id}
                )
            role = Role(
                id=new_id(),
                name=name,
                permissions=frozenset(permissions),
                tenant_id=tenant_id,
                is_system_role=is_system_role,
                description=description,
            )
            self.roles[role.id] = role
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(
        self, name: str, tenant_id: Optional[str] = None
    ) -> Optional[Role]:
        with self._data_lock:
            role = next(
                (
                    r
                    for r in self.roles.values()
                    if r.name == name and r.tenant_id == tenant_id
                ),
                None,
            )
            return replace(role) if role else None

    def assign_role(self, account_id: str, role_id: str) -> RoleAssignment:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation.missing("account not found", account_id=account_id)
            if role_id not in self.roles:
                raise ConstraintViolation.missing("role not found", role_id=role_id)
            key = (account_id, role_id)
            if key in self.assignments:
                raise ConstraintViolation(
                    "User already has this role",
                    {"account_id": account_id, "role_id": role_id},
                )
            assignment = RoleAssignment(account_id=account_id, role_id=role_id)
            self.assignments[key] = assignment
            return replace(assignment)

    def remove_role(self, account_id: str, role_id: str) -> bool:
        with self._data_lock:
            return self.assignments.pop((account_id, role_id), None) is not None

    def list_account_roles(self, account_id: str) -> List[Role]:
        with self._data_lock:
            return [
                replace(self.roles[role_id])
                for (owner, role_id) in self.assignments
                if owner == account_id and role_id in self.roles
            ]

    # -- audit -----------------------------------------------------------

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_logs.append(entry)
            return entry

    def list_audit_logs(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            results = [
                e for e in self.audit_logs if tenant_id is None or e.tenant_id == tenant_id
            ]
            return list(reversed(results))[:limit]
