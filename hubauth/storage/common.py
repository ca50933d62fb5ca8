"""Contract and helpers shared by the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
from typing import Iterable, List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from hubauth.logging import get_logger
from hubauth.storage.models import Account, AuditLogEntry, Role, RoleAssignment, Tenant

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_tenant(self, name: str, *, tenant_id: Optional[str] = None) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        is_super_admin: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Account]: ...

    def update_password(self, account_id: str, password_hash: str) -> bool: ...

    def set_locked(self, account_id: str, locked: bool) -> Optional[Account]: ...

    def soft_delete_accounts(self, account_ids: Iterable[str]) -> int: ...

    def enable_mfa(
        self, account_id: str, secret: str, backup_code_digests: Iterable[str]
    ) -> bool: ...

    def disable_mfa(self, account_id: str) -> bool: ...

    def replace_backup_codes(
        self, account_id: str, backup_code_digests: Iterable[str]
    ) -> bool: ...

    def consume_backup_code(self, account_id: str, digest: str) -> Optional[int]: ...

    def create_role(
        self,
        name: str,
        permissions: Iterable[str],
        *,
        tenant_id: Optional[str] = None,
        is_system_role: bool = False,
        description: Optional[str] = None,
    ) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(
        self, name: str, tenant_id: Optional[str] = None
    ) -> Optional[Role]: ...

    def assign_role(self, account_id: str, role_id: str) -> RoleAssignment: ...

    def remove_role(self, account_id: str, role_id: str) -> bool: ...

    def list_account_roles(self, account_id: str) -> List[Role]: ...

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_audit_logs(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        try:
            self._fernet = Fernet(_derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # A secret that cannot be decrypted cannot verify a code either
            logger.warning("mfa_secret_decrypt_failed")
            return None


__all__ = ["AuthStore", "SecretCipher", "normalize_email"]
