from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_REQUIRED_TABLES = ("tenant", "account", "role", "account_role", "audit_log")

_ACCOUNT_COLUMNS = (
    "id, email, password_hash, name, tenant_id, is_super_admin, locked, deleted_at, "
    "mfa_secret, mfa_enabled, backup_codes, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed store. Schema lives in ``scripts/schema.sql``."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    # -- row mapping -----------------------------------------------------

    def _account_from_row(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            tenant_id=str(row["tenant_id"]) if row.get("tenant_id") else None,
            is_super_admin=bool(row.get("is_super_admin", False)),
            locked=bool(row.get("locked", False)),
            deleted_at=row.get("deleted_at"),
            mfa_secret=self._cipher.decrypt(row.get("mfa_secret")),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            backup_codes=frozenset(row.get("backup_codes") or ()),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            permissions=frozenset(row.get("permissions") or ()),
            tenant_id=str(row["tenant_id"]) if row.get("tenant_id") else None,
            is_system_role=bool(row.get("is_system_role", False)),
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["id"]),
            action=row["action"],
            resource=row["resource"],
            actor_id=str(row["actor_id"]) if row.get("actor_id") else None,
            tenant_id=str(row["tenant_id"]) if row.get("tenant_id") else None,
            resource_id=row.get("resource_id"),
            changes_before=row.get("changes_before"),
            changes_after=row.get("changes_after"),
            metadata=row.get("metadata"),
            is_suspicious=bool(row.get("is_suspicious", False)),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    # -- tenants ---------------------------------------------------------

    def create_tenant(self, name: str, *, tenant_id: Optional[str] = None) -> Tenant:
        tenant = Tenant(id=tenant_id or new_id(), name=name)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO tenant (id, name, created_at) VALUES (%s, %s, %s)",
                    (tenant.id, tenant.name, tenant.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant exists", {"tenant_id": tenant.id})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, created_at FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        if not row:
            return None
        return Tenant(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    # -- accounts --------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        is_super_admin: bool = False,
    ) -> Account:
        account = Account(
            id=new_id(),
            email=normalize_email(email),
            password_hash=password_hash,
            name=name,
            tenant_id=tenant_id,
            is_super_admin=is_super_admin,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, name, tenant_id, is_super_admin, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.name,
                        account.tenant_id,
                        account.is_super_admin,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing("tenant not found", tenant_id=tenant_id)
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Account]:
        query = f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE deleted_at IS NULL"
        params: list[Any] = []
        if tenant_id is not None:
            query += " AND tenant_id = %s"
            params.append(tenant_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._account_from_row(row) for row in rows]

    def update_password(self, account_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING id",
                (password_hash, account_id),
            ).fetchone()
        return row is not None

    def set_locked(self, account_id: str, locked: bool) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET locked = %s, updated_at = now() WHERE id = %s RETURNING {_ACCOUNT_COLUMNS}",
                (locked, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def soft_delete_accounts(self, account_ids: Iterable[str]) -> int:
        ids = list(set(account_ids))
        if not ids:
            return 0
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE account SET deleted_at = now(), updated_at = now()
                WHERE id = ANY(%s) AND deleted_at IS NULL
                RETURNING id
                """,
                (ids,),
            ).fetchall()
        return len(rows)

    # -- mfa -------------------------------------------------------------

    def enable_mfa(
        self, account_id: str, secret: str, backup_code_digests: Iterable[str]
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET mfa_secret = %s, mfa_enabled = TRUE, backup_codes = %s, updated_at = now()
                WHERE id = %s AND mfa_enabled = FALSE
                RETURNING id
                """,
                (self._cipher.encrypt(secret), list(backup_code_digests), account_id),
            ).fetchone()
        return row is not None

    def disable_mfa(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET mfa_secret = NULL, mfa_enabled = FALSE, backup_codes = '{}', updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (account_id,),
            ).fetchone()
        return row is not None

    def replace_backup_codes(
        self, account_id: str, backup_code_digests: Iterable[str]
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET backup_codes = %s, updated_at = now()
                WHERE id = %s AND mfa_enabled = TRUE
                RETURNING id
                """,
                (list(backup_code_digests), account_id),
            ).fetchone()
        return row is not None

    def consume_backup_code(self, account_id: str, digest: str) -> Optional[int]:
        # The row lock taken by UPDATE serialises concurrent redemptions; the
        # loser re-evaluates the ANY() predicate and matches nothing.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET backup_codes = array_remove(backup_codes, %s), updated_at = now()
                WHERE id = %s AND %s = ANY(backup_codes)
                RETURNING cardinality(backup_codes) AS remaining
                """,
                (digest, account_id, digest),
            ).fetchone()
        if not row:
            return None
        return int(row["remaining"])

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
        role = Role(
            id=new_id(),
            name=name,
            permissions=frozenset(permissions),
            tenant_id=tenant_id,
            is_system_role=is_system_role,
            description=description,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role (id, name, permissions, tenant_id, is_system_role, description, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        role.id,
                        role.name,
                        sorted(role.permissions),
                        role.tenant_id,
                        role.is_system_role,
                        role.description,
                        role.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "role already exists", {"name": name, "tenant_id": tenant_id}
            )
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(
        self, name: str, tenant_id: Optional[str] = None
    ) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role WHERE name = %s AND tenant_id IS NOT DISTINCT FROM %s",
                (name, tenant_id),
            ).fetchone()
        return self._role_from_row(row) if row else None

    def assign_role(self, account_id: str, role_id: str) -> RoleAssignment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account_role (account_id, role_id, created_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (account_id, role_id) DO NOTHING
                    RETURNING account_id, role_id, created_at
                    """,
                    (account_id, role_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing(
                "account or role not found", account_id=account_id, role_id=role_id
            )
        if not row:
            raise ConstraintViolation(
                "User already has this role",
                {"account_id": account_id, "role_id": role_id},
            )
        return RoleAssignment(
            account_id=str(row["account_id"]),
            role_id=str(row["role_id"]),
            created_at=row["created_at"],
        )

    def remove_role(self, account_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account_role WHERE account_id = %s AND role_id = %s RETURNING role_id",
                (account_id, role_id),
            ).fetchone()
        return row is not None

    def list_account_roles(self, account_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM account_role ar JOIN role r ON r.id = ar.role_id
                WHERE ar.account_id = %s
                ORDER BY r.name
                """,
                (account_id,),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    # -- audit -----------------------------------------------------------

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    id, actor_id, tenant_id, action, resource, resource_id,
                    changes_before, changes_after, metadata, is_suspicious,
                    ip_address, user_agent, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.actor_id,
                    entry.tenant_id,
                    entry.action,
                    entry.resource,
                    entry.resource_id,
                    json.dumps(entry.changes_before, default=str) if entry.changes_before is not None else None,
                    json.dumps(entry.changes_after, default=str) if entry.changes_after is not None else None,
                    json.dumps(entry.metadata, default=str) if entry.metadata is not None else None,
                    entry.is_suspicious,
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        query = "SELECT * FROM audit_log"
        params: list[Any] = []
        if tenant_id is not None:
            query += " WHERE tenant_id = %s"
            params.append(tenant_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._audit_from_row(row) for row in rows]
