from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from hubauth.config import Settings
from hubauth.logging import get_logger
from hubauth.storage.common import AuthStore
from hubauth.storage.models import AuditLogEntry, new_id

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

# Compared after lower-casing and dropping "_" and "-"
_SENSITIVE_FRAGMENTS = ("password", "token", "secret", "apikey", "backupcode")


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    SUSPEND = "SUSPEND"
    ACTIVATE = "ACTIVATE"
    ASSIGN_ROLE = "ASSIGN_ROLE"
    REMOVE_ROLE = "REMOVE_ROLE"
    RESET_PASSWORD = "RESET_PASSWORD"


class AuditResource(str, Enum):
    USER = "user"
    SHOP = "shop"
    RECEIPT = "receipt"
    VOUCHER = "voucher"
    REDEMPTION = "redemption"
    ROLE = "role"
    PERMISSION = "permission"
    SESSION = "session"
    CONFIG = "config"


@dataclass
class AuditEvent:
    actor_id: Optional[str]
    tenant_id: Optional[str]
    action: AuditAction
    resource: AuditResource
    resource_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _is_sensitive(key: str) -> bool:
    normalized = key.lower().replace("_", "").replace("-", "")
    return any(fragment in normalized for fragment in _SENSITIVE_FRAGMENTS)


def redact(data: Any) -> Any:
    """Copy of ``data`` with credential-bearing fields replaced, at any depth."""
    if isinstance(data, dict):
        return {
            key: REDACTED if isinstance(key, str) and _is_sensitive(key) else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(item) for item in data]
    return data


def create_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Fields whose values differ, as ``{field: {"before": x, "after": y}}``."""
    diff: Dict[str, Dict[str, Any]] = {}
    for key in list(before) + [k for k in after if k not in before]:
        if before.get(key) != after.get(key) or (key in before) != (key in after):
            diff[key] = {"before": before.get(key), "after": after.get(key)}
    return diff


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def detect_suspicious(
    action: AuditAction,
    metadata: Optional[Dict[str, Any]],
    *,
    bulk_delete_threshold: int = 10,
    high_value_threshold: float = 1000,
) -> bool:
    meta = metadata or {}
    if action == AuditAction.DELETE:
        count = _number(meta.get("count"))
        if count is not None and count > bulk_delete_threshold:
            return True
    if action == AuditAction.APPROVE:
        value = _number(meta.get("voucher_value", meta.get("value")))
        if value is not None and value > high_value_threshold:
            return True
    if action == AuditAction.RESET_PASSWORD and meta.get("target_is_super_admin") is True:
        return True
    return action == AuditAction.SUSPEND


class AuditRecorder:
    """Best-effort audit trail written after a mutation has taken effect.

    ``record`` never raises: a failed write is logged and the caller's
    mutation stands.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def record(self, event: AuditEvent) -> Optional[AuditLogEntry]:
        try:
            suspicious = detect_suspicious(
                event.action,
                event.metadata,
                bulk_delete_threshold=self.settings.audit_bulk_delete_threshold,
                high_value_threshold=self.settings.audit_high_value_threshold,
            )
            entry = AuditLogEntry(
                id=new_id(),
                actor_id=event.actor_id,
                tenant_id=event.tenant_id,
                action=event.action.value,
                resource=event.resource.value,
                resource_id=event.resource_id,
                changes_before=redact(event.before) if event.before is not None else None,
                changes_after=redact(event.after) if event.after is not None else None,
                metadata=redact(event.metadata) if event.metadata else None,
                is_suspicious=suspicious,
                ip_address=event.ip_address or "unknown",
                user_agent=event.user_agent or "unknown",
            )
            stored = self.store.append_audit_log(entry)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                action=event.action.value,
                resource=event.resource.value,
                resource_id=event.resource_id,
                error=str(exc),
            )
            return None
        if suspicious:
            logger.warning(
                "suspicious_activity",
                action=entry.action,
                actor_id=entry.actor_id,
                resource_id=entry.resource_id,
            )
        return stored
