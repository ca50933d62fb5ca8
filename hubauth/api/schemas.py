from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from hubauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = "".join(c for c in value.strip().lower() if c not in _ZERO_WIDTH)
    normalized = unicodedata.normalize("NFKC", cleaned)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email local part")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email domain")
    return normalized


# -- auth ------------------------------------------------------------------


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MFALoginRequest(BaseModel):
    principal_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=32)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_token_expires_at: datetime


class LoginResponse(BaseModel):
    requires_mfa: bool
    principal_id: str
    tokens: Optional[TokenResponse] = None
    backup_codes_remaining: Optional[int] = None


# -- mfa self-service ------------------------------------------------------


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str = Field(..., description="PNG data URL of the otpauth URI")
    backup_codes: List[str]


class MFAConfirmRequest(BaseModel):
    secret: str = Field(..., max_length=128)
    code: str = Field(..., max_length=32)
    backup_codes: List[str] = Field(..., max_length=64)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., max_length=1024)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class PrincipalResponse(BaseModel):
    principal_id: str
    email: str
    name: Optional[str] = None
    tenant_id: Optional[str] = None
    roles: List[str]
    is_super_admin: bool
    mfa_enabled: bool
    permissions: List[str]


# -- admin -----------------------------------------------------------------


class LockRequest(BaseModel):
    locked: bool = True


class PasswordResetRequest(BaseModel):
    new_password: str = Field(..., max_length=1024)


class BulkDeleteRequest(BaseModel):
    account_ids: List[str] = Field(..., min_length=1, max_length=500)


class BulkDeleteResponse(BaseModel):
    deleted: int


class AccountSummary(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    tenant_id: Optional[str] = None
    is_super_admin: bool
    locked: bool
    mfa_enabled: bool
    created_at: datetime


class RoleAssignmentResponse(BaseModel):
    account_id: str
    role_id: str
    created_at: datetime


class AuditLogResponse(BaseModel):
    id: str
    action: str
    resource: str
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    resource_id: Optional[str] = None
    changes_before: Optional[Dict[str, Any]] = None
    changes_after: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    is_suspicious: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
