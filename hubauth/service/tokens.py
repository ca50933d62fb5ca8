from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from hubauth.config import Settings
from hubauth.logging import get_logger
from hubauth.service.errors import TokenError, TokenFailure

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_KINDS = (ACCESS, REFRESH)


@dataclass
class TokenClaims:
    sub: str
    tenant_id: Optional[str]
    roles: List[str] = field(default_factory=list)
    is_super_admin: bool = False
    mfa_enabled: bool = False
    token_type: str = ACCESS
    jti: str = ""
    iat: int = 0
    exp: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        roles = payload.get("roles") or []
        if not isinstance(payload.get("sub"), str) or not isinstance(roles, list):
            raise TokenError(TokenFailure.MALFORMED)
        return cls(
            sub=payload["sub"],
            tenant_id=payload.get("tenant_id"),
            roles=[str(r) for r in roles],
            is_super_admin=bool(payload.get("is_super_admin", False)),
            mfa_enabled=bool(payload.get("mfa_enabled", False)),
            token_type=str(payload.get("token_type", "")),
            jti=str(payload.get("jti", "")),
            iat=int(payload.get("iat", 0)),
            exp=int(payload.get("exp", 0)),
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_jti: str
    refresh_exp: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "access_token_expires_at": self.access_token_expires_at.isoformat(),
        }


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TokenService:
    """HS256 signed access/refresh tokens with pinned issuer and audience."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 30,
    ) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock
        self._leeway = leeway_seconds

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3:
            raise TokenError(TokenFailure.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenError(TokenFailure.MALFORMED)
        # Pinning alg rules out "none" and algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenError(TokenFailure.MALFORMED)
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenError(TokenFailure.BAD_SIGNATURE)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenError(TokenFailure.MALFORMED)
        if not isinstance(payload, dict):
            raise TokenError(TokenFailure.MALFORMED)
        return payload

    def issue(self, claims: TokenClaims, kind: str) -> tuple[str, int, str]:
        """Sign one token of ``kind``; returns (token, exp, jti)."""
        if kind not in _KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        now = int(self._clock())
        ttl_minutes = (
            self.settings.access_token_ttl_minutes
            if kind == ACCESS
            else self.settings.refresh_token_ttl_minutes
        )
        exp = now + ttl_minutes * 60
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.sub,
            "tenant_id": claims.tenant_id,
            "roles": list(claims.roles),
            "is_super_admin": claims.is_super_admin,
            "mfa_enabled": claims.mfa_enabled,
            "token_type": kind,
            "jti": jti,
            "iat": now,
            "exp": exp,
        }
        return self._encode(payload), exp, jti

    def issue_pair(self, claims: TokenClaims) -> TokenPair:
        access_token, access_exp, _ = self.issue(claims, ACCESS)
        refresh_token, refresh_exp, refresh_jti = self.issue(claims, REFRESH)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=datetime.fromtimestamp(access_exp, tz=timezone.utc),
            refresh_jti=refresh_jti,
            refresh_exp=refresh_exp,
        )

    def verify(self, token: str, kind: str) -> TokenClaims:
        """Return the claims of a valid token of ``kind`` or raise ``TokenError``."""
        try:
            payload = self._decode(token)
            if payload.get("iss") != self.settings.jwt_issuer:
                raise TokenError(TokenFailure.WRONG_ISSUER)
            aud = payload.get("aud")
            if isinstance(aud, list):
                valid_aud = self.settings.jwt_audience in aud
            else:
                valid_aud = aud == self.settings.jwt_audience
            if not valid_aud:
                raise TokenError(TokenFailure.WRONG_AUDIENCE)
            try:
                exp_ts = float(payload.get("exp"))
            except (TypeError, ValueError):
                raise TokenError(TokenFailure.MALFORMED)
            if exp_ts <= self._clock() - self._leeway:
                raise TokenError(TokenFailure.EXPIRED)
            if payload.get("token_type") != kind:
                raise TokenError(TokenFailure.WRONG_KIND)
            return TokenClaims.from_payload(payload)
        except TokenError as exc:
            logger.info("token_verification_failed", cause=exc.cause.value, expected_kind=kind)
            raise
