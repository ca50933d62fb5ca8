from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from hubauth.config import Settings
from hubauth.logging import get_logger
from hubauth.service.audit import AuditAction, AuditEvent, AuditRecorder, AuditResource
from hubauth.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    NotFoundError,
    TokenError,
    TokenFailure,
)
from hubauth.service.mfa import EnrollmentMaterial, MFAManager
from hubauth.service.passwords import CredentialVerifier
from hubauth.service.tokens import ACCESS, REFRESH, TokenClaims, TokenPair, TokenService, extract_bearer
from hubauth.storage.common import AuthStore
from hubauth.storage.models import Account
from hubauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """Verified identity for one request, passed explicitly to every check."""

    principal_id: str
    tenant_id: Optional[str]
    roles: List[str] = field(default_factory=list)
    is_super_admin: bool = False
    mfa_enabled: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class LoginResult:
    requires_mfa: bool
    principal_id: str
    tokens: Optional[TokenPair] = None
    backup_codes_remaining: Optional[int] = None


class AuthService:
    """Login, MFA challenge, token refresh and request authentication."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        verifier: Optional[CredentialVerifier] = None,
        tokens: Optional[TokenService] = None,
        mfa: Optional[MFAManager] = None,
        audit: Optional[AuditRecorder] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self.verifier = verifier or CredentialVerifier(settings)
        self.tokens = tokens or TokenService(settings, clock=clock)
        self.mfa = mfa or MFAManager(store, settings, self.verifier, clock=clock)
        self.audit = audit or AuditRecorder(store, settings)
        self._state_lock = threading.Lock()
        # principal_id -> expiry timestamp of a password-verified login
        self._mfa_challenges: dict[str, float] = {}
        # jti -> exp of refresh tokens already used or logged out
        self.revoked_refresh_tokens: dict[str, float] = {}
        self._last_cleanup = clock()

    # -- helpers ---------------------------------------------------------

    def _claims_for(self, account: Account) -> TokenClaims:
        roles = [
            role.name
            for role in self.store.list_account_roles(account.id)
            if role.tenant_id is None or role.tenant_id == account.tenant_id
        ]
        return TokenClaims(
            sub=account.id,
            tenant_id=account.tenant_id,
            roles=sorted(roles),
            is_super_admin=account.is_super_admin,
            mfa_enabled=account.mfa_enabled,
        )

    def _issue(self, account: Account) -> TokenPair:
        return self.tokens.issue_pair(self._claims_for(account))

    def _require_account(self, principal_id: str) -> Account:
        account = self.store.get_account(principal_id)
        if not account or account.is_deleted:
            raise NotFoundError("User not found")
        return account

    def _audit_login(self, account: Account, method: str) -> None:
        self.audit.record(
            AuditEvent(
                actor_id=account.id,
                tenant_id=account.tenant_id,
                action=AuditAction.LOGIN,
                resource=AuditResource.SESSION,
                resource_id=account.id,
                metadata={"method": method},
            )
        )

    # -- in-process state --------------------------------------------------

    def cleanup_expired_states(self) -> int:
        """Drop expired MFA challenges and revoked jtis past their token expiry.

        A jti is only worth remembering while its token could still verify.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._state_lock:
            expired_challenges = [p for p, expires_at in self._mfa_challenges.items() if expires_at <= now]
            for principal_id in expired_challenges:
                del self._mfa_challenges[principal_id]
            expired_jtis = [j for j, exp in self.revoked_refresh_tokens.items() if exp <= now]
            for jti in expired_jtis:
                del self.revoked_refresh_tokens[jti]
            self._last_cleanup = now
        cleaned = len(expired_challenges) + len(expired_jtis)
        if cleaned:
            logger.debug("auth_state_cleaned", removed=cleaned)
        return cleaned

    def maybe_cleanup(self, interval_seconds: int = 300) -> int:
        """Run ``cleanup_expired_states`` if ``interval_seconds`` passed since the last run."""
        if self._clock() - self._last_cleanup >= interval_seconds:
            return self.cleanup_expired_states()
        return 0

    async def _open_challenge(self, principal_id: str) -> None:
        self.maybe_cleanup()
        ttl = self.settings.mfa_challenge_ttl_seconds
        with self._state_lock:
            self._mfa_challenges[principal_id] = self._clock() + ttl
        if self.cache:
            try:
                await self.cache.set_mfa_challenge(principal_id, ttl)
            except Exception as exc:
                logger.warning("mfa_challenge_cache_failed", principal_id=principal_id, error=str(exc))

    def _has_local_challenge(self, principal_id: str) -> bool:
        with self._state_lock:
            expires_at = self._mfa_challenges.get(principal_id)
            if expires_at is not None and expires_at <= self._clock():
                self._mfa_challenges.pop(principal_id, None)
                expires_at = None
        return expires_at is not None

    async def _has_challenge(self, principal_id: str) -> bool:
        # Redis is authoritative when configured; a close on another node must count here too
        if self.cache:
            try:
                present = await self.cache.has_mfa_challenge(principal_id)
            except Exception as exc:
                logger.warning("mfa_challenge_lookup_failed", principal_id=principal_id, error=str(exc))
            else:
                if not present:
                    with self._state_lock:
                        self._mfa_challenges.pop(principal_id, None)
                return present
        return self._has_local_challenge(principal_id)

    async def _close_challenge(self, principal_id: str) -> None:
        with self._state_lock:
            self._mfa_challenges.pop(principal_id, None)
        if self.cache:
            try:
                await self.cache.pop_mfa_challenge(principal_id)
            except Exception as exc:
                logger.warning("mfa_challenge_clear_failed", principal_id=principal_id, error=str(exc))

    async def _challenge_account(self, principal_id: str) -> Account:
        if not await self._has_challenge(principal_id):
            raise AuthenticationError("No pending MFA challenge; log in again")
        account = self.store.get_account(principal_id)
        if not account or not account.can_authenticate or not account.mfa_enabled:
            await self._close_challenge(principal_id)
            raise AuthenticationError("No pending MFA challenge; log in again")
        return account

    async def _claim_refresh_jti(self, jti: str, exp: int) -> bool:
        """Revoke ``jti``; True only for the first caller, so a refresh token rotates once."""
        self.maybe_cleanup()
        with self._state_lock:
            if jti in self.revoked_refresh_tokens:
                return False
            self.revoked_refresh_tokens[jti] = float(exp)
        if self.cache:
            ttl = max(int(exp - self._clock()), 1)
            try:
                return await self.cache.mark_refresh_revoked(jti, ttl)
            except Exception as exc:
                # Without the shared record another node may accept the token too
                logger.warning("refresh_revocation_cache_failed", jti=jti, error=str(exc))
                return False
        return True

    # -- login -----------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        account = self.store.get_account_by_email(email)
        # Verify even when the account is missing so timing does not leak existence
        password_ok = self.verifier.verify(password, account.password_hash if account else None)
        if not account or not password_ok or not account.can_authenticate:
            logger.info(
                "login_failed",
                email=email,
                reason="unknown_account" if not account else (
                    "bad_password" if not password_ok else "account_unavailable"
                ),
            )
            raise InvalidCredentialsError()

        if self.verifier.needs_rehash(account.password_hash):
            self.store.update_password(account.id, self.verifier.hash(password))
            logger.info("password_rehashed", account_id=account.id)

        if account.mfa_enabled:
            await self._open_challenge(account.id)
            logger.info("login_mfa_required", account_id=account.id)
            return LoginResult(requires_mfa=True, principal_id=account.id)

        tokens = self._issue(account)
        self._audit_login(account, "password")
        return LoginResult(requires_mfa=False, principal_id=account.id, tokens=tokens)

    async def complete_mfa_login(self, principal_id: str, code: str) -> LoginResult:
        account = await self._challenge_account(principal_id)
        if not self.mfa.verify_totp(account, code):
            logger.info("mfa_challenge_failed", account_id=account.id)
            raise AuthenticationError("Invalid MFA code")
        await self._close_challenge(principal_id)
        tokens = self._issue(account)
        self._audit_login(account, "totp")
        return LoginResult(requires_mfa=False, principal_id=account.id, tokens=tokens)

    async def complete_mfa_login_with_backup_code(
        self, principal_id: str, code: str
    ) -> LoginResult:
        account = await self._challenge_account(principal_id)
        remaining = self.mfa.redeem_backup_code(account, code)
        if remaining is None:
            logger.info("backup_code_rejected", account_id=account.id)
            raise AuthenticationError("Invalid backup code")
        await self._close_challenge(principal_id)
        tokens = self._issue(account)
        self._audit_login(account, "backup_code")
        return LoginResult(
            requires_mfa=False,
            principal_id=account.id,
            tokens=tokens,
            backup_codes_remaining=remaining,
        )

    # -- tokens ----------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.tokens.verify(refresh_token, REFRESH)
        account = self.store.get_account(claims.sub)
        if not account or not account.can_authenticate:
            logger.info("refresh_account_unavailable", account_id=claims.sub)
            raise AuthenticationError("Invalid or expired token")
        if not claims.jti or not await self._claim_refresh_jti(claims.jti, claims.exp):
            logger.warning("refresh_token_reused", account_id=claims.sub)
            raise TokenError(TokenFailure.REVOKED)
        # Roles are re-read so revocations apply from the next access token on
        return self._issue(account)

    async def logout(self, refresh_token: str, ctx: Optional[AuthContext] = None) -> None:
        claims = self.tokens.verify(refresh_token, REFRESH)
        if ctx is not None and ctx.principal_id != claims.sub:
            raise AuthenticationError("Invalid or expired token")
        if claims.jti:
            await self._claim_refresh_jti(claims.jti, claims.exp)
        self.audit.record(
            AuditEvent(
                actor_id=claims.sub,
                tenant_id=claims.tenant_id,
                action=AuditAction.LOGOUT,
                resource=AuditResource.SESSION,
                resource_id=claims.sub,
            )
        )

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Authentication required")
        claims = self.tokens.verify(token, ACCESS)
        account = self.store.get_account(claims.sub)
        if not account or not account.can_authenticate:
            logger.info("access_token_account_unavailable", account_id=claims.sub)
            raise AuthenticationError("Invalid or expired token")
        return AuthContext(
            principal_id=claims.sub,
            tenant_id=claims.tenant_id,
            roles=claims.roles,
            is_super_admin=claims.is_super_admin,
            mfa_enabled=claims.mfa_enabled,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # -- mfa self-service ------------------------------------------------

    async def begin_mfa_enrollment(self, principal_id: str) -> EnrollmentMaterial:
        return self.mfa.begin_enrollment(self._require_account(principal_id))

    async def confirm_mfa_enrollment(
        self,
        principal_id: str,
        secret: str,
        code: str,
        backup_codes: List[str],
    ) -> None:
        account = self._require_account(principal_id)
        self.mfa.confirm_enrollment(account, secret, code, backup_codes)
        self.audit.record(
            AuditEvent(
                actor_id=account.id,
                tenant_id=account.tenant_id,
                action=AuditAction.UPDATE,
                resource=AuditResource.USER,
                resource_id=account.id,
                before={"mfa_enabled": False},
                after={"mfa_enabled": True},
            )
        )

    async def disable_mfa(self, principal_id: str, password: str) -> None:
        account = self._require_account(principal_id)
        self.mfa.disable(account, password)
        self.audit.record(
            AuditEvent(
                actor_id=account.id,
                tenant_id=account.tenant_id,
                action=AuditAction.UPDATE,
                resource=AuditResource.USER,
                resource_id=account.id,
                before={"mfa_enabled": True},
                after={"mfa_enabled": False},
            )
        )

    async def regenerate_backup_codes(self, principal_id: str, password: str) -> List[str]:
        account = self._require_account(principal_id)
        codes = self.mfa.regenerate_backup_codes(account, password)
        self.audit.record(
            AuditEvent(
                actor_id=account.id,
                tenant_id=account.tenant_id,
                action=AuditAction.UPDATE,
                resource=AuditResource.USER,
                resource_id=account.id,
                metadata={"codes_issued": len(codes)},
            )
        )
        return codes
