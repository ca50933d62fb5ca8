from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from hubauth.config import get_settings, reset_settings_cache
from hubauth.logging import get_logger
from hubauth.service.accounts import AccountAdminService
from hubauth.service.audit import AuditRecorder
from hubauth.service.auth import AuthService
from hubauth.service.mfa import MFAManager
from hubauth.service.passwords import CredentialVerifier
from hubauth.service.permissions import PermissionResolver, seed_default_roles
from hubauth.service.tokens import TokenService
from hubauth.storage.memory import MemoryStore
from hubauth.storage.postgres import PostgresStore
from hubauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        cipher_key = self.settings.mfa_encryption_key or self.settings.jwt_secret

        try:
            self.store = (
                MemoryStore(mfa_encryption_key=cipher_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=cipher_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url and not self.settings.test_mode:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; unset it to run single-node"
                ) from exc
            self.cache = cache
        else:
            logger.warning(
                "redis_disabled",
                message="refresh-token revocation and MFA challenges are process-local",
            )

        if self.settings.use_memory_store:
            seed_default_roles(self.store)

        self.verifier = CredentialVerifier(self.settings)
        self.tokens = TokenService(self.settings)
        self.audit = AuditRecorder(self.store, self.settings)
        self.mfa = MFAManager(self.store, self.settings, self.verifier)
        self.permissions = PermissionResolver(self.store)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            verifier=self.verifier,
            tokens=self.tokens,
            mfa=self.mfa,
            audit=self.audit,
        )
        self.accounts = AccountAdminService(
            self.store, self.permissions, self.verifier, self.audit
        )
        logger.info(
            "runtime_init_completed",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis=bool(self.cache),
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
