from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for refresh-token revocation and pending MFA challenges."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> bool:
        """Revoke ``jti``; True only for the first caller to do so."""
        return bool(
            await self.client.set(
                f"auth:refresh:revoked:{jti}", "1", ex=max(1, ttl_seconds), nx=True
            )
        )

    async def set_mfa_challenge(self, principal_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:mfa:challenge:{principal_id}", "1", ex=max(1, ttl_seconds))

    async def has_mfa_challenge(self, principal_id: str) -> bool:
        return bool(await self.client.exists(f"auth:mfa:challenge:{principal_id}"))

    async def pop_mfa_challenge(self, principal_id: str) -> bool:
        """Consume the pending challenge; True only for the caller that removed it."""
        return bool(await self.client.delete(f"auth:mfa:challenge:{principal_id}"))

    async def close(self) -> None:
        await self.client.aclose()
