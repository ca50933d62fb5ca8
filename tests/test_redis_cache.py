"""Shared revocation and MFA challenge state through Redis, using an in-memory fake client."""

import pytest

from hubauth.service.auth import AuthService
from hubauth.service.errors import AuthenticationError, TokenError, TokenFailure
from hubauth.service.mfa import generate_totp
from hubauth.storage.redis_cache import RedisCache

PASSWORD = "Correct-Horse-9!"


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.closed = False

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def exists(self, key):
        return int(key in self.values)

    async def delete(self, key):
        return int(self.values.pop(key, None) is not None)

    async def aclose(self):
        self.closed = True


class BrokenRedis(FakeRedis):
    async def set(self, key, value, ex=None, nx=False):
        raise ConnectionError("redis down")


def _cache(client) -> RedisCache:
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = client
    return cache


@pytest.fixture
def shared_redis():
    return FakeRedis()


@pytest.fixture
def make_node(store, settings, verifier, audit, clock):
    """Build an AuthService as a separate process would, sharing only store and Redis."""

    def _make(client):
        return AuthService(store, _cache(client), settings, verifier=verifier, audit=audit, clock=clock)

    return _make


async def test_refresh_revocation_uses_set_nx(shared_redis):
    cache = _cache(shared_redis)
    assert await cache.mark_refresh_revoked("jti-1", 60) is True
    assert await cache.mark_refresh_revoked("jti-1", 60) is False
    assert shared_redis.ttls["auth:refresh:revoked:jti-1"] == 60


async def test_ttl_is_clamped_to_one_second(shared_redis):
    cache = _cache(shared_redis)
    await cache.set_mfa_challenge("user-1", 0)
    assert shared_redis.ttls["auth:mfa:challenge:user-1"] == 1


async def test_challenge_pop_is_single_winner(shared_redis):
    cache = _cache(shared_redis)
    await cache.set_mfa_challenge("user-1", 300)
    assert await cache.has_mfa_challenge("user-1")
    assert await cache.pop_mfa_challenge("user-1") is True
    assert await cache.pop_mfa_challenge("user-1") is False
    assert not await cache.has_mfa_challenge("user-1")


async def test_close_releases_client(shared_redis):
    await _cache(shared_redis).close()
    assert shared_redis.closed


async def test_refresh_reuse_detected_across_nodes(make_node, make_account, shared_redis):
    make_account("member@example.com", PASSWORD)
    node_a, node_b = make_node(shared_redis), make_node(shared_redis)
    pair = (await node_a.login("member@example.com", PASSWORD)).tokens
    await node_a.refresh(pair.refresh_token)
    with pytest.raises(TokenError) as exc_info:
        await node_b.refresh(pair.refresh_token)
    assert exc_info.value.cause == TokenFailure.REVOKED


async def test_unreachable_redis_rejects_refresh(make_node, make_account):
    make_account("member@example.com", PASSWORD)
    node = make_node(BrokenRedis())
    pair = node.tokens.issue_pair(node._claims_for(node.store.get_account_by_email("member@example.com")))
    with pytest.raises(TokenError):
        await node.refresh(pair.refresh_token)


async def test_mfa_challenge_visible_to_other_node(make_node, make_account, mfa, clock, shared_redis):
    account = make_account("member@example.com", PASSWORD)
    material = mfa.begin_enrollment(account)
    mfa.confirm_enrollment(
        account, material.secret, generate_totp(material.secret, clock.now), material.backup_codes
    )
    node_a, node_b = make_node(shared_redis), make_node(shared_redis)
    assert (await node_a.login("member@example.com", PASSWORD)).requires_mfa

    result = await node_b.complete_mfa_login(account.id, generate_totp(material.secret, clock.now))
    assert result.tokens is not None
    assert not await node_b.cache.has_mfa_challenge(account.id)


class UnreadableRedis(FakeRedis):
    async def exists(self, key):
        raise ConnectionError("redis down")


def _enroll(account, mfa, clock):
    material = mfa.begin_enrollment(account)
    mfa.confirm_enrollment(
        account, material.secret, generate_totp(material.secret, clock.now), material.backup_codes
    )
    return material.secret


async def test_challenge_completed_elsewhere_is_closed_locally(
    make_node, make_account, mfa, clock, shared_redis
):
    account = make_account("member@example.com", PASSWORD)
    secret = _enroll(account, mfa, clock)
    node_a, node_b = make_node(shared_redis), make_node(shared_redis)
    await node_a.login("member@example.com", PASSWORD)
    await node_b.complete_mfa_login(account.id, generate_totp(secret, clock.now))

    with pytest.raises(AuthenticationError):
        await node_a.complete_mfa_login(account.id, generate_totp(secret, clock.now))
    assert account.id not in node_a._mfa_challenges


async def test_challenge_lookup_falls_back_to_local_state(make_node, make_account, mfa, clock):
    account = make_account("member@example.com", PASSWORD)
    secret = _enroll(account, mfa, clock)
    node = make_node(UnreadableRedis())
    await node.login("member@example.com", PASSWORD)

    result = await node.complete_mfa_login(account.id, generate_totp(secret, clock.now))
    assert result.tokens is not None
