"""Unit tests for the login flow, MFA challenge, token refresh and authentication."""

import asyncio

import pytest

from hubauth.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    NotFoundError,
    TokenError,
    TokenFailure,
)
from hubauth.service.mfa import generate_totp
from hubauth.service.permissions import create_role
from hubauth.service.tokens import ACCESS

PASSWORD = "Correct-Horse-9!"


@pytest.fixture
def member(make_account):
    return make_account("member@example.com", PASSWORD)


@pytest.fixture
def mfa_member(member, mfa, store, clock):
    material = mfa.begin_enrollment(member)
    mfa.confirm_enrollment(
        member, material.secret, generate_totp(material.secret, clock.now), material.backup_codes
    )
    return store.get_account(member.id), material.secret, material.backup_codes


class TestLogin:
    async def test_login_without_mfa_issues_tokens(self, auth_service, member, tokens):
        result = await auth_service.login("member@example.com", PASSWORD)
        assert not result.requires_mfa
        assert result.principal_id == member.id
        claims = tokens.verify(result.tokens.access_token, ACCESS)
        assert claims.sub == member.id

    async def test_email_lookup_is_case_insensitive(self, auth_service, member):
        result = await auth_service.login("  MEMBER@example.com", PASSWORD)
        assert result.principal_id == member.id

    async def test_failures_share_one_message(self, auth_service, member, store):
        messages = set()
        for email, password in [
            ("member@example.com", "wrong-password"),
            ("nobody@example.com", PASSWORD),
        ]:
            with pytest.raises(InvalidCredentialsError) as exc_info:
                await auth_service.login(email, password)
            messages.add(exc_info.value.message)
        store.set_locked(member.id, True)
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth_service.login("member@example.com", PASSWORD)
        messages.add(exc_info.value.message)
        assert messages == {"Invalid email or password"}

    async def test_deleted_account_cannot_log_in(self, auth_service, member, store):
        store.soft_delete_accounts([member.id])
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("member@example.com", PASSWORD)

    async def test_login_records_audit(self, auth_service, member, store):
        await auth_service.login("member@example.com", PASSWORD)
        (entry,) = store.list_audit_logs()
        assert entry.action == "LOGIN"
        assert entry.actor_id == member.id
        assert entry.metadata == {"method": "password"}

    async def test_tokens_carry_current_roles(self, auth_service, member, store, tokens):
        role = create_role(store, "reader", ["users:read"])
        store.assign_role(member.id, role.id)
        result = await auth_service.login("member@example.com", PASSWORD)
        assert tokens.verify(result.tokens.access_token, ACCESS).roles == ["reader"]


class TestMfaLogin:
    async def test_password_alone_only_opens_challenge(self, auth_service, mfa_member):
        account, _, _ = mfa_member
        result = await auth_service.login("member@example.com", PASSWORD)
        assert result.requires_mfa
        assert result.tokens is None
        assert result.principal_id == account.id

    async def test_totp_completes_login(self, auth_service, mfa_member, clock, tokens):
        account, secret, _ = mfa_member
        await auth_service.login("member@example.com", PASSWORD)
        result = await auth_service.complete_mfa_login(account.id, generate_totp(secret, clock.now))
        assert not result.requires_mfa
        claims = tokens.verify(result.tokens.access_token, ACCESS)
        assert claims.sub == account.id
        assert claims.mfa_enabled

    async def test_second_step_needs_open_challenge(self, auth_service, mfa_member, clock):
        account, secret, _ = mfa_member
        with pytest.raises(AuthenticationError):
            await auth_service.complete_mfa_login(account.id, generate_totp(secret, clock.now))

    async def test_challenge_expires(self, auth_service, mfa_member, clock, settings):
        account, secret, _ = mfa_member
        await auth_service.login("member@example.com", PASSWORD)
        clock.now += settings.mfa_challenge_ttl_seconds + 1
        with pytest.raises(AuthenticationError):
            await auth_service.complete_mfa_login(account.id, generate_totp(secret, clock.now))

    async def test_challenge_is_single_use(self, auth_service, mfa_member, clock):
        account, secret, _ = mfa_member
        await auth_service.login("member@example.com", PASSWORD)
        code = generate_totp(secret, clock.now)
        await auth_service.complete_mfa_login(account.id, code)
        with pytest.raises(AuthenticationError):
            await auth_service.complete_mfa_login(account.id, code)

    async def test_wrong_code_keeps_challenge_open(self, auth_service, mfa_member, clock):
        account, secret, _ = mfa_member
        await auth_service.login("member@example.com", PASSWORD)
        current = generate_totp(secret, clock.now)
        window = {generate_totp(secret, clock.now + k * 30) for k in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in window)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.complete_mfa_login(account.id, wrong)
        assert exc_info.value.message == "Invalid MFA code"
        result = await auth_service.complete_mfa_login(account.id, current)
        assert result.tokens is not None

    async def test_backup_code_login_reports_remaining(self, auth_service, mfa_member):
        account, _, codes = mfa_member
        await auth_service.login("member@example.com", PASSWORD)
        result = await auth_service.complete_mfa_login_with_backup_code(account.id, codes[0])
        assert result.backup_codes_remaining == 7
        assert result.tokens is not None

        await auth_service.login("member@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.complete_mfa_login_with_backup_code(account.id, codes[0])
        assert exc_info.value.message == "Invalid backup code"


class TestRefresh:
    async def test_refresh_rotates_tokens(self, auth_service, member, tokens):
        first = (await auth_service.login("member@example.com", PASSWORD)).tokens
        second = await auth_service.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert tokens.verify(second.access_token, ACCESS).sub == member.id

    async def test_refresh_token_is_single_use(self, auth_service, member):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        await auth_service.refresh(pair.refresh_token)
        with pytest.raises(TokenError) as exc_info:
            await auth_service.refresh(pair.refresh_token)
        assert exc_info.value.cause == TokenFailure.REVOKED

    async def test_concurrent_refresh_has_one_winner(self, auth_service, member):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        outcomes = await asyncio.gather(
            *(auth_service.refresh(pair.refresh_token) for _ in range(5)),
            return_exceptions=True,
        )
        assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 1

    async def test_access_token_cannot_refresh(self, auth_service, member):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        with pytest.raises(TokenError) as exc_info:
            await auth_service.refresh(pair.access_token)
        assert exc_info.value.cause == TokenFailure.WRONG_KIND

    async def test_refresh_rereads_roles(self, auth_service, member, store, tokens):
        role = create_role(store, "reader", ["users:read"])
        store.assign_role(member.id, role.id)
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        store.remove_role(member.id, role.id)
        refreshed = await auth_service.refresh(pair.refresh_token)
        assert tokens.verify(refreshed.access_token, ACCESS).roles == []

    async def test_locked_account_cannot_refresh(self, auth_service, member, store):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        store.set_locked(member.id, True)
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(pair.refresh_token)

    async def test_logout_revokes_refresh_token(self, auth_service, member, store):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        await auth_service.logout(pair.refresh_token)
        with pytest.raises(TokenError):
            await auth_service.refresh(pair.refresh_token)
        assert store.list_audit_logs()[0].action == "LOGOUT"


class TestStateCleanup:
    async def test_expired_challenges_and_jtis_are_dropped(
        self, auth_service, mfa_member, make_account, clock, settings
    ):
        account, _, _ = mfa_member
        make_account("plain@example.com", PASSWORD)
        await auth_service.login("member@example.com", PASSWORD)
        pair = (await auth_service.login("plain@example.com", PASSWORD)).tokens
        for _ in range(3):
            pair = await auth_service.refresh(pair.refresh_token)
        assert account.id in auth_service._mfa_challenges
        assert len(auth_service.revoked_refresh_tokens) == 3

        clock.now += settings.refresh_token_ttl_minutes * 60 + 1
        assert auth_service.cleanup_expired_states() == 4
        assert auth_service._mfa_challenges == {}
        assert auth_service.revoked_refresh_tokens == {}

    async def test_live_jtis_survive_cleanup(self, auth_service, member):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        await auth_service.refresh(pair.refresh_token)
        assert auth_service.cleanup_expired_states() == 0
        with pytest.raises(TokenError) as exc_info:
            await auth_service.refresh(pair.refresh_token)
        assert exc_info.value.cause == TokenFailure.REVOKED

    async def test_abandoned_challenges_swept_on_next_login(
        self, auth_service, mfa_member, mfa, make_account, store, clock, settings
    ):
        account, _, _ = mfa_member
        other = make_account("other@example.com", PASSWORD)
        material = mfa.begin_enrollment(other)
        mfa.confirm_enrollment(
            other, material.secret, generate_totp(material.secret, clock.now), material.backup_codes
        )
        await auth_service.login("member@example.com", PASSWORD)

        clock.now += max(settings.mfa_challenge_ttl_seconds, 300) + 1
        await auth_service.login("other@example.com", PASSWORD)
        assert list(auth_service._mfa_challenges) == [other.id]


class TestAuthenticate:
    async def test_bearer_yields_context(self, auth_service, member):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        ctx = await auth_service.authenticate(
            f"Bearer {pair.access_token}", ip_address="10.1.1.1", user_agent="pytest"
        )
        assert ctx.principal_id == member.id
        assert ctx.tenant_id is None
        assert ctx.ip_address == "10.1.1.1"

    async def test_missing_header(self, auth_service):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.authenticate(None)
        assert exc_info.value.message == "Authentication required"

    async def test_refresh_token_not_accepted_as_bearer(self, auth_service, member):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        with pytest.raises(TokenError):
            await auth_service.authenticate(f"Bearer {pair.refresh_token}")

    async def test_locked_account_rejected_immediately(self, auth_service, member, store):
        pair = (await auth_service.login("member@example.com", PASSWORD)).tokens
        store.set_locked(member.id, True)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {pair.access_token}")


class TestSelfServiceMfa:
    async def test_enrollment_round_trip(self, auth_service, member, store, clock):
        material = await auth_service.begin_mfa_enrollment(member.id)
        await auth_service.confirm_mfa_enrollment(
            member.id,
            material.secret,
            generate_totp(material.secret, clock.now),
            material.backup_codes,
        )
        assert store.get_account(member.id).mfa_enabled
        entry = store.list_audit_logs()[0]
        assert entry.action == "UPDATE"
        assert entry.changes_after == {"mfa_enabled": True}

    async def test_regenerate_and_disable(self, auth_service, mfa_member, store):
        account, _, _ = mfa_member
        codes = await auth_service.regenerate_backup_codes(account.id, PASSWORD)
        assert len(codes) == 8
        await auth_service.disable_mfa(account.id, PASSWORD)
        assert not store.get_account(account.id).mfa_enabled

    async def test_unknown_principal(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.begin_mfa_enrollment("missing")
