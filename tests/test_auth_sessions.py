"""Lifecycle tests for the auth service.

Covers:
- Registration and login round trip
- Credential failures and their wording
- Session validation and expiry
- Additive refresh and refresh expiry
- Logout fan-out, including partial failure
- Password and status changes
- Session pruning and cancellation
"""

import asyncio

import pytest

from conftest import REFRESH_TTL, TOKEN_TTL, build_auth_service
from ssoauth.service.errors import (
    AccountExistsError,
    AccountNotFoundError,
    AppNotFoundError,
    InvalidCredentialsError,
    PasswordHashingError,
    PersistenceError,
    RefreshTokenExpiredError,
    SessionNotFoundError,
    TokenGenerationError,
)
from ssoauth.storage.errors import ConstraintViolation
from ssoauth.storage.memory import MemoryStore
from ssoauth.storage.models import AccountRole, AccountStatus

EMAIL = "a@x.com"
PASSWORD = "pw123"


class TenantLimitedStore(MemoryStore):
    """Memory store that rejects every account with a non-email constraint."""

    async def save_account(self, email, pass_hash, role, status, app_id):
        raise ConstraintViolation(
            "tenant account limit reached", {"app_id": app_id}, constraint="tenant_quota"
        )


class FailingSnapshotStore(MemoryStore):
    """Memory store whose snapshot write can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_writes = False

    def _persist_state(self) -> None:
        if self.fail_writes:
            raise RuntimeError("failed to persist in-memory state: disk full")
        super()._persist_state()


async def _register_and_login(auth, email=EMAIL, password=PASSWORD, app_id=1):
    account_id = await auth.register_new_account(email, password, AccountRole.USER, app_id)
    access, refresh = await auth.login(email, password, "pytest", "127.0.0.1", app_id)
    return account_id, access, refresh


class TestRegistration:
    async def test_register_returns_id_and_stores_hash(self, auth_service, memory_store):
        account_id = await auth_service.register_new_account(
            EMAIL, PASSWORD, AccountRole.USER, 1
        )

        account = await memory_store.account_by_id(account_id)
        assert account.email == EMAIL
        assert account.status == AccountStatus.ACTIVE
        assert account.pass_hash != PASSWORD
        assert account.pass_hash.startswith("$argon2id$")

    async def test_register_does_not_open_a_session(self, auth_service, memory_store):
        account_id = await auth_service.register_new_account(
            EMAIL, PASSWORD, AccountRole.USER, 1
        )

        assert await memory_store.sessions_for_account(account_id) == []

    async def test_duplicate_email_is_a_persistence_failure(self, auth_service):
        await auth_service.register_new_account(EMAIL, PASSWORD, AccountRole.USER, 1)

        with pytest.raises(AccountExistsError) as excinfo:
            await auth_service.register_new_account(EMAIL, "other", AccountRole.USER, 1)

        assert isinstance(excinfo.value, PersistenceError)
        assert excinfo.value.op == "AuthService.register_new_account"

    async def test_other_constraints_are_plain_persistence_failures(
        self, hasher, signer, clock
    ):
        auth = build_auth_service(
            TenantLimitedStore(), hasher=hasher, signer=signer, clock=clock
        )

        with pytest.raises(PersistenceError) as excinfo:
            await auth.register_new_account(EMAIL, PASSWORD, AccountRole.USER, 1)

        assert not isinstance(excinfo.value, AccountExistsError)
        assert excinfo.value.error_code == "persistence_failed"

    async def test_failed_snapshot_does_not_leave_account_behind(
        self, app, hasher, signer, clock
    ):
        store = FailingSnapshotStore()
        store.save_app(app.name, app.secret, app_id=app.id)
        auth = build_auth_service(store, hasher=hasher, signer=signer, clock=clock)
        store.fail_writes = True

        with pytest.raises(PersistenceError):
            await auth.register_new_account(EMAIL, PASSWORD, AccountRole.USER, 1)

        store.fail_writes = False
        with pytest.raises(InvalidCredentialsError):
            await auth.login(EMAIL, PASSWORD, None, None, 1)
        assert await auth.register_new_account(EMAIL, PASSWORD, AccountRole.USER, 1)

    async def test_oversized_password_is_a_hashing_failure(self, auth_service):
        with pytest.raises(PasswordHashingError):
            await auth_service.register_new_account(
                EMAIL, "x" * 4096, AccountRole.USER, 1
            )


class TestLogin:
    async def test_login_session_windows_match_ttls(self, auth_service, memory_store, clock):
        account_id, access, refresh = await _register_and_login(auth_service)

        session = await memory_store.session(access)
        assert session.account_id == account_id
        assert session.refresh_token == refresh
        assert session.expires_at == clock.now + TOKEN_TTL
        assert session.refresh_expires_at == clock.now + REFRESH_TTL
        assert session.created_at == clock.now
        assert session.user_agent == "pytest"
        assert session.ip_address == "127.0.0.1"

    async def test_access_token_carries_identity(self, auth_service, signer, app, clock):
        account_id, access, _ = await _register_and_login(auth_service)

        claims = signer.decode(access, app, now=clock.now)
        assert claims["uid"] == account_id
        assert claims["email"] == EMAIL
        assert claims["app_id"] == app.id
        assert claims["exp"] == int((clock.now + TOKEN_TTL).timestamp())

    async def test_unknown_email_and_wrong_password_look_the_same(self, auth_service):
        await auth_service.register_new_account(EMAIL, PASSWORD, AccountRole.USER, 1)

        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@x.com", PASSWORD, None, None, 1)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login(EMAIL, "wrong", None, None, 1)

        assert str(unknown.value) == str(wrong.value)
        assert "email" not in str(wrong.value)
        assert "password" not in str(wrong.value)

    async def test_unknown_app(self, auth_service):
        await auth_service.register_new_account(EMAIL, PASSWORD, AccountRole.USER, 1)

        with pytest.raises(AppNotFoundError):
            await auth_service.login(EMAIL, PASSWORD, None, None, 99)

    async def test_signer_failure_is_token_generation_failure(
        self, memory_store, app, hasher, clock
    ):
        class BrokenSigner:
            def sign(self, account, app, ttl, issued_at=None):
                raise RuntimeError("hsm unavailable")

        auth = build_auth_service(memory_store, hasher=hasher, signer=BrokenSigner(), clock=clock)
        await auth.register_new_account(EMAIL, PASSWORD, AccountRole.USER, 1)

        with pytest.raises(TokenGenerationError):
            await auth.login(EMAIL, PASSWORD, None, None, 1)

    async def test_two_logins_yield_distinct_sessions(self, auth_service, memory_store):
        account_id, first, _ = await _register_and_login(auth_service)
        second, _ = await auth_service.login(EMAIL, PASSWORD, None, None, 1)

        assert first != second
        assert len(await memory_store.sessions_for_account(account_id)) == 2


class TestValidation:
    async def test_unknown_token_is_session_not_found(self, auth_service):
        with pytest.raises(SessionNotFoundError):
            await auth_service.validate_account_session("never-issued")

    async def test_valid_until_expiry(self, auth_service, clock):
        _, access, _ = await _register_and_login(auth_service)
        expected_exp = int((clock.now + TOKEN_TTL).timestamp())

        assert await auth_service.validate_account_session(access) == (True, expected_exp)

        clock.advance(seconds=3599)
        assert await auth_service.validate_account_session(access) == (True, expected_exp)

        clock.advance(seconds=1)
        assert await auth_service.validate_account_session(access) == (False, expected_exp)

    async def test_revoked_token_is_not_found(self, auth_service):
        _, access, _ = await _register_and_login(auth_service)

        assert await auth_service.revoke_account_session(access) is True
        with pytest.raises(SessionNotFoundError):
            await auth_service.validate_account_session(access)

    async def test_revoke_is_idempotent(self, auth_service):
        _, access, _ = await _register_and_login(auth_service)

        assert await auth_service.revoke_account_session(access) is True
        assert await auth_service.revoke_account_session(access) is True


class TestRefresh:
    async def test_refresh_adds_a_session(self, auth_service, memory_store, clock):
        account_id, access, refresh = await _register_and_login(auth_service)
        clock.advance(hours=2)

        new_access, new_refresh, refresh_exp = await auth_service.refresh_account_session(
            account_id, refresh, "pytest", "10.0.0.1"
        )

        assert new_access != access
        assert new_refresh != refresh
        assert refresh_exp == int((clock.now + REFRESH_TTL).timestamp())
        sessions = await memory_store.sessions_for_account(account_id)
        assert [s.token for s in sessions] == [access, new_access]
        assert await auth_service.validate_account_session(new_access) == (
            True,
            int((clock.now + TOKEN_TTL).timestamp()),
        )

    async def test_prior_session_stays_independent(self, auth_service, memory_store):
        account_id, access, refresh = await _register_and_login(auth_service)
        new_access, _, _ = await auth_service.refresh_account_session(
            account_id, refresh, None, None
        )

        # old refresh token is still usable
        await auth_service.refresh_account_session(account_id, refresh, None, None)

        await auth_service.revoke_account_session(access)
        assert (await auth_service.validate_account_session(new_access))[0] is True

    async def test_refresh_tokens_never_repeat(self, auth_service):
        account_id, _, refresh = await _register_and_login(auth_service)
        seen = {refresh}
        for _ in range(5):
            _, refresh, _ = await auth_service.refresh_account_session(
                account_id, refresh, None, None
            )
            assert refresh not in seen
            seen.add(refresh)

    async def test_refresh_expired(self, auth_service, clock):
        account_id, _, refresh = await _register_and_login(auth_service)
        clock.advance(hours=24)

        with pytest.raises(RefreshTokenExpiredError) as excinfo:
            await auth_service.refresh_account_session(account_id, refresh, None, None)

        assert excinfo.value.error_code == "refresh_token_expired"
        assert excinfo.value.op == "AuthService.refresh_account_session"

    async def test_unknown_refresh_token(self, auth_service):
        account_id, _, _ = await _register_and_login(auth_service)

        with pytest.raises(SessionNotFoundError):
            await auth_service.refresh_account_session(account_id, "bogus", None, None)

    async def test_refresh_token_of_other_account_is_rejected(self, auth_service):
        _, _, refresh = await _register_and_login(auth_service)
        other_id, _, _ = await _register_and_login(auth_service, email="b@x.com")

        with pytest.raises(SessionNotFoundError):
            await auth_service.refresh_account_session(other_id, refresh, None, None)

    async def test_unknown_account(self, auth_service):
        with pytest.raises(AccountNotFoundError):
            await auth_service.refresh_account_session(404, "anything", None, None)

    async def test_account_whose_app_is_gone(self, auth_service):
        account_id = await auth_service.register_new_account(
            EMAIL, PASSWORD, AccountRole.USER, 7
        )

        with pytest.raises(AppNotFoundError):
            await auth_service.refresh_account_session(account_id, "anything", None, None)


class TestConcreteScenario:
    async def test_one_hour_token_one_day_refresh(self, auth_service, clock):
        account_id, access, refresh = await _register_and_login(auth_service)
        issued = clock.now

        valid, exp = await auth_service.validate_account_session(access)
        assert valid is True
        assert exp == int(issued.timestamp()) + 3600

        clock.advance(seconds=3601)
        assert await auth_service.validate_account_session(access) == (False, exp)

        new_access, new_refresh, _ = await auth_service.refresh_account_session(
            account_id, refresh, None, None
        )
        assert (await auth_service.validate_account_session(new_access))[0] is True

        clock.now = issued + REFRESH_TTL
        with pytest.raises(RefreshTokenExpiredError):
            await auth_service.refresh_account_session(account_id, refresh, None, None)


class FlakyRevokeStore(MemoryStore):
    """Memory store whose n-th revoke call fails."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.revoke_calls = []

    async def revoke_session(self, token):
        self.revoke_calls.append(token)
        if len(self.revoke_calls) == self.fail_on:
            raise RuntimeError("connection reset")
        await super().revoke_session(token)


class TestLogout:
    async def test_logout_revokes_every_active_session_in_order(
        self, auth_service, memory_store
    ):
        account_id, _, _ = await _register_and_login(auth_service)
        for _ in range(2):
            await auth_service.login(EMAIL, PASSWORD, None, None, 1)
        before = await auth_service.get_active_account_sessions(account_id)

        assert await auth_service.logout(account_id) is True

        assert len(before) == 3
        assert await memory_store.sessions_for_account(account_id) == []
        for session in before:
            with pytest.raises(SessionNotFoundError):
                await auth_service.validate_account_session(session.token)

    async def test_logout_without_sessions(self, auth_service):
        account_id = await auth_service.register_new_account(
            EMAIL, PASSWORD, AccountRole.USER, 1
        )

        assert await auth_service.logout(account_id) is True

    async def test_logout_also_revokes_access_expired_sessions(
        self, auth_service, memory_store, clock
    ):
        """Sessions past their access window still hold live refresh tokens."""
        account_id, stale_access, stale_refresh = await _register_and_login(auth_service)
        clock.advance(minutes=90)
        fresh_access, _ = await auth_service.login(EMAIL, PASSWORD, None, None, 1)

        active = await auth_service.get_active_account_sessions(account_id)
        assert [s.token for s in active] == [fresh_access]

        assert await auth_service.logout(account_id) is True

        assert await memory_store.sessions_for_account(account_id) == []
        with pytest.raises(SessionNotFoundError):
            await auth_service.validate_account_session(stale_access)
        with pytest.raises(SessionNotFoundError):
            await auth_service.refresh_account_session(account_id, stale_refresh, None, None)

    async def test_logout_stops_at_first_failure(self, app, hasher, signer, clock):
        store = FlakyRevokeStore(fail_on=2)
        store.save_app(app.name, app.secret, app_id=app.id)
        auth = build_auth_service(store, hasher=hasher, signer=signer, clock=clock)
        account_id, first, _ = await _register_and_login(auth)
        second, _ = await auth.login(EMAIL, PASSWORD, None, None, 1)
        third, _ = await auth.login(EMAIL, PASSWORD, None, None, 1)

        with pytest.raises(PersistenceError) as excinfo:
            await auth.logout(account_id)

        assert store.revoke_calls == [first, second]
        assert excinfo.value.detail["revoked"] == 1
        assert excinfo.value.detail["remaining"] == 2
        remaining = [s.token for s in await store.sessions_for_account(account_id)]
        assert remaining == [second, third]


class TestActiveSessions:
    async def test_expired_access_sessions_are_filtered(self, auth_service, clock):
        account_id, first, _ = await _register_and_login(auth_service)
        clock.advance(minutes=45)
        second, _ = await auth_service.login(EMAIL, PASSWORD, None, None, 1)
        clock.advance(minutes=30)

        active = await auth_service.get_active_account_sessions(account_id)

        assert [s.token for s in active] == [second]

    async def test_returned_sessions_are_copies(self, auth_service, memory_store):
        account_id, access, _ = await _register_and_login(auth_service)

        active = await auth_service.get_active_account_sessions(account_id)
        active[0].token = "tampered"

        assert (await memory_store.session(access)) is not None


class TestPasswordChange:
    async def test_new_password_replaces_old(self, auth_service):
        account_id = await auth_service.register_new_account(
            EMAIL, PASSWORD, AccountRole.USER, 1
        )

        assert await auth_service.change_password(account_id, PASSWORD, "n3w-pass") is True

        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(account_id, PASSWORD, "again")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(EMAIL, PASSWORD, None, None, 1)
        access, _ = await auth_service.login(EMAIL, "n3w-pass", None, None, 1)
        assert access

    async def test_wrong_old_password(self, auth_service):
        account_id = await auth_service.register_new_account(
            EMAIL, PASSWORD, AccountRole.USER, 1
        )

        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(account_id, "nope", "n3w-pass")

    async def test_unknown_account(self, auth_service):
        with pytest.raises(AccountNotFoundError):
            await auth_service.change_password(404, PASSWORD, "n3w-pass")


class TestStatusAndRole:
    async def test_change_status_accepts_any_transition(self, auth_service, memory_store):
        account_id = await auth_service.register_new_account(
            EMAIL, PASSWORD, AccountRole.USER, 1
        )

        assert (
            await auth_service.change_status(account_id, AccountStatus.SUSPENDED)
            == AccountStatus.SUSPENDED
        )
        assert await auth_service.change_status(account_id, "active") == AccountStatus.ACTIVE
        assert (await memory_store.account_by_id(account_id)).status == AccountStatus.ACTIVE

    async def test_change_status_unknown_account(self, auth_service):
        with pytest.raises(AccountNotFoundError):
            await auth_service.change_status(404, AccountStatus.DISABLED)

    async def test_is_admin(self, auth_service):
        admin_id = await auth_service.register_new_account(
            "root@x.com", PASSWORD, AccountRole.ADMIN, 1
        )
        user_id = await auth_service.register_new_account(EMAIL, PASSWORD, AccountRole.USER, 1)

        assert await auth_service.is_admin(admin_id) is True
        assert await auth_service.is_admin(user_id) is False
        with pytest.raises(AccountNotFoundError):
            await auth_service.is_admin(404)


class TestPruning:
    async def test_prune_drops_sessions_past_refresh_window(
        self, auth_service, memory_store, clock
    ):
        account_id, first, _ = await _register_and_login(auth_service)
        clock.advance(hours=12)
        second, _ = await auth_service.login(EMAIL, PASSWORD, None, None, 1)
        clock.advance(hours=12)

        assert await auth_service.prune_expired_sessions() == 1

        remaining = await memory_store.sessions_for_account(account_id)
        assert [s.token for s in remaining] == [second]


class BrokenStore(MemoryStore):
    async def sessions_for_account(self, account_id):
        raise OSError("disk full")


class SlowSessionStore(MemoryStore):
    async def session(self, token):
        await asyncio.sleep(10)
        return await super().session(token)


class TestFailureClassification:
    async def test_store_errors_become_persistence_failures(self, hasher, signer, clock):
        auth = build_auth_service(BrokenStore(), hasher=hasher, signer=signer, clock=clock)

        with pytest.raises(PersistenceError) as excinfo:
            await auth.get_active_account_sessions(1)

        assert str(excinfo.value).startswith("AuthService.get_active_account_sessions: ")
        assert isinstance(excinfo.value.__cause__, OSError)

    async def test_caller_deadline_cancels_store_call(self, hasher, signer, clock):
        auth = build_auth_service(
            SlowSessionStore(), hasher=hasher, signer=signer, clock=clock
        )

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(auth.validate_account_session("token"), timeout=0.05)

    async def test_task_cancellation_propagates(self, hasher, signer, clock):
        auth = build_auth_service(
            SlowSessionStore(), hasher=hasher, signer=signer, clock=clock
        )
        task = asyncio.ensure_future(auth.validate_account_session("token"))
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
