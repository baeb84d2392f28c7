from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Protocol, Tuple, TypeVar

from ssoauth.logging import get_logger
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
from ssoauth.storage.errors import ACCOUNT_EMAIL_CONSTRAINT, ConstraintViolation
from ssoauth.storage.models import Account, AccountRole, AccountStatus, App, Session

logger = get_logger(__name__)

T = TypeVar("T")


class AccountSaver(Protocol):
    async def save_account(
        self,
        email: str,
        pass_hash: str,
        role: AccountRole,
        status: AccountStatus,
        app_id: int,
    ) -> int: ...

    async def update_password(self, account_id: int, pass_hash: str) -> bool: ...

    async def update_status(self, account_id: int, status: AccountStatus) -> bool: ...


class AccountProvider(Protocol):
    async def account_by_email(self, email: str) -> Optional[Account]: ...

    async def account_by_id(self, account_id: int) -> Optional[Account]: ...

    async def is_admin(self, account_id: int) -> Optional[bool]: ...


class AppProvider(Protocol):
    async def app(self, app_id: int) -> Optional[App]: ...


class SessionSaver(Protocol):
    async def save_session(
        self,
        account_id: int,
        user_agent: str | None,
        ip_address: str | None,
        token: str,
        refresh_token: str,
        expires_at: datetime,
        refresh_expires_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> str: ...

    async def revoke_session(self, token: str) -> None: ...

    async def prune_expired_sessions(self, now: datetime) -> int: ...


class SessionProvider(Protocol):
    async def sessions_for_account(self, account_id: int) -> List[Session]: ...

    async def session(self, token: str) -> Optional[Session]: ...

    async def session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, pass_hash: str, password: str) -> bool: ...


class TokenSigner(Protocol):
    def sign(
        self, account: Account, app: App, ttl: timedelta, issued_at: Optional[datetime] = None
    ) -> str: ...


class TokenGenerator(Protocol):
    def generate(self) -> str: ...


@contextlib.contextmanager
def _operation(op: str, **fields: Any) -> Iterator[Any]:
    """Bind the operation name to the logger and record caller cancellation."""

    log = logger.bind(op=op, **fields)
    try:
        yield log
    except asyncio.CancelledError:
        log.warning("operation_cancelled")
        raise


class AuthService:
    """Credential and session lifecycle engine.

    Registers accounts, turns a password check into a signed, time-bounded
    token pair, tracks issued sessions, enforces expiry and revokes sessions.
    The service keeps no state beyond its TTLs and collaborators; every call
    re-reads accounts, apps and sessions from the stores.
    """

    def __init__(
        self,
        *,
        account_saver: AccountSaver,
        account_provider: AccountProvider,
        app_provider: AppProvider,
        session_saver: SessionSaver,
        session_provider: SessionProvider,
        hasher: PasswordHasher,
        signer: TokenSigner,
        token_generator: TokenGenerator,
        token_ttl: timedelta,
        refresh_token_ttl: timedelta,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.account_saver = account_saver
        self.account_provider = account_provider
        self.app_provider = app_provider
        self.session_saver = session_saver
        self.session_provider = session_provider
        self.hasher = hasher
        self.signer = signer
        self.token_generator = token_generator
        self.token_ttl = token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self._clock = clock

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _store(self, op: str, log: Any, event: str, call: Awaitable[T]) -> T:
        """Await a store call, classifying anything it raises as a persistence failure."""

        try:
            return await call
        except ConstraintViolation as exc:
            log.error(event, error=exc.message, constraint=exc.constraint)
            raise PersistenceError(exc.message, op=op, detail=exc.detail) from exc
        except Exception as exc:
            log.error(event, error_type=type(exc).__name__, error=str(exc))
            raise PersistenceError(op=op) from exc

    async def _hash_password(self, op: str, log: Any, password: str) -> str:
        try:
            return await asyncio.to_thread(self.hasher.hash, password)
        except Exception as exc:
            log.error("password_hash_failed", error_type=type(exc).__name__)
            raise PasswordHashingError(op=op) from exc

    async def _verify_password(self, account: Account, password: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, account.pass_hash, password)

    def _issue_tokens(
        self, op: str, log: Any, account: Account, app: App, now: datetime
    ) -> Tuple[str, str]:
        try:
            token = self.signer.sign(account, app, self.token_ttl, issued_at=now)
        except Exception as exc:
            log.error("access_token_sign_failed", error_type=type(exc).__name__)
            raise TokenGenerationError("failed to sign access token", op=op) from exc
        try:
            refresh_token = self.token_generator.generate()
        except Exception as exc:
            log.error("refresh_token_generate_failed", error_type=type(exc).__name__)
            raise TokenGenerationError("failed to generate refresh token", op=op) from exc
        return token, refresh_token

    async def _open_session(
        self,
        op: str,
        log: Any,
        account: Account,
        app: App,
        user_agent: Optional[str],
        ip_address: Optional[str],
    ) -> Tuple[str, str, datetime]:
        now = self._now()
        token, refresh_token = self._issue_tokens(op, log, account, app, now)
        refresh_expires_at = now + self.refresh_token_ttl
        session_id = await self._store(
            op,
            log,
            "session_save_failed",
            self.session_saver.save_session(
                account.id,
                user_agent,
                ip_address,
                token,
                refresh_token,
                now + self.token_ttl,
                refresh_expires_at,
                created_at=now,
            ),
        )
        log.info("session_created", session_id=session_id)
        return token, refresh_token, refresh_expires_at

    async def _account_by_id(self, op: str, log: Any, account_id: int) -> Account:
        account = await self._store(
            op, log, "account_lookup_failed", self.account_provider.account_by_id(account_id)
        )
        if account is None:
            log.warning("account_not_found")
            raise AccountNotFoundError(op=op, detail={"account_id": account_id})
        return account

    async def _app_by_id(self, op: str, log: Any, app_id: int) -> App:
        app = await self._store(op, log, "app_lookup_failed", self.app_provider.app(app_id))
        if app is None:
            log.warning("app_not_found", app_id=app_id)
            raise AppNotFoundError(op=op, detail={"app_id": app_id})
        return app

    async def register_new_account(
        self,
        email: str,
        password: str,
        role: AccountRole = AccountRole.USER,
        app_id: int = 0,
    ) -> int:
        """Register a new ACTIVE account and return its id.

        Registration does not open a session; callers that want one call
        ``login`` afterwards.
        """
        op = "AuthService.register_new_account"
        with _operation(op, email=email, app_id=app_id) as log:
            log.info("registering_account")
            pass_hash = await self._hash_password(op, log, password)
            try:
                account_id = await self.account_saver.save_account(
                    email, pass_hash, AccountRole(role), AccountStatus.ACTIVE, app_id
                )
            except ConstraintViolation as exc:
                if exc.constraint != ACCOUNT_EMAIL_CONSTRAINT:
                    log.error(
                        "account_save_failed", error=exc.message, constraint=exc.constraint
                    )
                    raise PersistenceError(exc.message, op=op, detail=exc.detail) from exc
                log.warning("account_save_rejected", error=exc.message)
                raise AccountExistsError(op=op, detail=exc.detail) from exc
            except Exception as exc:
                log.error("account_save_failed", error_type=type(exc).__name__, error=str(exc))
                raise PersistenceError(op=op) from exc
            log.info("account_registered", account_id=account_id)
            return account_id

    async def login(
        self,
        email: str,
        password: str,
        user_agent: Optional[str],
        ip_address: Optional[str],
        app_id: int,
    ) -> Tuple[str, str]:
        """Check credentials and open a session, returning (access, refresh).

        Unknown email and wrong password both raise the same
        ``InvalidCredentialsError``; only the log tells them apart.
        """
        op = "AuthService.login"
        with _operation(op, email=email, app_id=app_id) as log:
            log.info("login_attempt")
            account = await self._store(
                op, log, "account_lookup_failed", self.account_provider.account_by_email(email)
            )
            if account is None:
                log.warning("login_account_not_found")
                raise InvalidCredentialsError(op=op)
            if not await self._verify_password(account, password):
                log.info("login_password_mismatch", account_id=account.id)
                raise InvalidCredentialsError(op=op)

            app = await self._app_by_id(op, log, app_id)
            token, refresh_token, _ = await self._open_session(
                op, log, account, app, user_agent, ip_address
            )
            log.info("login_succeeded", account_id=account.id)
            return token, refresh_token

    async def logout(self, account_id: int) -> bool:
        """Revoke every session of the account, in issue order.

        This covers sessions whose access token has already expired, since
        their refresh tokens are still live; it is a superset of
        ``get_active_account_sessions``.

        Stops at the first revoke failure: earlier sessions stay revoked, later
        ones stay live, and the raised error reports both counts.
        """
        op = "AuthService.logout"
        with _operation(op, account_id=account_id) as log:
            log.info("logout_started")
            sessions = await self._store(
                op,
                log,
                "session_list_failed",
                self.session_provider.sessions_for_account(account_id),
            )
            for revoked, session in enumerate(sessions):
                try:
                    await self.session_saver.revoke_session(session.token)
                except Exception as exc:
                    log.error(
                        "session_revoke_failed",
                        session_id=session.id,
                        revoked=revoked,
                        remaining=len(sessions) - revoked,
                        error_type=type(exc).__name__,
                    )
                    raise PersistenceError(
                        "failed to revoke session",
                        op=op,
                        detail={
                            "session_id": session.id,
                            "revoked": revoked,
                            "remaining": len(sessions) - revoked,
                        },
                    ) from exc
            log.info("logout_succeeded", revoked=len(sessions))
            return True

    async def change_password(
        self, account_id: int, old_password: str, new_password: str
    ) -> bool:
        # verify and update are separate store calls; a concurrent change in
        # between is not detected (last write wins)
        op = "AuthService.change_password"
        with _operation(op, account_id=account_id) as log:
            log.info("password_change_attempt")
            account = await self._account_by_id(op, log, account_id)
            if not await self._verify_password(account, old_password):
                log.info("password_change_old_mismatch")
                raise InvalidCredentialsError(op=op)
            new_hash = await self._hash_password(op, log, new_password)
            updated = await self._store(
                op,
                log,
                "password_update_failed",
                self.account_saver.update_password(account_id, new_hash),
            )
            if not updated:
                log.warning("password_update_no_account")
                raise AccountNotFoundError(op=op, detail={"account_id": account_id})
            log.info("password_changed")
            return True

    async def change_status(self, account_id: int, status: AccountStatus) -> AccountStatus:
        """Set the account status. Any status is accepted from any status."""
        op = "AuthService.change_status"
        status = AccountStatus(status)
        with _operation(op, account_id=account_id, new_status=status.value) as log:
            log.info("status_change_attempt")
            updated = await self._store(
                op,
                log,
                "status_update_failed",
                self.account_saver.update_status(account_id, status),
            )
            if not updated:
                log.warning("status_update_no_account")
                raise AccountNotFoundError(op=op, detail={"account_id": account_id})
            log.info("status_changed")
            return status

    async def is_admin(self, account_id: int) -> bool:
        op = "AuthService.is_admin"
        with _operation(op, account_id=account_id) as log:
            result = await self._store(
                op, log, "admin_lookup_failed", self.account_provider.is_admin(account_id)
            )
            if result is None:
                log.warning("account_not_found")
                raise AccountNotFoundError(op=op, detail={"account_id": account_id})
            return result

    async def get_active_account_sessions(self, account_id: int) -> List[Session]:
        """Sessions of the account whose access token has not expired yet."""
        op = "AuthService.get_active_account_sessions"
        with _operation(op, account_id=account_id) as log:
            sessions = await self._store(
                op,
                log,
                "session_list_failed",
                self.session_provider.sessions_for_account(account_id),
            )
            now = self._now()
            active = [s for s in sessions if s.is_active(now)]
            log.info("sessions_retrieved", total=len(sessions), active=len(active))
            return active

    async def refresh_account_session(
        self,
        account_id: int,
        refresh_token: str,
        user_agent: Optional[str],
        ip_address: Optional[str],
    ) -> Tuple[str, str, int]:
        """Exchange a refresh token for a new pair.

        Returns (access, refresh, refresh expiry as a Unix timestamp). A new
        session is stored; the one holding ``refresh_token`` is left as is and
        stays usable until it expires or is revoked.
        """
        op = "AuthService.refresh_account_session"
        with _operation(op, account_id=account_id) as log:
            account = await self._account_by_id(op, log, account_id)
            app = await self._app_by_id(op, log, account.app_id)

            session = await self._store(
                op,
                log,
                "session_lookup_failed",
                self.session_provider.session_by_refresh_token(refresh_token),
            )
            if session is None or session.account_id != account_id:
                log.warning("refresh_token_unknown")
                raise SessionNotFoundError(op=op)
            if not session.is_refreshable(self._now()):
                log.info("refresh_token_expired", session_id=session.id)
                raise RefreshTokenExpiredError(
                    op=op,
                    detail={
                        "session_id": session.id,
                        "expired_at": int(session.refresh_expires_at.timestamp()),
                    },
                )

            token, new_refresh, refresh_expires_at = await self._open_session(
                op, log, account, app, user_agent, ip_address
            )
            log.info("session_refreshed", previous_session_id=session.id)
            return token, new_refresh, int(refresh_expires_at.timestamp())

    async def validate_account_session(self, token: str) -> Tuple[bool, int]:
        """Return (is_valid, expires_at_unix) for an access token.

        An unknown token raises ``SessionNotFoundError``; an expired one is
        reported as ``(False, expires_at)``.
        """
        op = "AuthService.validate_account_session"
        with _operation(op) as log:
            session = await self._store(
                op, log, "session_lookup_failed", self.session_provider.session(token)
            )
            if session is None:
                log.info("session_not_found")
                raise SessionNotFoundError(op=op)
            expires_at = int(session.expires_at.timestamp())
            if not session.is_active(self._now()):
                log.info("session_expired", session_id=session.id)
                return False, expires_at
            return True, expires_at

    async def revoke_account_session(self, token: str) -> bool:
        op = "AuthService.revoke_account_session"
        with _operation(op) as log:
            await self._store(
                op, log, "session_revoke_failed", self.session_saver.revoke_session(token)
            )
            log.info("session_revoked")
            return True

    async def prune_expired_sessions(self) -> int:
        """Delete sessions that can no longer be refreshed.

        Refresh adds a session rather than replacing one, so sessions pile up
        per account; callers run this on a schedule to bound that growth.
        """
        op = "AuthService.prune_expired_sessions"
        with _operation(op) as log:
            pruned = await self._store(
                op,
                log,
                "session_prune_failed",
                self.session_saver.prune_expired_sessions(self._now()),
            )
            log.info("sessions_pruned", pruned=pruned)
            return pruned
