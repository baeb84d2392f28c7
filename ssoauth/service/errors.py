from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for classified engine failures.

    Each failure carries a stable ``error_code`` that callers may surface to
    API clients as an opaque code, and the name of the engine operation that
    raised it (``op``) for diagnostics. ``detail`` holds non-sensitive context
    only; credentials, hashes and tokens never go in it.

    Codes:
    - invalid_credentials
    - account_not_found / app_not_found / session_not_found
    - refresh_token_expired
    - hashing_failed / token_generation_failed
    - persistence_failed / account_exists

    Cancellation is not part of this hierarchy: a cancelled operation re-raises
    ``asyncio.CancelledError`` so ``asyncio.timeout`` and task cancellation keep
    working for the caller.
    """

    error_code: str = "server_error"
    default_message: str = "internal error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        op: Optional[str] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        self.op = op
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.op:
            return f"{self.op}: {self.message}"
        return self.message


class InvalidCredentialsError(ServiceError):
    """Wrong email/password pair, or old-password mismatch.

    The message is fixed so that it never reveals which field was wrong.
    """

    error_code = "invalid_credentials"
    default_message = "invalid credentials"

    def __init__(self, *, op: Optional[str] = None) -> None:
        super().__init__(op=op)


class NotFoundError(ServiceError):
    error_code = "not_found"
    default_message = "not found"


class AccountNotFoundError(NotFoundError):
    error_code = "account_not_found"
    default_message = "account not found"


class AppNotFoundError(NotFoundError):
    error_code = "app_not_found"
    default_message = "app not found"


class SessionNotFoundError(NotFoundError):
    error_code = "session_not_found"
    default_message = "session not found"


class RefreshTokenExpiredError(ServiceError):
    error_code = "refresh_token_expired"
    default_message = "refresh token expired"


class PasswordHashingError(ServiceError):
    error_code = "hashing_failed"
    default_message = "failed to hash password"


class TokenGenerationError(ServiceError):
    error_code = "token_generation_failed"
    default_message = "failed to generate token"


class PersistenceError(ServiceError):
    error_code = "persistence_failed"
    default_message = "storage operation failed"


class AccountExistsError(PersistenceError):
    error_code = "account_exists"
    default_message = "account already exists"


__all__ = [
    "ServiceError",
    "InvalidCredentialsError",
    "NotFoundError",
    "AccountNotFoundError",
    "AppNotFoundError",
    "SessionNotFoundError",
    "RefreshTokenExpiredError",
    "PasswordHashingError",
    "TokenGenerationError",
    "PersistenceError",
    "AccountExistsError",
]
