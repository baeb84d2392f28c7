from __future__ import annotations

import threading
from typing import Optional

from ssoauth.config import Settings, get_settings, reset_settings_cache
from ssoauth.logging import get_logger
from ssoauth.service.auth import AuthService
from ssoauth.service.crypto import (
    Argon2PasswordHasher,
    HmacTokenSigner,
    RandomTokenGenerator,
)
from ssoauth.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds the store and auth engine built from settings for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            persistent=bool(self.settings.state_path),
        )

        try:
            self.store = MemoryStore(
                self.settings.state_path, secret_key=self.settings.store_secret_key
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.auth = AuthService(
            account_saver=self.store,
            account_provider=self.store,
            app_provider=self.store,
            session_saver=self.store,
            session_provider=self.store,
            hasher=Argon2PasswordHasher(
                time_cost=self.settings.password_hash_time_cost,
                memory_cost=self.settings.password_hash_memory_cost,
                parallelism=self.settings.password_hash_parallelism,
            ),
            signer=HmacTokenSigner(issuer=self.settings.jwt_issuer),
            token_generator=RandomTokenGenerator(),
            token_ttl=self.settings.token_ttl,
            refresh_token_ttl=self.settings.refresh_token_ttl,
        )
        logger.info(
            "runtime_init_completed",
            token_ttl_minutes=self.settings.token_ttl_minutes,
            refresh_token_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> None:
    """Drop the cached runtime and settings so the next call rebuilds them."""

    global _runtime
    with _runtime_lock:
        _runtime = None
    reset_settings_cache()
