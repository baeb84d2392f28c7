from __future__ import annotations

import base64
import dataclasses
import hashlib
import json
import os
import secrets
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from ssoauth.logging import get_logger
from ssoauth.storage.errors import ACCOUNT_EMAIL_CONSTRAINT, ConstraintViolation
from ssoauth.storage.models import (
    Account,
    AccountRole,
    AccountStatus,
    App,
    Session,
    utcnow,
)


class MemoryStore:
    """In-process account, app and session store.

    Satisfies every store protocol the auth engine consumes. Records handed out
    are copies, so callers cannot mutate stored state behind the store's back.
    When ``state_path`` is set, every write is snapshotted to JSON and the
    snapshot is reloaded on start; app secrets are encrypted in the snapshot.
    """

    def __init__(
        self,
        state_path: str | None = None,
        *,
        secret_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.apps: Dict[int, App] = {}
        self.sessions: Dict[str, Session] = {}
        self._session_by_token: Dict[str, str] = {}
        self._session_by_refresh: Dict[str, str] = {}
        self._account_seq: int = 1
        self._app_seq: int = 1
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock for all data operations; writes call _persist_state while holding it
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        self._cipher = self._build_cipher(secret_key) if self.state_path else None
        if self.state_path:
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("STORE_SECRET_KEY")
        if not material:
            key_path = self.state_path.parent / ".store_key"
            try:
                if key_path.exists():
                    material = key_path.read_text().strip()
            except OSError as exc:
                self.logger.warning("store_key_read_failed", error=str(exc))
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    key_path.parent.mkdir(parents=True, exist_ok=True)
                    key_path.write_text(generated)
                    os.chmod(key_path, 0o600)
                    material = generated
                except Exception as exc:
                    raise RuntimeError("Unable to persist store encryption key") from exc
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize store cipher") from exc

    def _next_account_id(self) -> int:
        with self._seq_lock:
            next_id = self._account_seq
            self._account_seq += 1
            return next_id

    def _next_app_id(self) -> int:
        with self._seq_lock:
            next_id = self._app_seq
            self._app_seq += 1
            return next_id

    # accounts
    async def save_account(
        self,
        email: str,
        pass_hash: str,
        role: AccountRole,
        status: AccountStatus,
        app_id: int,
    ) -> int:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint=ACCOUNT_EMAIL_CONSTRAINT,
                )
            account = Account(
                id=self._next_account_id(),
                email=email,
                pass_hash=pass_hash,
                role=AccountRole(role),
                status=AccountStatus(status),
                app_id=app_id,
            )
            self.accounts[account.id] = account
            try:
                self._persist_state()
            except RuntimeError:
                self.accounts.pop(account.id, None)
                raise
            return account.id

    async def update_password(self, account_id: int, pass_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            previous = account.pass_hash
            account.pass_hash = pass_hash
            try:
                self._persist_state()
            except RuntimeError:
                account.pass_hash = previous
                raise
            return True

    async def update_status(self, account_id: int, status: AccountStatus) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            previous = account.status
            account.status = AccountStatus(status)
            try:
                self._persist_state()
            except RuntimeError:
                account.status = previous
                raise
            return True

    async def account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return dataclasses.replace(account) if account else None

    async def account_by_id(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return dataclasses.replace(account) if account else None

    async def is_admin(self, account_id: int) -> Optional[bool]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            return account.is_admin

    # apps
    def save_app(
        self,
        name: str,
        secret: str,
        *,
        token_ttl: timedelta = timedelta(hours=1),
        refresh_token_ttl: timedelta = timedelta(hours=24),
        redirect_url: str | None = None,
        app_id: int | None = None,
    ) -> App:
        """Register a client app. Apps are provisioned outside the auth engine."""
        with self._data_lock:
            if app_id is not None and app_id in self.apps:
                raise ConstraintViolation(
                    "app id already exists", {"app_id": app_id}, constraint="app_pkey"
                )
            if app_id is None:
                app_id = self._next_app_id()
                while app_id in self.apps:
                    app_id = self._next_app_id()
            else:
                with self._seq_lock:
                    self._app_seq = max(self._app_seq, app_id + 1)
            app = App(
                id=app_id,
                name=name,
                secret=secret,
                token_ttl=token_ttl,
                refresh_token_ttl=refresh_token_ttl,
                redirect_url=redirect_url,
            )
            self.apps[app.id] = app
            try:
                self._persist_state()
            except RuntimeError:
                self.apps.pop(app.id, None)
                raise
            return dataclasses.replace(app)

    async def app(self, app_id: int) -> Optional[App]:
        with self._data_lock:
            app = self.apps.get(app_id)
            return dataclasses.replace(app) if app else None

    # sessions
    async def save_session(
        self,
        account_id: int,
        user_agent: str | None,
        ip_address: str | None,
        token: str,
        refresh_token: str,
        expires_at: datetime,
        refresh_expires_at: datetime,
        created_at: datetime | None = None,
    ) -> str:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist",
                    {"account_id": account_id},
                    constraint="session_account_fkey",
                )
            if refresh_token in self._session_by_refresh:
                raise ConstraintViolation(
                    "refresh token already issued",
                    {"field": "refresh_token"},
                    constraint="session_refresh_token_key",
                )
            if token in self._session_by_token:
                raise ConstraintViolation(
                    "token already issued", {"field": "token"}, constraint="session_token_key"
                )
            sess = Session(
                id=str(uuid.uuid4()),
                account_id=account_id,
                token=token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                refresh_expires_at=refresh_expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
                created_at=created_at or utcnow(),
            )
            self._index_session(sess)
            try:
                self._persist_state()
            except RuntimeError:
                self._drop_session(sess.id)
                raise
            return sess.id

    def _index_session(self, sess: Session) -> None:
        self.sessions[sess.id] = sess
        self._session_by_token[sess.token] = sess.id
        self._session_by_refresh[sess.refresh_token] = sess.id

    def _drop_session(self, session_id: str) -> None:
        sess = self.sessions.pop(session_id, None)
        if sess:
            self._session_by_token.pop(sess.token, None)
            self._session_by_refresh.pop(sess.refresh_token, None)

    def _restore_sessions(self, sessions: Dict[str, Session]) -> None:
        """Reinstate a previous session map, keeping its issue order."""
        self.sessions = {}
        self._session_by_token = {}
        self._session_by_refresh = {}
        for sess in sessions.values():
            self._index_session(sess)

    async def revoke_session(self, token: str) -> None:
        with self._data_lock:
            session_id = self._session_by_token.get(token)
            if session_id is None:
                return
            previous = dict(self.sessions)
            self._drop_session(session_id)
            try:
                self._persist_state()
            except RuntimeError:
                self._restore_sessions(previous)
                raise

    async def sessions_for_account(self, account_id: int) -> List[Session]:
        """Every unrevoked session of the account, oldest first."""
        with self._data_lock:
            return [
                dataclasses.replace(s)
                for s in self.sessions.values()
                if s.account_id == account_id
            ]

    async def session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._session_by_token.get(token)
            if session_id is None:
                return None
            return dataclasses.replace(self.sessions[session_id])

    async def session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._session_by_refresh.get(refresh_token)
            if session_id is None:
                return None
            return dataclasses.replace(self.sessions[session_id])

    async def prune_expired_sessions(self, now: datetime) -> int:
        """Delete sessions whose refresh window has closed."""
        with self._data_lock:
            stale = [
                sid for sid, sess in self.sessions.items() if not sess.is_refreshable(now)
            ]
            if not stale:
                return 0
            previous = dict(self.sessions)
            for sid in stale:
                self._drop_session(sid)
            try:
                self._persist_state()
            except RuntimeError:
                self._restore_sessions(previous)
                raise
            return len(stale)

    # snapshot
    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _encrypt_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("app secret cannot be decrypted with the store key") from exc

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "apps": [self._serialize_app(a) for a in self.apps.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, self.state_path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.apps = {a["id"]: self._deserialize_app(a) for a in data.get("apps", [])}
        self.sessions = {}
        self._session_by_token = {}
        self._session_by_refresh = {}
        for raw in data.get("sessions", []):
            self._index_session(self._deserialize_session(raw))
        self._account_seq = max(self.accounts, default=0) + 1
        self._app_seq = max(self.apps, default=0) + 1
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            apps=len(self.apps),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "pass_hash": account.pass_hash,
            "role": account.role.value,
            "status": account.status.value,
            "app_id": account.app_id,
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            pass_hash=data["pass_hash"],
            role=AccountRole(data.get("role", AccountRole.USER.value)),
            status=AccountStatus(data.get("status", AccountStatus.ACTIVE.value)),
            app_id=data.get("app_id", 0),
            created_at=(
                self._deserialize_datetime(data["created_at"])
                if data.get("created_at")
                else utcnow()
            ),
        )

    def _serialize_app(self, app: App) -> dict:
        return {
            "id": app.id,
            "name": app.name,
            "secret": self._encrypt_secret(app.secret),
            "token_ttl_seconds": int(app.token_ttl.total_seconds()),
            "refresh_token_ttl_seconds": int(app.refresh_token_ttl.total_seconds()),
            "redirect_url": app.redirect_url,
        }

    def _deserialize_app(self, data: dict) -> App:
        return App(
            id=data["id"],
            name=data["name"],
            secret=self._decrypt_secret(data["secret"]),
            token_ttl=timedelta(seconds=data.get("token_ttl_seconds", 3600)),
            refresh_token_ttl=timedelta(
                seconds=data.get("refresh_token_ttl_seconds", 86400)
            ),
            redirect_url=data.get("redirect_url"),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "account_id": sess.account_id,
            "token": sess.token,
            "refresh_token": sess.refresh_token,
            "expires_at": self._serialize_datetime(sess.expires_at),
            "refresh_expires_at": self._serialize_datetime(sess.refresh_expires_at),
            "user_agent": sess.user_agent,
            "ip_address": sess.ip_address,
            "created_at": self._serialize_datetime(sess.created_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            token=data["token"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            refresh_expires_at=self._deserialize_datetime(data["refresh_expires_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
