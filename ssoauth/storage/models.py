from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DISABLED = "disabled"


@dataclass
class Account:
    id: int
    email: str
    pass_hash: str = field(repr=False)
    role: AccountRole = AccountRole.USER
    status: AccountStatus = AccountStatus.ACTIVE
    app_id: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN


@dataclass
class App:
    id: int
    name: str
    secret: str = field(repr=False)
    token_ttl: timedelta = timedelta(hours=1)
    refresh_token_ttl: timedelta = timedelta(hours=24)
    redirect_url: Optional[str] = None


@dataclass
class Session:
    id: str
    account_id: int
    token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: datetime
    refresh_expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at

    def is_refreshable(self, now: datetime) -> bool:
        return now < self.refresh_expires_at
