from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


@dataclass(frozen=True)
class UserIdentity:
    """Verified identity snapshot handed to session creation."""

    user_id: str
    email: str
    name: str
    role: str


@dataclass
class User:
    id: str
    email: str
    name: str
    role: str
    status: str = "active"
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def identity(self) -> UserIdentity:
        return UserIdentity(
            user_id=self.id, email=self.email, name=self.name, role=self.role
        )


@dataclass
class SessionRecord:
    """Server-side session row, owned by the partition of ``user_role``."""

    token: str
    user_id: str
    user_email: str
    user_name: str
    user_role: str
    fingerprint: str
    created_at: datetime
    expires_at: datetime
    absolute_expires_at: datetime

    def identity(self) -> UserIdentity:
        return UserIdentity(
            user_id=self.user_id,
            email=self.user_email,
            name=self.user_name,
            role=self.user_role,
        )


@dataclass
class RateLimitRecord:
    count: int
    reset_at: int  # epoch ms


@dataclass
class LoginAttemptRecord:
    count: int = 0
    lock_until: int = 0  # epoch ms, 0 = not locked
    updated_at: int = 0  # epoch ms of the last write


@dataclass
class CSRFTokenRecord:
    token_hash: str
    expires_at: int  # epoch ms
