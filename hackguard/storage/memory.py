from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, Sequence

from hackguard.config import PARTITION_ORDER
from hackguard.logging import get_logger
from hackguard.storage.common import PartitionedSessionsMixin
from hackguard.storage.errors import ConstraintViolation
from hackguard.storage.models import (
    CSRFTokenRecord,
    LoginAttemptRecord,
    RateLimitRecord,
    SessionRecord,
    User,
)

# Locked records are kept this long past their lock for audit, unlocked
# records are dropped after this much inactivity.
LOCK_RETENTION_MS = 60 * 60 * 1000
ATTEMPT_IDLE_TTL_MS = 24 * 60 * 60 * 1000


class MemoryStore(PartitionedSessionsMixin):
    """In-process users and sessions, one dict per role partition."""

    def __init__(self, partitions: Sequence[str] = PARTITION_ORDER) -> None:
        self.logger = get_logger(__name__)
        self._partitions = tuple(partitions)
        self.users: Dict[str, Dict[str, User]] = {p: {} for p in self._partitions}
        self.sessions: Dict[str, Dict[str, SessionRecord]] = {
            p: {} for p in self._partitions
        }
        # RLock so fan-out helpers can call the per-partition primitives
        self._data_lock = threading.RLock()

    def partitions(self) -> Sequence[str]:
        return self._partitions

    def _require_partition(self, partition: str) -> None:
        if partition not in self.sessions:
            raise ValueError(f"unknown partition: {partition}")

    # users
    def create_user(
        self,
        role: str,
        email: str,
        name: str,
        password_hash: str,
        *,
        status: str = "active",
    ) -> User:
        self._require_partition(role)
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self.users[role]:
                raise ConstraintViolation("email already exists", {"email": normalized})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=role,
                status=status,
                password_hash=password_hash,
            )
            self.users[role][normalized] = user
            return user

    def get_user_by_email(self, role: str, email: str) -> Optional[User]:
        if role not in self.users:
            return None
        with self._data_lock:
            return self.users[role].get(email.strip().lower())

    def set_user_status(self, role: str, email: str, status: str) -> None:
        with self._data_lock:
            user = self.users.get(role, {}).get(email.strip().lower())
            if user:
                user.status = status

    # sessions
    def create_session(self, partition: str, record: SessionRecord) -> SessionRecord:
        self._require_partition(partition)
        with self._data_lock:
            if record.token in self.sessions[partition]:
                raise ConstraintViolation("session token already exists")
            self.sessions[partition][record.token] = replace(record)
        return record

    def get_session(self, partition: str, token: str) -> Optional[SessionRecord]:
        self._require_partition(partition)
        with self._data_lock:
            record = self.sessions[partition].get(token)
            return replace(record) if record else None

    def update_session_expiry(
        self, partition: str, token: str, expires_at: datetime
    ) -> bool:
        self._require_partition(partition)
        with self._data_lock:
            record = self.sessions[partition].get(token)
            if record is None:
                return False
            record.expires_at = expires_at
            return True

    def delete_session(self, partition: str, token: str) -> bool:
        self._require_partition(partition)
        with self._data_lock:
            return self.sessions[partition].pop(token, None) is not None

    def delete_user_sessions(self, partition: str, user_id: str) -> int:
        self._require_partition(partition)
        with self._data_lock:
            stale = [
                token
                for token, record in self.sessions[partition].items()
                if record.user_id == user_id
            ]
            for token in stale:
                self.sessions[partition].pop(token, None)
            return len(stale)


class MemoryCache:
    """Single-process stand-in for ``RedisCache``.

    One ``asyncio.Lock`` serializes every read-modify-write, which gives the
    same atomicity the Lua scripts give in Redis.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._rate_limits: Dict[str, RateLimitRecord] = {}
        self._login_attempts: Dict[str, LoginAttemptRecord] = {}
        self._csrf_tokens: Dict[str, CSRFTokenRecord] = {}
        self._lock = asyncio.Lock()

    async def hit_rate_limit(
        self, key: str, window_ms: int, now_ms: int
    ) -> tuple[int, int]:
        async with self._lock:
            record = self._rate_limits.get(key)
            if record is None or now_ms > record.reset_at:
                record = RateLimitRecord(count=1, reset_at=now_ms + window_ms)
                self._rate_limits[key] = record
            else:
                record.count += 1
            return record.count, record.reset_at

    async def check_login_lock(
        self,
        key: str,
        now_ms: int,
        max_attempts: int,
        lock_ms: int,
        extend_on_attempt: bool,
    ) -> LoginAttemptRecord:
        async with self._lock:
            record = self._login_attempts.get(key)
            if record is None:
                return LoginAttemptRecord()
            if record.lock_until > now_ms:
                if extend_on_attempt:
                    record.lock_until = now_ms + lock_ms
                    record.updated_at = now_ms
                return replace(record)
            if record.lock_until:
                # lock served; start a fresh cycle
                del self._login_attempts[key]
                return LoginAttemptRecord()
            if record.count >= max_attempts:
                record.lock_until = now_ms + lock_ms
                record.updated_at = now_ms
            return replace(record)

    async def record_login_failure(self, key: str, now_ms: int) -> int:
        async with self._lock:
            record = self._login_attempts.setdefault(key, LoginAttemptRecord())
            record.count += 1
            record.updated_at = now_ms
            return record.count

    async def clear_login_attempts(self, key: str) -> None:
        async with self._lock:
            self._login_attempts.pop(key, None)

    async def set_csrf_record(self, key: str, record: CSRFTokenRecord) -> None:
        async with self._lock:
            self._csrf_tokens[key] = replace(record)

    async def get_csrf_record(self, key: str) -> Optional[CSRFTokenRecord]:
        async with self._lock:
            record = self._csrf_tokens.get(key)
            return replace(record) if record else None

    async def delete_csrf_record(self, key: str) -> None:
        async with self._lock:
            self._csrf_tokens.pop(key, None)

    async def cleanup_expired(self, now_ms: int) -> int:
        """Drop records that can no longer affect a decision."""
        async with self._lock:
            expired_rates = [
                key for key, rec in self._rate_limits.items() if rec.reset_at < now_ms
            ]
            for key in expired_rates:
                del self._rate_limits[key]

            expired_attempts = [
                key
                for key, rec in self._login_attempts.items()
                if (rec.lock_until and rec.lock_until < now_ms - LOCK_RETENTION_MS)
                or (not rec.lock_until and rec.updated_at < now_ms - ATTEMPT_IDLE_TTL_MS)
            ]
            for key in expired_attempts:
                del self._login_attempts[key]

            expired_csrf = [
                key for key, rec in self._csrf_tokens.items() if rec.expires_at < now_ms
            ]
            for key in expired_csrf:
                del self._csrf_tokens[key]

        cleaned = len(expired_rates) + len(expired_attempts) + len(expired_csrf)
        if cleaned:
            self.logger.debug(
                "security_cache_cleanup",
                cleaned=cleaned,
                rate_limits=len(expired_rates),
                login_attempts=len(expired_attempts),
                csrf=len(expired_csrf),
            )
        return cleaned

    async def close(self) -> None:
        return None
