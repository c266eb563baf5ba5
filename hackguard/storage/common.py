"""Storage contracts shared by the memory, Postgres and Redis backends.

Users and sessions live in separate logical partitions per role (a layout
inherited from the surrounding platform). A session token does not say which
partition holds it, so lookups by token fan out over the small, fixed set of
partitions. This is a migration shim for the per-role layout; do not reuse it
for large or dynamic partition counts.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from hackguard.logging import get_logger
from hackguard.storage.errors import PartitionUnavailable
from hackguard.storage.models import (
    CSRFTokenRecord,
    LoginAttemptRecord,
    SessionRecord,
    User,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    def partitions(self) -> Sequence[str]: ...

    def create_session(self, partition: str, record: SessionRecord) -> SessionRecord: ...

    def get_session(self, partition: str, token: str) -> Optional[SessionRecord]: ...

    def update_session_expiry(
        self, partition: str, token: str, expires_at: datetime
    ) -> bool: ...

    def delete_session(self, partition: str, token: str) -> bool: ...

    def delete_user_sessions(self, partition: str, user_id: str) -> int: ...

    def find_session_any_partition(
        self, token: str
    ) -> Optional[tuple[SessionRecord, str]]: ...

    def delete_session_everywhere(self, token: str) -> int: ...

    def delete_user_sessions_everywhere(self, user_id: str) -> int: ...


class UserDirectory(Protocol):
    """Credential store collaborator used by the login flow."""

    def get_user_by_email(self, role: str, email: str) -> Optional[User]: ...

    def create_user(
        self,
        role: str,
        email: str,
        name: str,
        password_hash: str,
        *,
        status: str = "active",
    ) -> User: ...


class SecurityCache(Protocol):
    """Ephemeral, atomically updated state for rate limits, lockouts and CSRF.

    Every method is a single atomic read-modify-write so concurrent requests
    cannot under-count toward a limit.
    """

    async def hit_rate_limit(
        self, key: str, window_ms: int, now_ms: int
    ) -> tuple[int, int]: ...

    async def check_login_lock(
        self,
        key: str,
        now_ms: int,
        max_attempts: int,
        lock_ms: int,
        extend_on_attempt: bool,
    ) -> LoginAttemptRecord: ...

    async def record_login_failure(self, key: str, now_ms: int) -> int: ...

    async def clear_login_attempts(self, key: str) -> None: ...

    async def set_csrf_record(self, key: str, record: CSRFTokenRecord) -> None: ...

    async def get_csrf_record(self, key: str) -> Optional[CSRFTokenRecord]: ...

    async def delete_csrf_record(self, key: str) -> None: ...

    async def cleanup_expired(self, now_ms: int) -> int: ...

    async def close(self) -> None: ...


class PartitionedSessionsMixin:
    """Fan-out helpers built on the per-partition primitives."""

    def partitions(self) -> Sequence[str]:  # pragma: no cover - overridden
        raise NotImplementedError

    def find_session_any_partition(
        self, token: str
    ) -> Optional[tuple[SessionRecord, str]]:
        for partition in self.partitions():
            try:
                record = self.get_session(partition, token)  # type: ignore[attr-defined]
            except PartitionUnavailable as exc:
                logger.warning(
                    "session_partition_unavailable",
                    partition=exc.partition,
                    operation="find",
                )
                continue
            if record is not None:
                return record, partition
        return None

    def delete_session_everywhere(self, token: str) -> int:
        deleted = 0
        for partition in self.partitions():
            try:
                if self.delete_session(partition, token):  # type: ignore[attr-defined]
                    deleted += 1
            except PartitionUnavailable as exc:
                logger.warning(
                    "session_partition_unavailable",
                    partition=exc.partition,
                    operation="delete",
                )
        return deleted

    def delete_user_sessions_everywhere(self, user_id: str) -> int:
        deleted = 0
        for partition in self.partitions():
            try:
                deleted += self.delete_user_sessions(partition, user_id)  # type: ignore[attr-defined]
            except PartitionUnavailable as exc:
                logger.warning(
                    "session_partition_unavailable",
                    partition=exc.partition,
                    operation="delete_user",
                )
        return deleted


__all__ = [
    "SessionStore",
    "UserDirectory",
    "SecurityCache",
    "PartitionedSessionsMixin",
]
