from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from hackguard.logging import get_logger
from hackguard.service.errors import LockedOutError
from hackguard.storage.common import SecurityCache
from hackguard.storage.models import from_epoch_ms, to_epoch_ms, utcnow

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class LockoutStatus:
    allowed: bool
    lock_until: Optional[datetime] = None
    remaining_attempts: Optional[int] = None


class LoginAttemptTracker:
    """Identity-keyed brute-force lockout.

    Unlike ``RateLimiter`` only failures count and a success resets the
    record. After ``max_attempts`` consecutive failures the email is locked
    for ``lock_minutes``. Attempts made during the lock are rejected; they
    re-arm the lock only when ``extend_on_attempt`` is set. Once the lock
    elapses the record starts over.
    """

    def __init__(
        self,
        cache: SecurityCache,
        *,
        max_attempts: int = 5,
        lock_minutes: int = 15,
        extend_on_attempt: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.lock_ms = lock_minutes * 60 * 1000
        self.extend_on_attempt = extend_on_attempt
        self._clock = clock

    async def check_login_attempts(self, email: str) -> LockoutStatus:
        key = normalize_email(email)
        now_ms = to_epoch_ms(self._clock())
        record = await self.cache.check_login_lock(
            key, now_ms, self.max_attempts, self.lock_ms, self.extend_on_attempt
        )
        if record.lock_until > now_ms:
            return LockoutStatus(
                allowed=False,
                lock_until=from_epoch_ms(record.lock_until),
                remaining_attempts=0,
            )
        return LockoutStatus(
            allowed=True,
            remaining_attempts=max(0, self.max_attempts - record.count),
        )

    async def record_failed_login(self, email: str) -> int:
        count = await self.cache.record_login_failure(
            normalize_email(email), to_epoch_ms(self._clock())
        )
        if count >= self.max_attempts:
            logger.warning(
                "login_lockout_threshold_reached",
                email=normalize_email(email),
                failures=count,
            )
        return count

    async def clear_login_attempts(self, email: str) -> None:
        await self.cache.clear_login_attempts(normalize_email(email))

    async def enforce(self, email: str) -> LockoutStatus:
        status = await self.check_login_attempts(email)
        if not status.allowed and status.lock_until is not None:
            raise LockedOutError(status.lock_until, now=self._clock())
        return status
