from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from hackguard.logging import get_logger, log_security_event
from hackguard.service.errors import RateLimitedError
from hackguard.storage.common import SecurityCache
from hackguard.storage.models import from_epoch_ms, to_epoch_ms, utcnow

logger = get_logger(__name__)

DEFAULT_WINDOW_MS = 60_000


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0  # seconds, only set when denied
    reset_at: datetime | None = None


class RateLimiter:
    """Fixed-window request counters keyed by an identifier (IP, endpoint).

    Every call counts, successful or not. The counter itself lives in the
    injected ``SecurityCache`` so a Redis-backed cache can be swapped in for
    multi-process deployments without touching call sites.
    """

    def __init__(
        self, cache: SecurityCache, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.cache = cache
        self._clock = clock

    async def check(
        self, identifier: str, max_requests: int, window_ms: int
    ) -> RateLimitResult:
        if max_requests <= 0:
            return RateLimitResult(allowed=True, limit=max_requests, remaining=0)
        if window_ms <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=identifier,
                window_ms=window_ms,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_ms = DEFAULT_WINDOW_MS
        now_ms = to_epoch_ms(self._clock())
        count, reset_at = await self.cache.hit_rate_limit(identifier, window_ms, now_ms)
        if count > max_requests:
            retry_after = max(1, math.ceil((reset_at - now_ms) / 1000))
            return RateLimitResult(
                allowed=False,
                limit=max_requests,
                remaining=0,
                retry_after=retry_after,
                reset_at=from_epoch_ms(reset_at),
            )
        return RateLimitResult(
            allowed=True,
            limit=max_requests,
            remaining=max_requests - count,
            reset_at=from_epoch_ms(reset_at),
        )

    async def enforce(
        self, identifier: str, max_requests: int, window_ms: int
    ) -> RateLimitResult:
        """Like ``check`` but raises ``RateLimitedError`` when denied."""
        result = await self.check(identifier, max_requests, window_ms)
        if not result.allowed:
            log_security_event(
                "rate_limit",
                key=identifier,
                limit=max_requests,
                retry_after=result.retry_after,
            )
            raise RateLimitedError(
                result.retry_after, limit=result.limit, reset_at=result.reset_at
            )
        return result
