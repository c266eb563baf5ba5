from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class SessionRejection(str, Enum):
    """Why a presented session token was not accepted.

    Reasons are for logging only; clients always see a generic
    "not authenticated" response.
    """

    NO_SESSION = "no_session"
    NOT_FOUND = "not_found"
    ABSOLUTE_TIMEOUT = "absolute_timeout"
    RELATIVE_TIMEOUT = "relative_timeout"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration detected at startup; must abort the process."""


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - locked_out (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``cookies`` carries cookie instructions (usually clears) that must reach
    the client along with the error response.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str = "not authenticated",
        *,
        cookies: Optional[list] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.cookies = list(cookies or [])


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        retry_after: int,
        message: Optional[str] = None,
        *,
        limit: Optional[int] = None,
        reset_at: Optional[datetime] = None,
    ) -> None:
        self.retry_after = max(1, int(retry_after))
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(
            message or f"Too many requests. Try again in {self.retry_after} seconds",
            detail={"retry_after": self.retry_after},
        )

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Retry-After": str(self.retry_after)}
        if self.limit is not None:
            headers["X-RateLimit-Limit"] = str(self.limit)
            headers["X-RateLimit-Remaining"] = "0"
        if self.reset_at is not None:
            headers["X-RateLimit-Reset"] = str(int(self.reset_at.timestamp()))
        return headers


class LockedOutError(ServiceError):
    """Account temporarily locked after repeated failed logins (429)."""
    status_code = 429
    error_code = "locked_out"

    def __init__(self, lock_until: datetime, *, now: Optional[datetime] = None) -> None:
        self.lock_until = lock_until
        current = now or datetime.now(timezone.utc)
        self.retry_after = max(1, int((lock_until - current).total_seconds() + 0.999))
        minutes = max(1, -(-self.retry_after // 60))
        super().__init__(
            f"Account locked. Try again in {minutes} minutes",
            detail={
                "lock_until": lock_until.isoformat(),
                "retry_after": self.retry_after,
            },
        )

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "SessionRejection",
    "ConfigurationError",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "RateLimitedError",
    "LockedOutError",
    "ServerError",
]
