from __future__ import annotations

import re
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hackguard.config import PARTITION_ORDER
from hackguard.logging import get_logger, log_security_event
from hackguard.service.cookies import CookieInstruction
from hackguard.service.errors import (
    AuthenticationError,
    ForbiddenError,
    LockedOutError,
    ValidationError,
)
from hackguard.service.fingerprint import DeviceFingerprinter
from hackguard.service.lockout import LoginAttemptTracker, normalize_email
from hackguard.service.rate_limit import RateLimiter
from hackguard.service.sessions import Session, SessionManager, SessionValidation
from hackguard.storage.common import UserDirectory
from hackguard.storage.models import User

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthService:
    """Web-facing entry points: login gate, per-request validation, logout.

    Login runs the per-IP rate limit and the per-email lockout before the
    credential check, records the outcome afterwards, and only then creates
    a session. Password hashing is delegated to argon2.
    """

    def __init__(
        self,
        users: UserDirectory,
        sessions: SessionManager,
        rate_limiter: RateLimiter,
        lockout: LoginAttemptTracker,
        fingerprinter: DeviceFingerprinter,
        *,
        login_rate_limit: int = 10,
        login_rate_window_ms: int = 60_000,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.lockout = lockout
        self.fingerprinter = fingerprinter
        self.login_rate_limit = login_rate_limit
        self.login_rate_window_ms = login_rate_window_ms
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        """Verify ``password`` against the user's stored argon2 hash."""
        if not user.password_hash:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def fingerprint(self, user_agent: Optional[str], accept_language: Optional[str]) -> str:
        return self.fingerprinter.fingerprint(user_agent, accept_language)

    async def login(
        self,
        email: str,
        password: str,
        role: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        accept_language: Optional[str] = None,
    ) -> Session:
        normalized = normalize_email(email)
        if not EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        if role not in PARTITION_ORDER:
            raise ValidationError("invalid role", detail={"field": "role"})

        await self.rate_limiter.enforce(
            f"login:{ip_addr or 'unknown'}",
            self.login_rate_limit,
            self.login_rate_window_ms,
        )
        try:
            await self.lockout.enforce(normalized)
        except LockedOutError as exc:
            log_security_event(
                "suspicious_activity",
                reason="account_locked",
                email=normalized,
                ip_addr=ip_addr,
                lock_until=exc.lock_until.isoformat(),
            )
            raise

        user = self.users.get_user_by_email(role, normalized)
        if user is None or not self.verify_password(user, password):
            failures = await self.lockout.record_failed_login(normalized)
            log_security_event(
                "login_failed",
                email=normalized,
                role=role,
                ip_addr=ip_addr,
                failures=failures,
            )
            # Same message for unknown email and wrong password
            raise AuthenticationError("invalid credentials")

        if not user.is_active:
            log_security_event(
                "suspicious_activity",
                reason="inactive_account_login",
                user_id=user.id,
                status=user.status,
                ip_addr=ip_addr,
            )
            raise ForbiddenError("account is not active")

        await self.lockout.clear_login_attempts(normalized)
        session = await self.sessions.create(
            user.identity(), self.fingerprint(user_agent, accept_language)
        )
        log_security_event("login_success", user_id=user.id, role=role, ip_addr=ip_addr)
        return session

    async def on_request(
        self,
        token: Optional[str],
        user_agent: Optional[str],
        accept_language: Optional[str],
        *,
        verify_csrf: bool = False,
        csrf_token: Optional[str] = None,
        csrf_cookie: Optional[str] = None,
    ) -> SessionValidation:
        return await self.sessions.validate(
            token,
            self.fingerprint(user_agent, accept_language),
            verify_csrf=verify_csrf,
            csrf_token=csrf_token,
            csrf_cookie=csrf_cookie,
        )

    async def logout(self, token: Optional[str]) -> List[CookieInstruction]:
        return await self.sessions.destroy(token)

    async def logout_everywhere(
        self, session: Session
    ) -> Tuple[int, List[CookieInstruction]]:
        revoked = await self.sessions.logout_everywhere(session.user_id)
        cookies = await self.sessions.destroy(session.token)
        return revoked, cookies
