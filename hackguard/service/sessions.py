"""Session lifecycle: create, validate (with sliding refresh), destroy.

A session moves ``none -> active -> [refreshed -> active]* -> terminated``.
It is terminated by logout, absolute timeout, relative timeout, a
fingerprint mismatch or logout-everywhere. Every rejecting branch of
``validate`` deletes the server record and tells the caller to clear the
client cookies; the reason is for logs only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from hackguard.logging import get_logger, log_security_event
from hackguard.service.cookies import CookieInstruction, CookiePolicy
from hackguard.service.crypto import generate_token, hash_token
from hackguard.service.csrf import CSRFTokenManager
from hackguard.service.errors import SessionRejection
from hackguard.storage.common import SessionStore
from hackguard.storage.models import SessionRecord, UserIdentity, utcnow

logger = get_logger(__name__)


@dataclass
class Session:
    token: str
    identity: UserIdentity
    partition: str
    created_at: datetime
    expires_at: datetime
    absolute_expires_at: datetime
    # Plaintext CSRF token, only present right after it was issued
    csrf_token: Optional[str] = None
    cookies: List[CookieInstruction] = field(default_factory=list)

    @property
    def session_key(self) -> str:
        return hash_token(self.token)

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @classmethod
    def from_record(
        cls,
        record: SessionRecord,
        partition: str,
        *,
        csrf_token: Optional[str] = None,
        cookies: Optional[List[CookieInstruction]] = None,
    ) -> "Session":
        return cls(
            token=record.token,
            identity=record.identity(),
            partition=partition,
            created_at=record.created_at,
            expires_at=record.expires_at,
            absolute_expires_at=record.absolute_expires_at,
            csrf_token=csrf_token,
            cookies=list(cookies or []),
        )


@dataclass
class SessionValidation:
    session: Optional[Session] = None
    reason: Optional[SessionRejection] = None
    cookies: List[CookieInstruction] = field(default_factory=list)
    refreshed: bool = False
    # None when no CSRF check was requested
    csrf_valid: Optional[bool] = None

    @property
    def valid(self) -> bool:
        return self.session is not None


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        csrf: CSRFTokenManager,
        cookies: CookiePolicy,
        *,
        ttl_minutes: int = 60,
        absolute_ttl_minutes: int = 24 * 60,
        refresh_threshold_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.csrf = csrf
        self.cookies = cookies
        self.ttl = timedelta(minutes=ttl_minutes)
        self.absolute_ttl = timedelta(minutes=absolute_ttl_minutes)
        self.refresh_threshold = timedelta(minutes=refresh_threshold_minutes)
        self._clock = clock

    async def create(self, identity: UserIdentity, fingerprint: str) -> Session:
        """Persist a new session in the partition of ``identity.role``.

        Other sessions of the same user are left alone; concurrent devices
        are supported.
        """
        now = self._clock()
        absolute_expires_at = now + self.absolute_ttl
        record = SessionRecord(
            token=generate_token(),
            user_id=identity.user_id,
            user_email=identity.email,
            user_name=identity.name,
            user_role=identity.role,
            fingerprint=fingerprint,
            created_at=now,
            expires_at=min(now + self.ttl, absolute_expires_at),
            absolute_expires_at=absolute_expires_at,
        )
        self.store.create_session(identity.role, record)
        csrf_token = await self.csrf.issue(hash_token(record.token))
        logger.info(
            "session_created",
            user_id=identity.user_id,
            role=identity.role,
            expires_at=record.expires_at.isoformat(),
        )
        return Session.from_record(
            record,
            identity.role,
            csrf_token=csrf_token,
            cookies=self.cookies.issue(record.token, csrf_token, record.expires_at),
        )

    async def validate(
        self,
        token: Optional[str],
        fingerprint: str,
        *,
        verify_csrf: bool = False,
        csrf_token: Optional[str] = None,
        csrf_cookie: Optional[str] = None,
    ) -> SessionValidation:
        """Run the session checks in order and refresh when close to expiry.

        With ``verify_csrf`` the presented ``csrf_token`` is checked against
        the live session. A CSRF failure keeps the session but skips the
        refresh. ``csrf_cookie`` is the value of the client CSRF cookie; a
        refresh re-sets it with the new expiry and never rotates the token.
        """
        if not token:
            return SessionValidation(reason=SessionRejection.NO_SESSION)

        found = self.store.find_session_any_partition(token)
        if found is None:
            # Client holds a credential for a session that no longer exists
            await self.csrf.revoke(hash_token(token))
            logger.info("session_rejected", reason=SessionRejection.NOT_FOUND.value)
            return self._reject(SessionRejection.NOT_FOUND)

        record, partition = found
        now = self._clock()
        # Absolute expiry wins over relative expiry
        if record.absolute_expires_at < now:
            return await self._terminate(record, partition, SessionRejection.ABSOLUTE_TIMEOUT)
        if record.expires_at < now:
            return await self._terminate(record, partition, SessionRejection.RELATIVE_TIMEOUT)
        if record.fingerprint != fingerprint:
            log_security_event(
                "session_hijack_suspected",
                user_id=record.user_id,
                role=record.user_role,
                partition=partition,
            )
            return await self._terminate(
                record, partition, SessionRejection.FINGERPRINT_MISMATCH
            )

        csrf_valid: Optional[bool] = None
        if verify_csrf:
            csrf_valid = await self.csrf.validate(hash_token(token), csrf_token)

        if csrf_valid is not False and record.expires_at - now < self.refresh_threshold:
            return await self._refresh(
                record, partition, now, csrf_valid=csrf_valid, csrf_cookie=csrf_cookie
            )
        return SessionValidation(
            session=Session.from_record(record, partition), csrf_valid=csrf_valid
        )

    async def _refresh(
        self,
        record: SessionRecord,
        partition: str,
        now: datetime,
        *,
        csrf_valid: Optional[bool] = None,
        csrf_cookie: Optional[str] = None,
    ) -> SessionValidation:
        new_expiry = min(now + self.ttl, record.absolute_expires_at)
        if new_expiry <= record.expires_at:
            # Already at the absolute ceiling
            return SessionValidation(
                session=Session.from_record(record, partition), csrf_valid=csrf_valid
            )
        if not self.store.update_session_expiry(partition, record.token, new_expiry):
            # Destroyed by a concurrent request; never resurrect it
            return self._reject(SessionRejection.NOT_FOUND)
        record.expires_at = new_expiry
        # The CSRF record is left alone; only a cookie that still matches it is
        # re-set, an unknown one is left for GET /auth/csrf to replace
        csrf_token = csrf_cookie
        if csrf_token and not await self.csrf.validate(hash_token(record.token), csrf_token):
            csrf_token = None
        cookies = self.cookies.issue(record.token, csrf_token, new_expiry)
        logger.info(
            "session_refreshed",
            user_id=record.user_id,
            expires_at=new_expiry.isoformat(),
        )
        return SessionValidation(
            session=Session.from_record(record, partition, cookies=cookies),
            cookies=cookies,
            refreshed=True,
            csrf_valid=csrf_valid,
        )

    async def _terminate(
        self, record: SessionRecord, partition: str, reason: SessionRejection
    ) -> SessionValidation:
        self.store.delete_session(partition, record.token)
        await self.csrf.revoke(hash_token(record.token))
        logger.info(
            "session_rejected",
            reason=reason.value,
            user_id=record.user_id,
            partition=partition,
        )
        return self._reject(reason)

    def _reject(self, reason: SessionRejection) -> SessionValidation:
        return SessionValidation(reason=reason, cookies=self.cookies.clear())

    async def destroy(self, token: Optional[str]) -> List[CookieInstruction]:
        """Delete ``token`` from every partition. Idempotent."""
        if token:
            deleted = self.store.delete_session_everywhere(token)
            await self.csrf.revoke(hash_token(token))
            logger.info("session_destroyed", deleted=deleted)
        return self.cookies.clear()

    async def logout_everywhere(self, user_id: str) -> int:
        # CSRF records of the other sessions expire on their own and are
        # useless without a live session.
        deleted = self.store.delete_user_sessions_everywhere(user_id)
        logger.info("sessions_revoked_for_user", user_id=user_id, deleted=deleted)
        return deleted

    async def verify_csrf(self, session: Session, presented: Optional[str]) -> bool:
        return await self.csrf.validate(session.session_key, presented)
