from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from hackguard.logging import get_logger
from hackguard.service.crypto import constant_time_equal, generate_token, sign
from hackguard.storage.common import SecurityCache
from hackguard.storage.models import CSRFTokenRecord, to_epoch_ms, utcnow

logger = get_logger(__name__)


class CSRFTokenManager:
    """Issue and check the script-readable CSRF companion of a session.

    Only a keyed hash of the token is stored; the plaintext is returned once
    from ``issue``. A valid CSRF token never stands in for a valid session,
    it is an extra check on state-changing requests.
    """

    def __init__(
        self,
        cache: SecurityCache,
        secret: str,
        *,
        ttl_minutes: int = 24 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self._secret = secret
        self.ttl_ms = ttl_minutes * 60 * 1000
        self._clock = clock

    def _hash(self, token: str) -> str:
        return sign(self._secret, token)

    async def issue(self, session_key: str) -> str:
        token = generate_token()
        expires_at = to_epoch_ms(self._clock()) + self.ttl_ms
        await self.cache.set_csrf_record(
            session_key, CSRFTokenRecord(token_hash=self._hash(token), expires_at=expires_at)
        )
        return token

    async def validate(self, session_key: str, presented: Optional[str]) -> bool:
        if not session_key or not presented:
            return False
        record = await self.cache.get_csrf_record(session_key)
        if record is None:
            return False
        if to_epoch_ms(self._clock()) > record.expires_at:
            await self.cache.delete_csrf_record(session_key)
            logger.info("csrf_token_expired")
            return False
        return constant_time_equal(self._hash(presented), record.token_hash)

    async def revoke(self, session_key: str) -> None:
        await self.cache.delete_csrf_record(session_key)
