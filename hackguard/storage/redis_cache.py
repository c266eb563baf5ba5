from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis

from hackguard.storage.memory import ATTEMPT_IDLE_TTL_MS, LOCK_RETENTION_MS
from hackguard.storage.models import CSRFTokenRecord, LoginAttemptRecord


class RedisCache:
    """Redis-backed rate limits, login lockouts and CSRF records.

    Shared by every worker process; each read-modify-write runs as a Lua
    script so concurrent requests cannot interleave.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: replace the record once the window has elapsed, else count
    _RATE_LIMIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'reset_at')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])

if count == nil or reset_at == nil or now > reset_at then
  count = 1
  reset_at = now + window
else
  count = count + 1
end

redis.call('HSET', key, 'count', count, 'reset_at', reset_at)
redis.call('PEXPIRE', key, math.max(reset_at - now, 1))
return {count, reset_at}
"""

    _LOGIN_CHECK_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local lock_ms = tonumber(ARGV[3])
local extend = tonumber(ARGV[4])
local retention = tonumber(ARGV[5])

local data = redis.call('HMGET', key, 'count', 'lock_until', 'updated_at')
local count = tonumber(data[1])
if count == nil then
  return {0, 0, 0}
end
local lock_until = tonumber(data[2]) or 0
local updated_at = tonumber(data[3]) or 0

if lock_until > now then
  if extend == 1 then
    lock_until = now + lock_ms
    updated_at = now
    redis.call('HSET', key, 'lock_until', lock_until, 'updated_at', updated_at)
    redis.call('PEXPIRE', key, lock_ms + retention)
  end
  return {count, lock_until, updated_at}
end

if lock_until > 0 then
  redis.call('DEL', key)
  return {0, 0, 0}
end

if count >= max_attempts then
  lock_until = now + lock_ms
  updated_at = now
  redis.call('HSET', key, 'lock_until', lock_until, 'updated_at', updated_at)
  redis.call('PEXPIRE', key, lock_ms + retention)
end
return {count, lock_until, updated_at}
"""

    _LOGIN_FAILURE_SCRIPT = """
local key = KEYS[1]
local count = redis.call('HINCRBY', key, 'count', 1)
redis.call('HSET', key, 'updated_at', ARGV[1])
local lock_until = tonumber(redis.call('HGET', key, 'lock_until')) or 0
if lock_until == 0 then
  redis.call('PEXPIRE', key, ARGV[2])
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_limit = self.client.register_script(self._RATE_LIMIT_SCRIPT)
        self._login_check = self.client.register_script(self._LOGIN_CHECK_SCRIPT)
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_key(prefix: str, key: str) -> str:
        """Hash caller-supplied identifiers to avoid delimiter injection."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{prefix}:{digest}"

    async def hit_rate_limit(
        self, key: str, window_ms: int, now_ms: int
    ) -> tuple[int, int]:
        count, reset_at = await self._rate_limit(
            keys=[self._normalize_key("rate", key)],
            args=[now_ms, window_ms],
        )
        return int(count), int(reset_at)

    async def check_login_lock(
        self,
        key: str,
        now_ms: int,
        max_attempts: int,
        lock_ms: int,
        extend_on_attempt: bool,
    ) -> LoginAttemptRecord:
        count, lock_until, updated_at = await self._login_check(
            keys=[self._normalize_key("login:attempts", key)],
            args=[
                now_ms,
                max_attempts,
                lock_ms,
                1 if extend_on_attempt else 0,
                LOCK_RETENTION_MS,
            ],
        )
        return LoginAttemptRecord(
            count=int(count), lock_until=int(lock_until), updated_at=int(updated_at)
        )

    async def record_login_failure(self, key: str, now_ms: int) -> int:
        count = await self._login_failure(
            keys=[self._normalize_key("login:attempts", key)],
            args=[now_ms, ATTEMPT_IDLE_TTL_MS],
        )
        return int(count)

    async def clear_login_attempts(self, key: str) -> None:
        await self.client.delete(self._normalize_key("login:attempts", key))

    async def set_csrf_record(self, key: str, record: CSRFTokenRecord) -> None:
        redis_key = f"csrf:{key}"
        pipe = self.client.pipeline()
        pipe.hset(
            redis_key,
            mapping={"token_hash": record.token_hash, "expires_at": record.expires_at},
        )
        pipe.pexpireat(redis_key, record.expires_at)
        await pipe.execute()

    async def get_csrf_record(self, key: str) -> Optional[CSRFTokenRecord]:
        data = await self.client.hgetall(f"csrf:{key}")
        if not data:
            return None
        try:
            return CSRFTokenRecord(
                token_hash=data["token_hash"], expires_at=int(data["expires_at"])
            )
        except (KeyError, TypeError, ValueError):
            # Corrupted entry - treat as missing so validation fails closed
            return None

    async def delete_csrf_record(self, key: str) -> None:
        await self.client.delete(f"csrf:{key}")

    async def cleanup_expired(self, now_ms: int) -> int:
        # Key TTLs evict expired records server-side.
        return 0

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
