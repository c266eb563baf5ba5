"""RedisCache unit tests with a mocked client; no Redis server needed."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hackguard.storage.models import CSRFTokenRecord
from hackguard.storage.redis_cache import RedisCache


@pytest.fixture
def redis_cache():
    client = MagicMock()

    client.register_script.side_effect = lambda source: AsyncMock()
    client.delete = AsyncMock()
    client.hgetall = AsyncMock(return_value={})
    with patch("hackguard.storage.redis_cache.aioredis.from_url", return_value=client):
        cache = RedisCache("redis://localhost:6379/0")
    return cache


def test_scripts_registered_once(redis_cache):
    assert redis_cache.client.register_script.call_count == 3


async def test_hit_rate_limit_uses_hashed_key(redis_cache):
    redis_cache._rate_limit.return_value = [3, 1_700_000_060_000]

    count, reset_at = await redis_cache.hit_rate_limit("login:10.0.0.1", 60_000, 1_700_000_000_000)

    assert (count, reset_at) == (3, 1_700_000_060_000)
    kwargs = redis_cache._rate_limit.call_args.kwargs
    assert kwargs["keys"][0].startswith("rate:")
    assert "10.0.0.1" not in kwargs["keys"][0]
    assert kwargs["args"] == [1_700_000_000_000, 60_000]


async def test_check_login_lock_passes_policy(redis_cache):
    redis_cache._login_check.return_value = [5, 1_700_000_900_000, 1_700_000_000_000]

    record = await redis_cache.check_login_lock(
        "user@example.com", 1_700_000_000_000, 5, 900_000, True
    )

    assert record.count == 5
    assert record.lock_until == 1_700_000_900_000
    kwargs = redis_cache._login_check.call_args.kwargs
    assert "user@example.com" not in kwargs["keys"][0]
    assert kwargs["args"][:4] == [1_700_000_000_000, 5, 900_000, 1]


async def test_login_keys_shared_between_scripts(redis_cache):
    redis_cache._login_check.return_value = [0, 0, 0]
    redis_cache._login_failure.return_value = 1

    await redis_cache.check_login_lock("user@example.com", 1, 5, 900_000, False)
    await redis_cache.record_login_failure("user@example.com", 1)
    await redis_cache.clear_login_attempts("user@example.com")

    check_key = redis_cache._login_check.call_args.kwargs["keys"][0]
    failure_key = redis_cache._login_failure.call_args.kwargs["keys"][0]
    assert check_key == failure_key
    redis_cache.client.delete.assert_awaited_once_with(check_key)


async def test_set_csrf_record_expires_with_record(redis_cache):
    pipe = MagicMock()
    pipe.execute = AsyncMock()
    redis_cache.client.pipeline.return_value = pipe

    await redis_cache.set_csrf_record("abc", CSRFTokenRecord("hash", 1_700_000_000_000))

    pipe.hset.assert_called_once_with(
        "csrf:abc", mapping={"token_hash": "hash", "expires_at": 1_700_000_000_000}
    )
    pipe.pexpireat.assert_called_once_with("csrf:abc", 1_700_000_000_000)
    pipe.execute.assert_awaited_once()


async def test_get_csrf_record(redis_cache):
    redis_cache.client.hgetall.return_value = {"token_hash": "hash", "expires_at": "42"}
    record = await redis_cache.get_csrf_record("abc")
    assert record == CSRFTokenRecord("hash", 42)


@pytest.mark.parametrize("stored", [{}, {"token_hash": "hash"}, {"token_hash": "h", "expires_at": "x"}])
async def test_missing_or_corrupt_csrf_record(redis_cache, stored):
    redis_cache.client.hgetall.return_value = stored
    assert await redis_cache.get_csrf_record("abc") is None


async def test_cleanup_left_to_key_ttls(redis_cache):
    assert await redis_cache.cleanup_expired(0) == 0
