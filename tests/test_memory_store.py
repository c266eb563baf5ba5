"""Tests for the role-partitioned in-memory session store and user directory."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from hackguard.service.crypto import generate_token
from hackguard.storage.errors import ConstraintViolation, PartitionUnavailable
from hackguard.storage.memory import MemoryCache, MemoryStore
from hackguard.storage.models import CSRFTokenRecord, SessionRecord

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(role="participant", user_id="user-1", token=None):
    return SessionRecord(
        token=token or generate_token(),
        user_id=user_id,
        user_email=f"{user_id}@example.com",
        user_name="Test User",
        user_role=role,
        fingerprint="fp",
        created_at=NOW,
        expires_at=NOW + timedelta(hours=1),
        absolute_expires_at=NOW + timedelta(hours=24),
    )


class TestPartitionedSessions:
    def test_partitions_in_fixed_order(self, store):
        assert tuple(store.partitions()) == ("participant", "organizer", "admin")

    def test_find_session_any_partition(self, store):
        record = _record(role="admin")
        store.create_session("admin", record)

        found = store.find_session_any_partition(record.token)

        assert found is not None
        found_record, partition = found
        assert partition == "admin"
        assert found_record.user_id == "user-1"

    def test_find_stops_at_first_hit(self, store):
        record = _record(role="participant")
        store.create_session("participant", record)
        with patch.object(store, "get_session", wraps=store.get_session) as spy:
            store.find_session_any_partition(record.token)
        assert spy.call_count == 1

    def test_find_missing_token(self, store):
        assert store.find_session_any_partition("missing") is None

    def test_returned_record_is_a_copy(self, store):
        record = _record()
        store.create_session("participant", record)
        found, _ = store.find_session_any_partition(record.token)
        found.expires_at = NOW
        again, _ = store.find_session_any_partition(record.token)
        assert again.expires_at == NOW + timedelta(hours=1)

    def test_duplicate_token_rejected(self, store):
        record = _record()
        store.create_session("participant", record)
        with pytest.raises(ConstraintViolation):
            store.create_session("participant", record)

    def test_unknown_partition_rejected(self, store):
        with pytest.raises(ValueError):
            store.create_session("judge", _record())

    def test_delete_everywhere_tolerates_missing(self, store):
        record = _record(role="organizer")
        store.create_session("organizer", record)
        assert store.delete_session_everywhere(record.token) == 1
        assert store.delete_session_everywhere(record.token) == 0
        assert store.find_session_any_partition(record.token) is None

    def test_update_expiry_never_resurrects(self, store):
        record = _record()
        store.create_session("participant", record)
        store.delete_session("participant", record.token)
        assert not store.update_session_expiry(
            "participant", record.token, NOW + timedelta(hours=2)
        )
        assert store.get_session("participant", record.token) is None

    def test_delete_user_sessions_everywhere(self, store):
        for role in ("participant", "organizer"):
            store.create_session(role, _record(role=role, user_id="shared"))
        keep = _record(user_id="other")
        store.create_session("participant", keep)

        assert store.delete_user_sessions_everywhere("shared") == 2
        assert store.find_session_any_partition(keep.token) is not None

    def test_unavailable_partition_is_skipped(self, store):
        record = _record(role="admin")
        store.create_session("admin", record)
        original = store.get_session

        def flaky(partition, token):
            if partition == "organizer":
                raise PartitionUnavailable(partition, "connection refused")
            return original(partition, token)

        with patch.object(store, "get_session", side_effect=flaky):
            with patch("hackguard.storage.common.logger") as mock_logger:
                found = store.find_session_any_partition(record.token)

        assert found is not None and found[1] == "admin"
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "session_partition_unavailable"
        assert call_args[1]["partition"] == "organizer"

    def test_concurrent_delete_and_refresh_converge(self, store):
        records = [_record() for _ in range(50)]
        for record in records:
            store.create_session("participant", record)

        def refresh():
            for record in records:
                store.update_session_expiry(
                    "participant", record.token, NOW + timedelta(hours=2)
                )

        def destroy():
            for record in records:
                store.delete_session_everywhere(record.token)

        threads = [threading.Thread(target=refresh), threading.Thread(target=destroy)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(store.find_session_any_partition(r.token) is None for r in records)


class TestUserDirectory:
    def test_users_are_partitioned_by_role(self, store):
        store.create_user("organizer", "Org@Example.com", "Org", "hash")
        assert store.get_user_by_email("organizer", "org@example.com") is not None
        assert store.get_user_by_email("participant", "org@example.com") is None

    def test_duplicate_email_in_partition(self, store):
        store.create_user("participant", "a@example.com", "A", "hash")
        with pytest.raises(ConstraintViolation):
            store.create_user("participant", "A@example.com", "A", "hash")
        # Same email in another partition is a different account
        store.create_user("admin", "a@example.com", "A", "hash")

    def test_set_user_status(self, store):
        store.create_user("participant", "a@example.com", "A", "hash")
        store.set_user_status("participant", "a@example.com", "suspended")
        assert not store.get_user_by_email("participant", "a@example.com").is_active


class TestMemoryCacheCleanup:
    async def test_cleanup_removes_only_expired_records(self):
        cache = MemoryCache()
        now = 10_000_000_000
        await cache.hit_rate_limit("old", 1_000, now - 5_000)
        await cache.hit_rate_limit("fresh", 60_000, now)
        await cache.set_csrf_record("gone", CSRFTokenRecord("h", now - 1))
        await cache.set_csrf_record("live", CSRFTokenRecord("h", now + 60_000))
        await cache.record_login_failure("idle@example.com", now - 25 * 3600 * 1000)
        await cache.record_login_failure("recent@example.com", now)

        cleaned = await cache.cleanup_expired(now)

        assert cleaned == 3
        assert await cache.get_csrf_record("live") is not None
        assert await cache.get_csrf_record("gone") is None
        assert (await cache.hit_rate_limit("fresh", 60_000, now))[0] == 2
        assert (await cache.record_login_failure("recent@example.com", now)) == 2
        assert (await cache.record_login_failure("idle@example.com", now)) == 1
